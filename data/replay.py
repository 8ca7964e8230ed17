"""
Data replay utility for MPC stack recordings.
Allows replaying recorded data for debugging and analysis.
"""

import json
import h5py
import numpy as np
from pathlib import Path
from typing import Dict, Iterator, List, Tuple


class DataReplay:
    """Replay recorded MPC stack data."""

    def __init__(self, recording_file: str):
        """
        Initialize data replay.

        Args:
            recording_file: Path to HDF5 recording file
        """
        self.recording_file = Path(recording_file)
        if not self.recording_file.exists():
            raise FileNotFoundError(f"Recording file not found: {recording_file}")

        self.h5_file = h5py.File(self.recording_file, 'r')
        self._load_metadata()

    def _load_metadata(self):
        """Load recording metadata."""
        if "metadata" in self.h5_file.attrs:
            self.metadata = json.loads(self.h5_file.attrs["metadata"])
        else:
            self.metadata = {}

    def __len__(self) -> int:
        return len(self.h5_file["mpc/timestamps"])

    def get_vehicle_states(self) -> Iterator[dict]:
        """
        Get vehicle states iterator.

        Yields:
            Dictionary with vehicle state data
        """
        group = self.h5_file["vehicle"]
        keys = ("timestamps", "x", "y", "psi", "speed", "steering_angle", "acceleration")
        for i in range(len(group["timestamps"])):
            state = {key: float(group[key][i]) for key in keys}
            state["timestamp"] = state.pop("timestamps")
            yield state

    def get_control_commands(self) -> Iterator[dict]:
        """
        Get control commands iterator.

        Yields:
            Dictionary with control command data
        """
        group = self.h5_file["control"]
        keys = ("timestamps", "steering", "throttle", "brake", "steering_angle", "acceleration")
        for i in range(len(group["timestamps"])):
            command = {key: float(group[key][i]) for key in keys}
            command["timestamp"] = command.pop("timestamps")
            yield command

    def get_mpc_outputs(self) -> Iterator[dict]:
        """
        Get MPC outputs iterator.

        Yields:
            Dictionary with MPC solve data
        """
        group = self.h5_file["mpc"]
        statuses = group["status"].asstr()[:]
        for i in range(len(group["timestamps"])):
            yield {
                "timestamp": float(group["timestamps"][i]),
                "cost": float(group["cost"][i]),
                "solve_time": float(group["solve_time"][i]),
                "success": bool(group["success"][i]),
                "status": str(statuses[i]),
                "local_state": group["local_state"][i],
                "path_coefficients": group["path_coefficients"][i],
                "predicted_x": group["predicted_x"][i],
                "predicted_y": group["predicted_y"][i],
            }

    def get_trajectory(self) -> Tuple[np.ndarray, np.ndarray]:
        """World-frame (x, y) of the driven path."""
        return self.h5_file["vehicle/x"][:], self.h5_file["vehicle/y"][:]

    def summary(self) -> Dict[str, float]:
        """Aggregate tracking and solver statistics."""
        cte = self.h5_file["mpc/local_state"][:, 4] if len(self) else np.zeros(0)
        success = self.h5_file["mpc/success"][:]
        solve_time = self.h5_file["mpc/solve_time"][:]
        return {
            "frames": float(len(self)),
            "mean_abs_cte": float(np.mean(np.abs(cte))) if cte.size else 0.0,
            "max_abs_cte": float(np.max(np.abs(cte))) if cte.size else 0.0,
            "success_rate": float(np.mean(success)) if success.size else 0.0,
            "mean_solve_time": float(np.mean(solve_time)) if solve_time.size else 0.0,
        }

    def failed_statuses(self) -> List[str]:
        """Solver statuses of the frames whose solve did not succeed."""
        success = self.h5_file["mpc/success"][:]
        statuses = self.h5_file["mpc/status"].asstr()[:]
        return [str(s) for s, ok in zip(statuses, success) if not ok]

    def close(self):
        """Close the recording file."""
        self.h5_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
