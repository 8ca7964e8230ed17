"""
Data recorder for the MPC stack.
Records vehicle state, control commands, and MPC solve outputs.
"""

import h5py
import numpy as np
import json
import threading
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List
from datetime import datetime

logger = logging.getLogger(__name__)

from .formats.data_format import (
    VehicleState, ControlCommand, MPCOutput, RecordingFrame
)


class DataRecorder:
    """Records MPC stack data to HDF5 format."""

    def __init__(self, output_dir: str, recording_name: Optional[str] = None,
                 prediction_length: int = 11, metadata: Optional[Dict[str, Any]] = None):
        """
        Initialize data recorder.

        Args:
            output_dir: Directory to save recordings
            recording_name: Name for this recording (default: timestamp)
            prediction_length: Points in each predicted trajectory (horizon - 1)
            metadata: Extra metadata stored with the recording (e.g. controller config)
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        if recording_name is None:
            recording_name = f"recording_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        self.recording_name = recording_name
        self.output_file = self.output_dir / f"{recording_name}.h5"
        self.prediction_length = prediction_length

        # Initialize HDF5 file
        self.h5_file = h5py.File(self.output_file, 'w')

        # Create datasets
        self._create_datasets()

        # Buffer for frames
        self.frame_buffer: List[RecordingFrame] = []
        self.frame_buffer_lock = threading.Lock()
        self.frame_count = 0
        self.flush_every = 30

        # Metadata
        self.metadata = {
            "recording_start_time": datetime.now().isoformat(),
            "recording_name": recording_name,
        }
        if metadata:
            self.metadata.update(metadata)

    def _create_datasets(self):
        """Create HDF5 datasets for data storage."""
        # Use extensible datasets (maxshape allows resizing)
        max_shape = (None,)  # Unlimited length

        for key in ("timestamps", "x", "y", "psi", "speed", "steering_angle", "acceleration"):
            self.h5_file.create_dataset(
                f"vehicle/{key}", shape=(0,), maxshape=max_shape, dtype=np.float64
            )

        for key in ("timestamps", "steering", "throttle", "brake", "steering_angle", "acceleration"):
            self.h5_file.create_dataset(
                f"control/{key}", shape=(0,), maxshape=max_shape, dtype=np.float64
            )

        for key in ("timestamps", "cost", "solve_time"):
            self.h5_file.create_dataset(
                f"mpc/{key}", shape=(0,), maxshape=max_shape, dtype=np.float64
            )
        self.h5_file.create_dataset(
            "mpc/success", shape=(0,), maxshape=max_shape, dtype=np.int8
        )
        self.h5_file.create_dataset(
            "mpc/status", shape=(0,), maxshape=max_shape, dtype=h5py.string_dtype()
        )
        for key, dim in (
            ("local_state", 6),
            ("path_coefficients", 4),
            ("predicted_x", self.prediction_length),
            ("predicted_y", self.prediction_length),
        ):
            self.h5_file.create_dataset(
                f"mpc/{key}", shape=(0, dim), maxshape=(None, dim), dtype=np.float64
            )

    def record_frame(self, frame: RecordingFrame):
        """
        Record a complete frame of data.

        Args:
            frame: RecordingFrame containing all data
        """
        with self.frame_buffer_lock:
            self.frame_buffer.append(frame)
            self.frame_count += 1
            if len(self.frame_buffer) < self.flush_every:
                return
            frames = self.frame_buffer
            self.frame_buffer = []
        self._flush_frames(frames)

    def flush(self):
        """Flush buffered frames to disk."""
        with self.frame_buffer_lock:
            if not self.frame_buffer:
                return
            frames = self.frame_buffer
            self.frame_buffer = []
        self._flush_frames(frames)

    def _flush_frames(self, frames: List[RecordingFrame]):
        self._write_vehicle_states([f.vehicle_state for f in frames if f.vehicle_state is not None])
        self._write_control_commands([f.control_command for f in frames if f.control_command is not None])
        self._write_mpc_outputs([f.mpc_output for f in frames if f.mpc_output is not None])
        self.h5_file.flush()

    def _append(self, name: str, values) -> None:
        dataset = self.h5_file[name]
        values = np.asarray(values, dtype=dataset.dtype) if dataset.dtype.kind != "O" else values
        current_size = dataset.shape[0]
        new_size = current_size + len(values)
        dataset.resize((new_size,) + dataset.shape[1:])
        dataset[current_size:new_size] = values

    def _write_vehicle_states(self, states: List[VehicleState]):
        if not states:
            return
        self._append("vehicle/timestamps", [s.timestamp for s in states])
        self._append("vehicle/x", [s.x for s in states])
        self._append("vehicle/y", [s.y for s in states])
        self._append("vehicle/psi", [s.psi for s in states])
        self._append("vehicle/speed", [s.speed for s in states])
        self._append("vehicle/steering_angle", [s.steering_angle for s in states])
        self._append("vehicle/acceleration", [s.acceleration for s in states])

    def _write_control_commands(self, commands: List[ControlCommand]):
        if not commands:
            return
        self._append("control/timestamps", [c.timestamp for c in commands])
        self._append("control/steering", [c.steering for c in commands])
        self._append("control/throttle", [c.throttle for c in commands])
        self._append("control/brake", [c.brake for c in commands])
        # Missing raw actuation is stored as NaN
        self._append("control/steering_angle",
                     [c.steering_angle if c.steering_angle is not None else np.nan for c in commands])
        self._append("control/acceleration",
                     [c.acceleration if c.acceleration is not None else np.nan for c in commands])

    def _write_mpc_outputs(self, outputs: List[MPCOutput]):
        if not outputs:
            return
        for output in outputs:
            if len(output.predicted_x) != self.prediction_length:
                raise ValueError(
                    f"Predicted trajectory has {len(output.predicted_x)} points, "
                    f"recording expects {self.prediction_length}"
                )
        self._append("mpc/timestamps", [o.timestamp for o in outputs])
        self._append("mpc/cost", [o.cost for o in outputs])
        self._append("mpc/solve_time", [o.solve_time for o in outputs])
        self._append("mpc/success", [int(o.success) for o in outputs])
        self._append("mpc/status", [o.status for o in outputs])
        self._append("mpc/local_state", np.vstack([o.local_state for o in outputs]))
        self._append("mpc/path_coefficients", np.vstack([o.path_coefficients for o in outputs]))
        self._append("mpc/predicted_x", np.vstack([o.predicted_x for o in outputs]))
        self._append("mpc/predicted_y", np.vstack([o.predicted_y for o in outputs]))

    def close(self):
        """Close the recording file."""
        self.flush()

        # Save metadata
        self.metadata["recording_end_time"] = datetime.now().isoformat()
        self.metadata["total_frames"] = self.frame_count

        try:
            metadata_str = json.dumps(self.metadata, indent=2, default=str)
            self.h5_file.attrs["metadata"] = metadata_str
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to save metadata: {e}")

        self.h5_file.close()
        logger.info(f"Recording saved to: {self.output_file}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
