"""
MPC stack: closed-loop path tracking with a kinematic vehicle plant.

Each cycle the stack picks the waypoints ahead of the vehicle, predicts the
pose at the end of the actuation latency, fits a cubic in the vehicle frame,
solves the MPC problem and applies the issued command to the plant.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import yaml

from control.mpc_controller import (
    MPCController,
    MPCResult,
    build_mpc_config,
    config_to_dict,
)
from control.vehicle_model import KinematicBicycleModel
from data.formats.data_format import ControlCommand, MPCOutput, RecordingFrame, VehicleState
from data.recorder import DataRecorder
from trajectory.polynomial import (
    N_COEFFS,
    compute_tracking_errors,
    polyfit,
    predict_state_after_latency,
    world_to_vehicle,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "mpc_config.yaml"


def configure_logging(level: int = logging.INFO, log_dir: Optional[Path] = None) -> Path:
    """Log to stderr and to ``tmp/logs/mpc_stack.log``."""
    if log_dir is None:
        log_dir = Path(__file__).parent / 'tmp' / 'logs'
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / 'mpc_stack.log'

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(str(log_file))
        ]
    )
    return log_file


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}


@dataclass
class SimulationConfig:
    """Configuration for the closed-loop simulation."""

    path: str = "sine"  # "straight", "sine" or "circle"
    path_length_m: float = 2000.0
    waypoint_spacing_m: float = 5.0
    num_waypoints: int = 6  # waypoints ahead used for the polynomial fit
    sine_amplitude_m: float = 5.0
    sine_wavelength_m: float = 200.0
    circle_radius_m: float = 100.0
    control_period_s: float = 0.1
    initial_speed: float = 10.0
    initial_offset_m: float = 0.0  # lateral start offset from the path
    apply_latency: bool = True  # plant keeps the previous command for the latency window


def build_simulation_config(config: dict) -> SimulationConfig:
    sim_cfg = config.get("simulation", {})
    defaults = SimulationConfig()
    return SimulationConfig(
        path=str(sim_cfg.get("path", defaults.path)),
        path_length_m=float(sim_cfg.get("path_length_m", defaults.path_length_m)),
        waypoint_spacing_m=float(sim_cfg.get("waypoint_spacing_m", defaults.waypoint_spacing_m)),
        num_waypoints=int(sim_cfg.get("num_waypoints", defaults.num_waypoints)),
        sine_amplitude_m=float(sim_cfg.get("sine_amplitude_m", defaults.sine_amplitude_m)),
        sine_wavelength_m=float(sim_cfg.get("sine_wavelength_m", defaults.sine_wavelength_m)),
        circle_radius_m=float(sim_cfg.get("circle_radius_m", defaults.circle_radius_m)),
        control_period_s=float(sim_cfg.get("control_period_s", defaults.control_period_s)),
        initial_speed=float(sim_cfg.get("initial_speed", defaults.initial_speed)),
        initial_offset_m=float(sim_cfg.get("initial_offset_m", defaults.initial_offset_m)),
        apply_latency=bool(sim_cfg.get("apply_latency", defaults.apply_latency)),
    )


def make_reference_path(sim_config: SimulationConfig) -> Tuple[np.ndarray, np.ndarray, bool]:
    """
    World-frame waypoints of the reference path.

    Returns:
        (xs, ys, closed) where closed paths wrap around
    """
    spacing = sim_config.waypoint_spacing_m
    if sim_config.path == "circle":
        radius = sim_config.circle_radius_m
        count = max(8, int(2.0 * math.pi * radius / spacing))
        angles = np.linspace(0.0, 2.0 * math.pi, count, endpoint=False)
        # Start at the origin heading +x, turning left
        return radius * np.sin(angles), radius * (1.0 - np.cos(angles)), True

    xs = np.arange(0.0, sim_config.path_length_m, spacing)
    if sim_config.path == "straight":
        return xs, np.zeros_like(xs), False
    if sim_config.path == "sine":
        ys = sim_config.sine_amplitude_m * np.sin(2.0 * math.pi * xs / sim_config.sine_wavelength_m)
        return xs, ys, False
    raise ValueError(f"Unknown path type: {sim_config.path}")


def to_control_command(result: MPCResult, max_delta: float, timestamp: float) -> ControlCommand:
    """Map the MPC actuation to normalized steering and throttle/brake."""
    return ControlCommand(
        timestamp=timestamp,
        steering=float(np.clip(result.delta / max_delta, -1.0, 1.0)),
        throttle=float(max(result.a, 0.0)),
        brake=float(max(-result.a, 0.0)),
        steering_angle=result.delta,
        acceleration=result.a,
    )


class MPCStack:
    """Closed-loop wiring of path, controller, plant and recorder."""

    def __init__(self, controller: MPCController, sim_config: Optional[SimulationConfig] = None,
                 recorder: Optional[DataRecorder] = None):
        self.controller = controller
        self.sim_config = sim_config if sim_config is not None else SimulationConfig()
        self.recorder = recorder
        self.plant = KinematicBicycleModel(
            lf=controller.config.lf, max_steering_angle=controller.config.max_delta
        )
        self.path_x, self.path_y, self.path_closed = make_reference_path(self.sim_config)
        self.frame_id = 0

    def initial_state(self) -> VehicleState:
        heading = math.atan2(self.path_y[1] - self.path_y[0], self.path_x[1] - self.path_x[0])
        offset = self.sim_config.initial_offset_m
        return VehicleState(
            timestamp=0.0,
            x=float(self.path_x[0] - offset * math.sin(heading)),
            y=float(self.path_y[0] + offset * math.cos(heading)),
            psi=heading,
            speed=self.sim_config.initial_speed,
        )

    def waypoints_ahead(self, x: float, y: float, psi: float) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Waypoints from the nearest one ahead of the vehicle, or None at the path end."""
        count = self.sim_config.num_waypoints
        dist = np.hypot(self.path_x - x, self.path_y - y)
        nearest = int(np.argmin(dist))
        # Skip the nearest point if it is behind the vehicle
        along = (self.path_x[nearest] - x) * math.cos(psi) + (self.path_y[nearest] - y) * math.sin(psi)
        if along < 0.0:
            nearest += 1
        indices = np.arange(nearest, nearest + count)
        if self.path_closed:
            indices = indices % len(self.path_x)
        elif indices[-1] >= len(self.path_x):
            return None
        return self.path_x[indices], self.path_y[indices]

    def local_problem(self, vehicle: VehicleState) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """
        Vehicle-frame state and path coefficients for the next solve.

        The measured pose is propagated through the latency window first, so the
        solve starts from where the vehicle will be when the command lands.
        """
        cfg = self.controller.config
        px, py, psi, v = predict_state_after_latency(
            vehicle.x, vehicle.y, vehicle.psi, vehicle.speed,
            vehicle.steering_angle, vehicle.acceleration, cfg.latency, cfg.lf,
        )
        waypoints = self.waypoints_ahead(px, py, psi)
        if waypoints is None:
            return None
        local_x, local_y = world_to_vehicle(waypoints[0], waypoints[1], px, py, psi)
        coeffs = polyfit(local_x, local_y)
        cte, epsi = compute_tracking_errors(coeffs)
        state = np.array([0.0, 0.0, 0.0, v, cte, epsi])
        return state, coeffs

    def step(self, vehicle: VehicleState) -> Optional[Tuple[VehicleState, MPCResult]]:
        """
        Run one control cycle and advance the plant.

        Returns:
            (next vehicle state, MPC result), or None when the path has ended
        """
        problem = self.local_problem(vehicle)
        if problem is None:
            logger.info(f"Reached end of reference path at frame {self.frame_id}")
            return None
        state, coeffs = problem

        solve_start = time.perf_counter()
        result = self.controller.solve(state, coeffs)
        solve_time = time.perf_counter() - solve_start

        command = to_control_command(result, self.controller.config.max_delta, vehicle.timestamp)
        next_vehicle = self._advance_plant(vehicle, result.delta, result.a)

        if self.recorder is not None:
            self.recorder.record_frame(RecordingFrame(
                timestamp=vehicle.timestamp,
                frame_id=self.frame_id,
                vehicle_state=vehicle,
                control_command=command,
                mpc_output=MPCOutput(
                    timestamp=vehicle.timestamp,
                    local_state=state,
                    path_coefficients=np.asarray(coeffs, dtype=float).reshape(N_COEFFS),
                    predicted_x=self.controller.pred_path_x.copy(),
                    predicted_y=self.controller.pred_path_y.copy(),
                    cost=result.cost,
                    success=result.success,
                    status=result.status,
                    solve_time=solve_time,
                ),
            ))
        self.frame_id += 1
        return next_vehicle, result

    def _advance_plant(self, vehicle: VehicleState, delta: float, a: float) -> VehicleState:
        period = self.sim_config.control_period_s
        x, y, psi, v = vehicle.x, vehicle.y, vehicle.psi, vehicle.speed

        # The previous command stays active until the latency elapses
        held = min(self.controller.config.latency, period) if self.sim_config.apply_latency else 0.0
        if held > 0.0:
            x, y, psi, v = self.plant.update(x, y, psi, v, vehicle.steering_angle, vehicle.acceleration, held)
        if period - held > 0.0:
            x, y, psi, v = self.plant.update(x, y, psi, v, delta, a, period - held)

        return VehicleState(
            timestamp=vehicle.timestamp + period,
            x=x, y=y, psi=psi, speed=v,
            steering_angle=delta,
            acceleration=a,
        )

    def run(self, steps: int) -> List[MPCResult]:
        """Drive the reference path for up to ``steps`` control cycles."""
        vehicle = self.initial_state()
        results: List[MPCResult] = []
        for _ in range(steps):
            outcome = self.step(vehicle)
            if outcome is None:
                break
            vehicle, result = outcome
            results.append(result)
            logger.debug(
                f"t={vehicle.timestamp:.2f}s v={vehicle.speed:.2f} delta={result.delta:.4f} "
                f"a={result.a:.3f} cte={result.cte:.3f}"
            )
        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning(f"{failed}/{len(results)} solves did not converge")
        return results


def summarize(results: List[MPCResult]) -> Dict[str, float]:
    """Tracking statistics over a run."""
    if not results:
        return {"cycles": 0.0}
    cte = np.array([r.cte for r in results])
    delta = np.array([r.delta for r in results])
    return {
        "cycles": float(len(results)),
        "mean_abs_cte": float(np.mean(np.abs(cte))),
        "max_abs_cte": float(np.max(np.abs(cte))),
        "max_abs_delta": float(np.max(np.abs(delta))),
        "success_rate": float(np.mean([r.success for r in results])),
    }


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Run the MPC stack in closed-loop simulation')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/mpc_config.yaml)')
    parser.add_argument('--profile', type=str, default=None,
                        help='MPC tuning profile (overrides the config file)')
    parser.add_argument('--path', type=str, default=None, choices=['straight', 'sine', 'circle'],
                        help='Reference path shape (overrides the config file)')
    parser.add_argument('--steps', type=int, default=300,
                        help='Number of control cycles to simulate')
    parser.add_argument('--record', action='store_true',
                        help='Record the run to HDF5')
    parser.add_argument('--recording_dir', type=str, default='data/recordings',
                        help='Directory for recordings')
    parser.add_argument('--verbose', action='store_true',
                        help='Log every control cycle')

    args = parser.parse_args()
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    config = load_config(args.config)
    if args.profile is not None:
        config.setdefault("control", {}).setdefault("mpc", {})["profile"] = args.profile
    if args.path is not None:
        config.setdefault("simulation", {})["path"] = args.path

    mpc_config = build_mpc_config(config)
    controller = MPCController(mpc_config)
    sim_config = build_simulation_config(config)

    recorder = None
    if args.record:
        recorder = DataRecorder(
            args.recording_dir,
            prediction_length=mpc_config.horizon - 1,
            metadata={"mpc_config": config_to_dict(mpc_config), "simulation": vars(sim_config)},
        )

    stack = MPCStack(controller, sim_config, recorder)
    try:
        results = stack.run(args.steps)
    finally:
        if recorder is not None:
            recorder.close()

    for key, value in summarize(results).items():
        print(f"{key}: {value:.4f}")


if __name__ == "__main__":
    main()
