"""
Data format definitions for MPC recordings.
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any
import numpy as np


@dataclass
class VehicleState:
    """Vehicle state data (world frame)."""
    timestamp: float
    x: float
    y: float
    psi: float  # heading (radians)
    speed: float
    steering_angle: float = 0.0  # steering currently applied (radians)
    acceleration: float = 0.0  # acceleration currently applied (normalized)


@dataclass
class ControlCommand:
    """Control command data."""
    timestamp: float
    steering: float  # -1.0 to 1.0 (fraction of max steering angle)
    throttle: float  # 0.0 to 1.0
    brake: float     # 0.0 to 1.0
    # Raw MPC actuation
    steering_angle: Optional[float] = None  # radians
    acceleration: Optional[float] = None  # normalized, -1.0 to 1.0


@dataclass
class MPCOutput:
    """MPC solve output."""
    timestamp: float
    local_state: np.ndarray  # [6] x, y, psi, v, cte, epsi at solve time (vehicle frame)
    path_coefficients: np.ndarray  # [4] ascending cubic coefficients
    predicted_x: np.ndarray  # [N-1] predicted x, timesteps 2..N
    predicted_y: np.ndarray  # [N-1] predicted y, timesteps 2..N
    cost: float
    success: bool
    status: str
    solve_time: float = 0.0  # seconds


@dataclass
class RecordingFrame:
    """Complete frame of recorded data."""
    timestamp: float
    frame_id: int
    vehicle_state: Optional[VehicleState] = None
    control_command: Optional[ControlCommand] = None
    mpc_output: Optional[MPCOutput] = None
    metadata: Optional[Dict[str, Any]] = None
