"""
MPC (Model Predictive Control) controller.

Receding-horizon path tracking: every control cycle the controller builds an
optimization over N future steps from the latest vehicle state and path
polynomial, solves it, and issues the first actuation not already committed by
the sensor-to-actuator latency.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from control.mpc_layout import STATE_SIZE, VariableLayout
from control.mpc_problem import CostEvaluator, build_problem, latency_steps
from control.nlp_solver import IpoptSolver, SolverOptions
from control.vehicle_model import DEFAULT_LF
from trajectory.polynomial import N_COEFFS

logger = logging.getLogger(__name__)


@dataclass
class MPCConfig:
    """Configuration for the MPC controller. Fixed for the controller's lifetime."""

    # Horizon
    horizon: int = 12  # N, number of timesteps
    dt: float = 0.05  # seconds per timestep

    # Reference state
    ref_v: float = 85.0
    ref_cte: float = 0.0
    ref_epsi: float = 0.0

    # Tracking weights
    w_cte: float = 1.0
    w_epsi: float = 1.0
    w_v: float = 1.0

    # Actuator magnitude weights
    w_delta: float = 200.0  # minimizes the use of steering
    w_a: float = 1.0  # minimizes the use of acceleration

    # Actuator smoothness weights
    w_ddelta: float = 700.0  # smoothness of steering
    w_da: float = 1.0  # smoothness of acceleration

    # Vehicle / actuator limits
    max_delta: float = 0.436332  # 25 degrees
    max_accel: float = 1.0  # normalized throttle/brake
    lf: float = DEFAULT_LF

    # Sensor-to-actuator latency (seconds)
    latency: float = 0.1

    # Store the extracted command of a failed solve as the next latency hold
    commit_failed_solves: bool = True

    solver: SolverOptions = field(default_factory=SolverOptions)

    @property
    def num_states_in_latency(self) -> int:
        return latency_steps(self.latency, self.dt)

    def validate(self) -> None:
        """Reject inconsistent configurations at startup."""
        if self.horizon < 3:
            raise ValueError(f"horizon must be at least 3, got {self.horizon}")
        if self.dt <= 0.0:
            raise ValueError(f"dt must be positive, got {self.dt}")
        if self.latency < 0.0:
            raise ValueError(f"latency must be non-negative, got {self.latency}")
        if self.num_states_in_latency >= self.horizon - 1:
            raise ValueError(
                f"latency of {self.latency}s covers {self.num_states_in_latency} steps, "
                f"leaving no free actuation in a horizon of {self.horizon}"
            )
        for name in ("w_cte", "w_epsi", "w_v", "w_delta", "w_a", "w_ddelta", "w_da"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}")
        for name in ("max_delta", "max_accel", "lf"):
            if getattr(self, name) <= 0.0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        self.solver.validate()


# Tuning presets per target speed.
MPC_PROFILES: Dict[str, Dict[str, Any]] = {
    "72mph": {
        "horizon": 10,
        "dt": 0.05,
        "ref_v": 75.0,
        "w_ddelta": 500.0,
        "w_delta": 200.0,
    },
    "88mph": {
        "horizon": 12,
        "dt": 0.1,
        "ref_v": 90.0,
        "w_ddelta": 1.0,
        "w_delta": 5000.0,
    },
    "85mph": {
        "horizon": 12,
        "dt": 0.05,
        "ref_v": 85.0,
        "w_ddelta": 700.0,
        "w_delta": 200.0,
    },
}
DEFAULT_PROFILE = "85mph"


def config_from_profile(profile: str = DEFAULT_PROFILE, **overrides: Any) -> MPCConfig:
    """Build a config from a named tuning profile, with explicit overrides on top."""
    if profile not in MPC_PROFILES:
        raise ValueError(f"Unknown MPC profile: {profile} (known: {sorted(MPC_PROFILES)})")
    values = dict(MPC_PROFILES[profile])
    values.update(overrides)
    return MPCConfig(**values)


@dataclass
class MPCResult:
    """Output of one controller cycle."""

    # One-step-ahead prediction (timestep 1)
    x: float
    y: float
    psi: float
    v: float
    cte: float
    epsi: float

    # Command to issue now (first actuation after the latency window)
    delta: float
    a: float

    # Actuation at transition 1, kept alongside the prediction for diagnostics
    delta_one_step: float
    a_one_step: float

    cost: float
    success: bool
    status: str
    solution: np.ndarray = field(repr=False)

    def as_list(self) -> List[float]:
        """[x, y, psi, v, cte, epsi, delta, a]"""
        return [self.x, self.y, self.psi, self.v, self.cte, self.epsi, self.delta, self.a]


class MPCController:
    """
    Model Predictive Control for path tracking.

    Keeps the last issued steering and acceleration between cycles; they fix
    the actuation inside the latency window of the next solve.
    """

    def __init__(self, config: Optional[MPCConfig] = None):
        """
        Initialize MPC controller.

        Args:
            config: Controller configuration (defaults to the 85mph profile)
        """
        self.config = config if config is not None else MPCConfig()
        self.config.validate()

        self.layout = VariableLayout(horizon=self.config.horizon)
        self.num_states_in_latency = self.config.num_states_in_latency
        self.evaluator = CostEvaluator(self.config, self.layout)
        self.solver = IpoptSolver(
            self.layout.n_vars, N_COEFFS, self.evaluator, self.config.solver
        )

        self.steering_delta = 0.0
        self.acceleration = 0.0
        self.pred_path_x = np.zeros(self.config.horizon - 1)
        self.pred_path_y = np.zeros(self.config.horizon - 1)
        self.last_result: Optional[MPCResult] = None
        self._lock = threading.Lock()

        logger.info(
            f"MPC controller: N={self.config.horizon}, dt={self.config.dt}s, "
            f"ref_v={self.config.ref_v}, latency steps={self.num_states_in_latency}"
        )

    @property
    def predicted_trajectory(self) -> List[Tuple[float, float]]:
        """Predicted (x, y) for timesteps 2..N of the last solve."""
        return list(zip(self.pred_path_x.tolist(), self.pred_path_y.tolist()))

    def reset(self) -> None:
        """Forget the issued actuation and the predicted trajectory."""
        with self._lock:
            self.steering_delta = 0.0
            self.acceleration = 0.0
            self.pred_path_x[:] = 0.0
            self.pred_path_y[:] = 0.0
            self.last_result = None

    def solve(self, state: Sequence[float], coeffs: Sequence[float]) -> MPCResult:
        """
        Run one control cycle.

        Args:
            state: (x, y, psi, v, cte, epsi) in the vehicle frame
            coeffs: Ascending cubic path coefficients in the same frame

        Returns:
            MPCResult with the one-step prediction and the command to issue
        """
        state, coeffs = self._validate_inputs(state, coeffs)

        with self._lock:
            problem = build_problem(
                state, self.config, self.layout, self.steering_delta, self.acceleration
            )
            outcome = self.solver.solve(
                problem.x0, problem.lbx, problem.ubx, problem.lbg, problem.ubg, coeffs
            )
            logger.debug(f"MPC cost {outcome.cost:.4f} ({outcome.status})")
            if not outcome.success:
                logger.warning(f"MPC solve did not converge: {outcome.status}, using best effort")

            result = self._extract(outcome.x, outcome.cost, outcome.success, outcome.status)
            if outcome.success or self.config.commit_failed_solves:
                self.steering_delta = result.delta
                self.acceleration = result.a
            self.last_result = result
            return result

    def _extract(self, solution: np.ndarray, cost: float, success: bool, status: str) -> MPCResult:
        lay = self.layout
        held = self.num_states_in_latency

        # The first actuation after the latency window is the one to issue;
        # earlier slots were fixed to the previous command.
        delta = float(solution[lay.delta_start + held])
        a = float(solution[lay.a_start + held])

        n = lay.horizon
        self.pred_path_x[:] = solution[lay.x_start + 1:lay.x_start + n]
        self.pred_path_y[:] = solution[lay.y_start + 1:lay.y_start + n]

        return MPCResult(
            x=float(solution[lay.x_start + 1]),
            y=float(solution[lay.y_start + 1]),
            psi=float(solution[lay.psi_start + 1]),
            v=float(solution[lay.v_start + 1]),
            cte=float(solution[lay.cte_start + 1]),
            epsi=float(solution[lay.epsi_start + 1]),
            delta=delta,
            a=a,
            delta_one_step=float(solution[lay.delta_start + 1]),
            a_one_step=float(solution[lay.a_start + 1]),
            cost=float(cost),
            success=success,
            status=status,
            solution=solution,
        )

    @staticmethod
    def _validate_inputs(state: Sequence[float], coeffs: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
        state = np.asarray(state, dtype=float).reshape(-1)
        coeffs = np.asarray(coeffs, dtype=float).reshape(-1)
        if state.size != STATE_SIZE:
            raise ValueError(f"State must have {STATE_SIZE} values, got {state.size}")
        if coeffs.size != N_COEFFS:
            raise ValueError(f"Path polynomial must have {N_COEFFS} coefficients, got {coeffs.size}")
        if not np.all(np.isfinite(state)):
            raise ValueError(f"State contains non-finite values: {state.tolist()}")
        if not np.all(np.isfinite(coeffs)):
            raise ValueError(f"Path coefficients contain non-finite values: {coeffs.tolist()}")
        return state, coeffs


def build_mpc_controller(config: dict) -> MPCController:
    """Build an MPCController from the nested config dict (``control.mpc`` section)."""
    return MPCController(build_mpc_config(config))


def build_mpc_config(config: dict) -> MPCConfig:
    """Translate the ``control.mpc`` YAML section into an MPCConfig."""
    mpc_cfg = config.get("control", {}).get("mpc", {})
    solver_cfg = mpc_cfg.get("solver", {})

    profile = str(mpc_cfg.get("profile", DEFAULT_PROFILE))
    base = config_from_profile(profile)

    solver = SolverOptions(
        print_level=int(solver_cfg.get("print_level", base.solver.print_level)),
        print_time=bool(solver_cfg.get("print_time", base.solver.print_time)),
        max_cpu_time=float(solver_cfg.get("max_cpu_time", base.solver.max_cpu_time)),
        max_iter=int(solver_cfg.get("max_iter", base.solver.max_iter)),
        derivative_mode=str(solver_cfg.get("derivative_mode", base.solver.derivative_mode)),
    )

    values: Dict[str, Any] = {}
    for f in fields(MPCConfig):
        if f.name == "solver":
            continue
        default = getattr(base, f.name)
        raw = mpc_cfg.get(f.name, default)
        if isinstance(default, bool):
            values[f.name] = bool(raw)
        elif isinstance(default, int):
            values[f.name] = int(raw)
        else:
            values[f.name] = float(raw)
    if "max_delta_deg" in mpc_cfg:
        values["max_delta"] = math.radians(float(mpc_cfg["max_delta_deg"]))

    return MPCConfig(solver=solver, **values)


def config_to_dict(config: MPCConfig) -> Dict[str, Any]:
    """Plain-dict view of a config (for recording metadata)."""
    return asdict(config)
