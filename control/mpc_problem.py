"""
MPC problem formulation: variable bounds, constraint bounds, cost and dynamics.

Two pieces are rebuilt around every control cycle:
  1. Problem builder: initial guess, variable bounds (actuator limits plus the
     latency hold) and constraint bounds (pinned initial state).
  2. Cost/dynamics function: a pure map from the decision vector to the
     scalar cost and the constraint residuals. The solver evaluates and
     differentiates it many times per solve.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence, Tuple

import casadi as ca
import numpy as np

from control.mpc_layout import STATE_FIELDS, VariableLayout
from trajectory.polynomial import N_COEFFS, poly_derivative, polyeval

if TYPE_CHECKING:
    from control.mpc_controller import MPCConfig


# IPOPT treats |bound| >= 1e19 as infinite.
UNBOUNDED = 1.0e19


def latency_steps(latency: float, dt: float) -> int:
    """Number of horizon steps whose actuation is already committed (rounded half up)."""
    return int(latency / dt + 0.5)


@dataclass
class MPCProblem:
    """Everything the solver needs for one cycle, except the cost function."""

    x0: np.ndarray
    lbx: np.ndarray
    ubx: np.ndarray
    lbg: np.ndarray
    ubg: np.ndarray


def build_problem(
    state: Sequence[float],
    config: "MPCConfig",
    layout: VariableLayout,
    last_delta: float,
    last_a: float,
) -> MPCProblem:
    """
    Build initial guess and bounds for one solve.

    Args:
        state: Current (x, y, psi, v, cte, epsi) in the vehicle frame
        config: Controller configuration
        layout: Decision-vector layout for the configured horizon
        last_delta: Steering issued on the previous cycle (held during latency)
        last_a: Acceleration issued on the previous cycle (held during latency)

    Returns:
        MPCProblem with arrays sized to the layout
    """
    held = config.num_states_in_latency
    starts = layout.state_starts()

    # Initial guess: zeros except the known current state.
    x0 = np.zeros(layout.n_vars)
    for name, value in zip(STATE_FIELDS, state):
        x0[starts[name]] = value

    # Non-actuators are unconstrained.
    lbx = np.full(layout.n_vars, -UNBOUNDED)
    ubx = np.full(layout.n_vars, UNBOUNDED)

    delta_block = layout.block("delta")
    lbx[delta_block] = -config.max_delta
    ubx[delta_block] = config.max_delta

    a_block = layout.block("a")
    lbx[a_block] = -config.max_accel
    ubx[a_block] = config.max_accel

    # Latency hold: the actuator cannot react before the latency elapses, so
    # the first steps keep the previously issued command.
    delta_start = layout.delta_start
    lbx[delta_start:delta_start + held] = last_delta
    ubx[delta_start:delta_start + held] = last_delta
    a_start = layout.a_start
    lbx[a_start:a_start + held] = last_a
    ubx[a_start:a_start + held] = last_a

    # Dynamics residuals must be zero; the timestep-0 entries pin the state.
    lbg = np.zeros(layout.n_constraints)
    ubg = np.zeros(layout.n_constraints)
    for name, value in zip(STATE_FIELDS, state):
        lbg[starts[name]] = value
        ubg[starts[name]] = value

    return MPCProblem(x0=x0, lbx=lbx, ubx=ubx, lbg=lbg, ubg=ubg)


class CostEvaluator:
    """
    Cost and constraint residuals of the MPC problem.

    Calling the evaluator on symbolic CasADi vectors yields the expressions
    handed to the solver; ``evaluate`` runs the same expressions on numbers.
    The path coefficients are an input, fixed for the duration of a solve.
    """

    def __init__(self, config: "MPCConfig", layout: VariableLayout) -> None:
        self.config = config
        self.layout = layout
        self._function = None

    def __call__(self, vars, coeffs) -> Tuple[ca.SX, ca.SX]:
        cost = self.cost(vars)
        residuals = self.constraints(vars, coeffs)
        return cost, residuals

    def cost(self, vars):
        cfg = self.config
        lay = self.layout
        n = lay.horizon
        cost = 0

        # Reference state tracking.
        for i in range(n):
            cost += cfg.w_cte * (vars[lay.cte_start + i] - cfg.ref_cte) ** 2
            cost += cfg.w_epsi * (vars[lay.epsi_start + i] - cfg.ref_epsi) ** 2
            cost += cfg.w_v * (vars[lay.v_start + i] - cfg.ref_v) ** 2

        # Minimize the use of actuators.
        for i in range(n - 1):
            cost += cfg.w_delta * vars[lay.delta_start + i] ** 2
            cost += cfg.w_a * vars[lay.a_start + i] ** 2

        # Minimize the gap between sequential actuations.
        for i in range(n - 2):
            cost += cfg.w_ddelta * (vars[lay.delta_start + i + 1] - vars[lay.delta_start + i]) ** 2
            cost += cfg.w_da * (vars[lay.a_start + i + 1] - vars[lay.a_start + i]) ** 2

        return cost

    def constraints(self, vars, coeffs):
        """Residual vector, zero wherever the dynamics hold."""
        lay = self.layout
        dt = self.config.dt
        lf = self.config.lf
        g = [None] * lay.n_constraints

        # Initial state; bounded to the measured values by the builder.
        for start in lay.state_starts().values():
            g[start] = vars[start]

        for i in range(lay.horizon - 1):
            x0 = vars[lay.x_start + i]
            y0 = vars[lay.y_start + i]
            psi0 = vars[lay.psi_start + i]
            v0 = vars[lay.v_start + i]
            epsi0 = vars[lay.epsi_start + i]
            delta0 = vars[lay.delta_start + i]
            a0 = vars[lay.a_start + i]

            f0 = polyeval(coeffs, x0)
            psides0 = ca.atan(poly_derivative(coeffs, x0))
            yaw_step = v0 / lf * delta0 * dt

            g[lay.x_start + i + 1] = vars[lay.x_start + i + 1] - (x0 + v0 * ca.cos(psi0) * dt)
            g[lay.y_start + i + 1] = vars[lay.y_start + i + 1] - (y0 + v0 * ca.sin(psi0) * dt)
            g[lay.psi_start + i + 1] = vars[lay.psi_start + i + 1] - (psi0 + yaw_step)
            g[lay.v_start + i + 1] = vars[lay.v_start + i + 1] - (v0 + a0 * dt)
            g[lay.cte_start + i + 1] = vars[lay.cte_start + i + 1] - ((f0 - y0) + v0 * ca.sin(epsi0) * dt)
            g[lay.epsi_start + i + 1] = vars[lay.epsi_start + i + 1] - ((psi0 - psides0) + yaw_step)

        return ca.vertcat(*g)

    def function(self) -> ca.Function:
        """CasADi function ``fg(vars, coeffs) -> (cost, residuals)``."""
        if self._function is None:
            vars = ca.SX.sym("vars", self.layout.n_vars)
            coeffs = ca.SX.sym("coeffs", N_COEFFS)
            cost, residuals = self(vars, coeffs)
            self._function = ca.Function(
                "fg", [vars, coeffs], [cost, residuals], ["vars", "coeffs"], ["cost", "g"]
            )
        return self._function

    def evaluate(self, vars: Sequence[float], coeffs: Sequence[float]) -> Tuple[float, np.ndarray]:
        """Numeric cost and residuals at a decision vector."""
        cost, residuals = self.function()(
            np.asarray(vars, dtype=float), np.asarray(coeffs, dtype=float)
        )
        return float(cost), np.asarray(residuals.full(), dtype=float).reshape(-1)
