"""
Nonlinear program solver backend (CasADi + IPOPT).

The controller hands this module a symbolic cost/constraint function, the
variable bounds and the constraint bounds. CasADi differentiates the function
and IPOPT solves the problem within a CPU-time budget.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple

import casadi as ca
import numpy as np

logger = logging.getLogger(__name__)

# Maps the derivative mode to CasADi's forward/reverse weighting.
AD_WEIGHTS = {"forward": 0.0, "reverse": 1.0}


@dataclass
class SolverOptions:
    """Configuration for the IPOPT solve."""

    print_level: int = 0  # IPOPT verbosity, 0-12
    print_time: bool = False
    max_cpu_time: float = 0.05  # seconds per solve
    max_iter: int = 3000
    derivative_mode: str = "auto"  # "auto", "forward" or "reverse"

    def validate(self) -> None:
        if self.max_cpu_time <= 0.0:
            raise ValueError(f"max_cpu_time must be positive, got {self.max_cpu_time}")
        if self.max_iter <= 0:
            raise ValueError(f"max_iter must be positive, got {self.max_iter}")
        if not 0 <= self.print_level <= 12:
            raise ValueError(f"print_level must be in [0, 12], got {self.print_level}")
        if self.derivative_mode != "auto" and self.derivative_mode not in AD_WEIGHTS:
            raise ValueError(f"Unknown derivative_mode: {self.derivative_mode}")

    def to_casadi(self) -> Dict[str, object]:
        """Option dict for ``casadi.nlpsol``."""
        opts: Dict[str, object] = {
            "ipopt.print_level": int(self.print_level),
            "ipopt.sb": "yes",
            "ipopt.max_cpu_time": float(self.max_cpu_time),
            "ipopt.max_iter": int(self.max_iter),
            "print_time": bool(self.print_time),
            "error_on_fail": False,
        }
        if self.derivative_mode in AD_WEIGHTS:
            opts["ad_weight"] = AD_WEIGHTS[self.derivative_mode]
        return opts


@dataclass
class SolveResult:
    """Output of one solver call."""

    success: bool
    status: str
    x: np.ndarray
    cost: float


# (decision vector, parameters) -> (cost, constraint residuals)
CostFunction = Callable[[ca.SX, ca.SX], Tuple[ca.SX, ca.SX]]


class IpoptSolver:
    """
    IPOPT solver for a fixed-size problem.

    The problem is built once; each call supplies the initial guess, the
    bounds and the parameter values (the path coefficients).
    """

    def __init__(self, n_vars: int, n_params: int, fg: CostFunction,
                 options: Optional[SolverOptions] = None, name: str = "mpc") -> None:
        self.options = options or SolverOptions()
        self.options.validate()
        self.n_vars = n_vars
        self.n_params = n_params

        variables = ca.SX.sym("vars", n_vars)
        params = ca.SX.sym("params", n_params)
        cost, constraints = fg(variables, params)
        self.n_constraints = constraints.shape[0]

        nlp = {"x": variables, "p": params, "f": cost, "g": constraints}
        self._solver = ca.nlpsol(name, "ipopt", nlp, self.options.to_casadi())
        logger.info(
            f"Built IPOPT solver '{name}': {n_vars} variables, {self.n_constraints} constraints, "
            f"max_cpu_time={self.options.max_cpu_time:.3f}s"
        )

    def solve(self, x0: Sequence[float], lbx: Sequence[float], ubx: Sequence[float],
              lbg: Sequence[float], ubg: Sequence[float], params: Sequence[float]) -> SolveResult:
        """
        Solve the problem from the given initial guess.

        Returns:
            SolveResult; a failed solve still carries IPOPT's last iterate
        """
        solution = self._solver(
            x0=np.asarray(x0, dtype=float),
            lbx=np.asarray(lbx, dtype=float),
            ubx=np.asarray(ubx, dtype=float),
            lbg=np.asarray(lbg, dtype=float),
            ubg=np.asarray(ubg, dtype=float),
            p=np.asarray(params, dtype=float),
        )
        stats = self._solver.stats()
        return SolveResult(
            success=bool(stats.get("success", False)),
            status=str(stats.get("return_status", "unknown")),
            x=np.asarray(solution["x"].full(), dtype=float).reshape(-1),
            cost=float(solution["f"]),
        )
