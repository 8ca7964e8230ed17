"""
Decision-vector layout for the MPC problem.

The solver works on one flat vector. It holds six state blocks of length N
(x, y, psi, v, cte, epsi) followed by two actuation blocks of length N - 1
(delta, a). Every index used by the problem builder and the cost function
comes from the block offsets defined here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np


STATE_FIELDS: Tuple[str, ...] = ("x", "y", "psi", "v", "cte", "epsi")
ACTUATOR_FIELDS: Tuple[str, ...] = ("delta", "a")
STATE_SIZE = len(STATE_FIELDS)
ACTUATOR_SIZE = len(ACTUATOR_FIELDS)


@dataclass(frozen=True)
class VariableLayout:
    """Block offsets of the flattened decision vector for a horizon of N steps."""

    horizon: int

    def __post_init__(self) -> None:
        if self.horizon < 2:
            raise ValueError(f"Horizon must have at least 2 steps, got {self.horizon}")

    @property
    def n_vars(self) -> int:
        return self.horizon * STATE_SIZE + (self.horizon - 1) * ACTUATOR_SIZE

    @property
    def n_constraints(self) -> int:
        return self.horizon * STATE_SIZE

    @property
    def x_start(self) -> int:
        return 0

    @property
    def y_start(self) -> int:
        return self.x_start + self.horizon

    @property
    def psi_start(self) -> int:
        return self.y_start + self.horizon

    @property
    def v_start(self) -> int:
        return self.psi_start + self.horizon

    @property
    def cte_start(self) -> int:
        return self.v_start + self.horizon

    @property
    def epsi_start(self) -> int:
        return self.cte_start + self.horizon

    @property
    def delta_start(self) -> int:
        return self.epsi_start + self.horizon

    @property
    def a_start(self) -> int:
        return self.delta_start + self.horizon - 1

    def start(self, field: str) -> int:
        """Block-start offset of a named field."""
        if field not in STATE_FIELDS and field not in ACTUATOR_FIELDS:
            raise KeyError(f"Unknown layout field: {field}")
        return getattr(self, f"{field}_start")

    def length(self, field: str) -> int:
        """Number of entries in a named block."""
        if field in STATE_FIELDS:
            return self.horizon
        if field in ACTUATOR_FIELDS:
            return self.horizon - 1
        raise KeyError(f"Unknown layout field: {field}")

    def block(self, field: str) -> slice:
        """Slice addressing the whole block of a named field."""
        start = self.start(field)
        return slice(start, start + self.length(field))

    def index(self, field: str, step: int) -> int:
        """Flat index of ``field`` at timestep (or transition) ``step``."""
        length = self.length(field)
        if not 0 <= step < length:
            raise IndexError(f"{field} step {step} outside [0, {length})")
        return self.start(field) + step

    def state_starts(self) -> Dict[str, int]:
        """Timestep-0 offsets of the six state blocks, in state order."""
        return {name: self.start(name) for name in STATE_FIELDS}

    def split(self, vector: Sequence[float]) -> Dict[str, np.ndarray]:
        """View a flat vector as named per-field arrays."""
        values = np.asarray(vector, dtype=float).reshape(-1)
        if values.size != self.n_vars:
            raise ValueError(f"Expected {self.n_vars} values, got {values.size}")
        return {name: values[self.block(name)] for name in STATE_FIELDS + ACTUATOR_FIELDS}

    def pack(self, fields: Dict[str, Sequence[float]]) -> np.ndarray:
        """Assemble a flat vector from named per-field sequences."""
        vector = np.zeros(self.n_vars)
        for name in STATE_FIELDS + ACTUATOR_FIELDS:
            values = np.asarray(fields[name], dtype=float).reshape(-1)
            if values.size != self.length(name):
                raise ValueError(
                    f"{name} needs {self.length(name)} values, got {values.size}"
                )
            vector[self.block(name)] = values
        return vector
