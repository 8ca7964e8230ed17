"""
Reference path helpers: cubic path polynomials in the vehicle frame.

Coefficients are always ascending, ``y = c0 + c1*x + c2*x^2 + c3*x^3``.
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np

POLY_ORDER = 3
N_COEFFS = POLY_ORDER + 1


def polyeval(coeffs: Sequence[float], x):
    """
    Evaluate the cubic path polynomial at ``x``.

    Written with plain arithmetic so ``x`` may be a float, a numpy array or a
    CasADi symbol.
    """
    return coeffs[0] + coeffs[1] * x + coeffs[2] * x ** 2 + coeffs[3] * x ** 3


def poly_derivative(coeffs: Sequence[float], x):
    """Slope of the cubic path polynomial, ``c1 + 2*c2*x + 3*c3*x^2``."""
    return coeffs[1] + 2.0 * coeffs[2] * x + 3.0 * coeffs[3] * x ** 2


def polyfit(xs: Sequence[float], ys: Sequence[float], order: int = POLY_ORDER) -> np.ndarray:
    """
    Least-squares polynomial fit of waypoints.

    Args:
        xs: Waypoint x coordinates (vehicle frame, meters)
        ys: Waypoint y coordinates (vehicle frame, meters)
        order: Polynomial order

    Returns:
        Ascending coefficients, length ``order + 1``
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    if xs.shape != ys.shape:
        raise ValueError(f"Waypoint shapes differ: {xs.shape} vs {ys.shape}")
    if xs.size < order + 1:
        raise ValueError(f"Need at least {order + 1} waypoints for order {order}, got {xs.size}")
    return np.polynomial.polynomial.polyfit(xs, ys, order)


def world_to_vehicle(
    xs: Sequence[float],
    ys: Sequence[float],
    px: float,
    py: float,
    psi: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Transform world-frame waypoints into the vehicle frame.

    The vehicle sits at the origin facing +x after the transform.
    """
    dx = np.asarray(xs, dtype=float) - px
    dy = np.asarray(ys, dtype=float) - py
    cos_psi = math.cos(-psi)
    sin_psi = math.sin(-psi)
    local_x = dx * cos_psi - dy * sin_psi
    local_y = dx * sin_psi + dy * cos_psi
    return local_x, local_y


def compute_tracking_errors(coeffs: Sequence[float]) -> Tuple[float, float]:
    """
    Cross-track and heading error of a vehicle at the local origin.

    cte is the path offset at x = 0 (``f(0) - y`` with y = 0); epsi is the
    vehicle heading (0) minus the path tangent heading at x = 0.
    """
    cte = float(polyeval(coeffs, 0.0))
    epsi = -math.atan(float(poly_derivative(coeffs, 0.0)))
    return cte, epsi


def predict_state_after_latency(
    px: float,
    py: float,
    psi: float,
    v: float,
    delta: float,
    a: float,
    latency: float,
    lf: float,
) -> Tuple[float, float, float, float]:
    """
    Propagate a measured pose through the actuation latency window.

    Uses the same kinematic model as the controller, holding the last issued
    steering and acceleration for ``latency`` seconds.
    """
    if latency <= 0.0:
        return px, py, psi, v
    px = px + v * math.cos(psi) * latency
    py = py + v * math.sin(psi) * latency
    psi = psi + v / lf * delta * latency
    v = v + a * latency
    return px, py, psi, v
