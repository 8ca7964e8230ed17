"""
Vehicle dynamics model (kinematic bicycle model).
Used by the MPC constraints, for simulation, and to build feasible trajectories.
"""

import math
import numpy as np
from typing import Optional, Sequence, Tuple

from control.mpc_layout import STATE_FIELDS, VariableLayout
from trajectory.polynomial import poly_derivative, polyeval


# Distance from the front axle to the center of gravity. Tuned so the model's
# turning radius at constant speed and steering matches the measured radius.
DEFAULT_LF = 2.67


class KinematicBicycleModel:
    """
    Kinematic bicycle model referenced to the front axle.
    Simplified 2D model assuming no slip, roll or pitch.
    """

    def __init__(self, lf: float = DEFAULT_LF, max_steering_angle: Optional[float] = None):
        """
        Initialize bicycle model.

        Args:
            lf: Characteristic length, front axle to center of gravity (meters)
            max_steering_angle: Steering clamp for plant updates (radians), None for no clamp
        """
        if lf <= 0.0:
            raise ValueError(f"Characteristic length must be positive, got {lf}")
        self.lf = lf
        self.max_steering_angle = max_steering_angle

    def update(self, x: float, y: float, heading: float, velocity: float,
               steering_angle: float, acceleration: float, dt: float) -> Tuple[float, float, float, float]:
        """
        Advance a world-frame pose by one step.

        Args:
            x: Current x position
            y: Current y position
            heading: Current heading (radians)
            velocity: Current velocity
            steering_angle: Steering angle (radians, clamped)
            acceleration: Longitudinal acceleration command
            dt: Time step (seconds)

        Returns:
            New (x, y, heading, velocity)
        """
        if self.max_steering_angle is not None:
            steering_angle = float(np.clip(steering_angle, -self.max_steering_angle, self.max_steering_angle))

        new_x = x + velocity * math.cos(heading) * dt
        new_y = y + velocity * math.sin(heading) * dt
        new_heading = heading + velocity / self.lf * steering_angle * dt
        new_velocity = velocity + acceleration * dt

        # Normalize heading to [-pi, pi]
        new_heading = math.atan2(math.sin(new_heading), math.cos(new_heading))

        return new_x, new_y, new_heading, new_velocity

    def step(self, state: Sequence[float], delta: float, a: float, dt: float,
             coeffs: Sequence[float]) -> Tuple[float, float, float, float, float, float]:
        """
        Predict the next (x, y, psi, v, cte, epsi) in the vehicle frame.

        This is the transition the MPC enforces as an equality constraint.
        Heading is not normalized.
        """
        x, y, psi, v, cte, epsi = (float(value) for value in state)
        psides = math.atan(float(poly_derivative(coeffs, x)))
        yaw_step = v / self.lf * delta * dt
        return (
            x + v * math.cos(psi) * dt,
            y + v * math.sin(psi) * dt,
            psi + yaw_step,
            v + a * dt,
            float(polyeval(coeffs, x)) - y + v * math.sin(epsi) * dt,
            psi - psides + yaw_step,
        )

    def rollout(self, state: Sequence[float], deltas: Sequence[float], accels: Sequence[float],
                dt: float, coeffs: Sequence[float]) -> np.ndarray:
        """
        Build a flat decision vector that satisfies the transition equations.

        Args:
            state: Initial (x, y, psi, v, cte, epsi)
            deltas: Steering per transition, length N - 1
            accels: Acceleration per transition, length N - 1

        Returns:
            Flat vector in ``VariableLayout`` order
        """
        if len(deltas) != len(accels):
            raise ValueError(f"Actuation lengths differ: {len(deltas)} vs {len(accels)}")
        layout = VariableLayout(horizon=len(deltas) + 1)
        states = [tuple(float(value) for value in state)]
        for delta, a in zip(deltas, accels):
            states.append(self.step(states[-1], delta, a, dt, coeffs))
        columns = np.array(states).T
        fields = {name: columns[i] for i, name in enumerate(STATE_FIELDS)}
        fields["delta"] = deltas
        fields["a"] = accels
        return layout.pack(fields)

    def turning_radius(self, steering_angle: float) -> float:
        """
        Radius of the circle driven at constant steering, independent of speed.

        Returns:
            Radius (meters), infinite for straight driving
        """
        if abs(steering_angle) < 1e-9:
            return float("inf")
        return self.lf / abs(steering_angle)
