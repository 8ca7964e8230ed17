"""
Closed-loop tests for the MPC stack: path following on a kinematic plant.
"""

import math

import numpy as np
import pytest

from control.mpc_controller import MPCController, MPCResult, config_from_profile
from control.nlp_solver import SolverOptions
from data.formats.data_format import VehicleState
from mpc_stack import (
    MPCStack,
    SimulationConfig,
    make_reference_path,
    summarize,
    to_control_command,
)


def _make_stack(recorder=None, ref_v=15.0, **sim_overrides) -> MPCStack:
    controller = MPCController(config_from_profile(
        "72mph", ref_v=ref_v, solver=SolverOptions(max_cpu_time=5.0)
    ))
    sim_overrides.setdefault("path", "straight")
    sim_overrides.setdefault("path_length_m", 400.0)
    return MPCStack(controller, SimulationConfig(**sim_overrides), recorder)


def _drive(stack: MPCStack, steps: int):
    vehicle = stack.initial_state()
    trace = [vehicle]
    for _ in range(steps):
        outcome = stack.step(vehicle)
        if outcome is None:
            break
        vehicle, _ = outcome
        trace.append(vehicle)
    return trace


class TestReferencePath:
    def test_straight(self):
        xs, ys, closed = make_reference_path(SimulationConfig(path="straight", path_length_m=100.0))
        assert not closed
        assert len(xs) == 20
        assert np.all(ys == 0.0)

    def test_sine_amplitude(self):
        xs, ys, _ = make_reference_path(SimulationConfig(path="sine", sine_amplitude_m=3.0))
        assert np.max(np.abs(ys)) <= 3.0 + 1e-9
        assert np.max(ys) > 2.9

    def test_circle_starts_at_origin_heading_forward(self):
        xs, ys, closed = make_reference_path(SimulationConfig(path="circle", circle_radius_m=50.0))
        assert closed
        assert xs[0] == pytest.approx(0.0)
        assert ys[0] == pytest.approx(0.0)
        assert xs[1] > 0.0
        np.testing.assert_allclose(np.hypot(xs, ys - 50.0), 50.0)

    def test_unknown_path(self):
        with pytest.raises(ValueError):
            make_reference_path(SimulationConfig(path="figure8"))


class TestControlCommand:
    def _result(self, delta, a):
        return MPCResult(
            x=0.0, y=0.0, psi=0.0, v=0.0, cte=0.0, epsi=0.0,
            delta=delta, a=a, delta_one_step=0.0, a_one_step=0.0,
            cost=0.0, success=True, status="Solve_Succeeded", solution=np.zeros(1),
        )

    def test_throttle_and_normalized_steering(self):
        command = to_control_command(self._result(0.2, 0.6), max_delta=0.4, timestamp=1.5)
        assert command.timestamp == 1.5
        assert command.steering == pytest.approx(0.5)
        assert command.throttle == pytest.approx(0.6)
        assert command.brake == 0.0
        assert command.steering_angle == 0.2
        assert command.acceleration == 0.6

    def test_negative_acceleration_brakes(self):
        command = to_control_command(self._result(-0.4, -0.3), max_delta=0.4, timestamp=0.0)
        assert command.steering == pytest.approx(-1.0)
        assert command.throttle == 0.0
        assert command.brake == pytest.approx(0.3)


class TestLocalProblem:
    def test_vehicle_on_straight_path(self):
        stack = _make_stack()
        vehicle = VehicleState(timestamp=0.0, x=10.0, y=0.0, psi=0.0, speed=10.0)
        state, coeffs = stack.local_problem(vehicle)
        assert state[:3].tolist() == [0.0, 0.0, 0.0]
        # Latency prediction at constant speed
        assert state[3] == pytest.approx(10.0)
        assert state[4] == pytest.approx(0.0, abs=1e-9)
        assert state[5] == pytest.approx(0.0, abs=1e-9)
        np.testing.assert_allclose(coeffs, 0.0, atol=1e-9)

    def test_path_to_the_right_gives_negative_cte(self):
        stack = _make_stack()
        vehicle = VehicleState(timestamp=0.0, x=10.0, y=1.0, psi=0.0, speed=10.0)
        state, _ = stack.local_problem(vehicle)
        assert state[4] == pytest.approx(-1.0, abs=1e-6)

    def test_end_of_open_path(self):
        stack = _make_stack(path_length_m=100.0)
        vehicle = VehicleState(timestamp=0.0, x=90.0, y=0.0, psi=0.0, speed=10.0)
        assert stack.local_problem(vehicle) is None
        assert stack.step(vehicle) is None


class TestClosedLoop:
    def test_straight_road_speeds_up_on_path(self):
        stack = _make_stack(initial_speed=10.0)
        results = stack.run(20)

        assert len(results) == 20
        assert all(r.success for r in results)
        assert all(abs(r.cte) < 0.05 for r in results)
        assert results[-1].v > 10.0

        stats = summarize(results)
        assert stats["cycles"] == 20.0
        assert stats["success_rate"] == 1.0

    def test_offset_start_converges_toward_path(self):
        stack = _make_stack(ref_v=25.0, initial_speed=20.0, initial_offset_m=1.0)
        trace = _drive(stack, 100)

        assert trace[0].y == pytest.approx(1.0)
        # Steering right toward the path first
        assert trace[1].steering_angle < 0.0
        assert min(abs(v.y) for v in trace) < 0.5
        assert all(abs(v.y) < 2.0 for v in trace)

    def test_plant_holds_previous_command_during_latency(self):
        stack = _make_stack()
        vehicle = VehicleState(timestamp=0.0, x=10.0, y=0.0, psi=0.0, speed=10.0,
                               steering_angle=0.0, acceleration=0.0)
        nxt, result = stack.step(vehicle)
        assert nxt.timestamp == pytest.approx(stack.sim_config.control_period_s)
        assert nxt.steering_angle == result.delta
        assert nxt.acceleration == result.a
        # Control period equals the latency: the new command has not acted yet
        assert nxt.speed == pytest.approx(10.0)
        assert nxt.x == pytest.approx(11.0)

    def test_circle_is_tracked(self):
        stack = _make_stack(ref_v=40.0, path="circle", circle_radius_m=100.0, initial_speed=35.0)
        trace = _drive(stack, 50)
        assert len(trace) == 51

        # Counterclockwise circle needs left steering
        assert np.mean([v.steering_angle for v in trace[10:]]) > 0.0
        radius = [math.hypot(v.x, v.y - 100.0) for v in trace]
        assert max(abs(r - 100.0) for r in radius) < 8.0

    def test_summary_of_empty_run(self):
        assert summarize([]) == {"cycles": 0.0}
