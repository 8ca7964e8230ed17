"""
Tests for HDF5 recording and replay of MPC stack runs.
"""

import numpy as np
import pytest

from data.formats.data_format import ControlCommand, MPCOutput, RecordingFrame, VehicleState
from data.recorder import DataRecorder
from data.replay import DataReplay


PREDICTION_LENGTH = 9


def _frame(i: int, success: bool = True, cte: float = 0.1) -> RecordingFrame:
    t = 0.1 * i
    return RecordingFrame(
        timestamp=t,
        frame_id=i,
        vehicle_state=VehicleState(timestamp=t, x=float(i), y=0.0, psi=0.0, speed=10.0),
        control_command=ControlCommand(timestamp=t, steering=0.1, throttle=0.5, brake=0.0,
                                       steering_angle=0.04, acceleration=0.5),
        mpc_output=MPCOutput(
            timestamp=t,
            local_state=np.array([0.0, 0.0, 0.0, 10.0, cte, 0.0]),
            path_coefficients=np.array([cte, 0.0, 0.0, 0.0]),
            predicted_x=np.linspace(0.5, 4.5, PREDICTION_LENGTH),
            predicted_y=np.zeros(PREDICTION_LENGTH),
            cost=1.0 + i,
            success=success,
            status="Solve_Succeeded" if success else "Maximum_CpuTime_Exceeded",
            solve_time=0.01,
        ),
    )


def test_record_and_replay(tmp_path):
    with DataRecorder(tmp_path, recording_name="run", prediction_length=PREDICTION_LENGTH,
                      metadata={"profile": "72mph"}) as recorder:
        for i in range(45):
            recorder.record_frame(_frame(i, success=(i != 7), cte=0.1 if i % 2 else -0.3))
        output_file = recorder.output_file

    assert output_file == tmp_path / "run.h5"

    with DataReplay(output_file) as replay:
        assert len(replay) == 45
        assert replay.metadata["profile"] == "72mph"
        assert replay.metadata["total_frames"] == 45

        summary = replay.summary()
        assert summary["frames"] == 45.0
        assert summary["max_abs_cte"] == pytest.approx(0.3)
        assert summary["success_rate"] == pytest.approx(44 / 45)
        assert summary["mean_solve_time"] == pytest.approx(0.01)
        assert replay.failed_statuses() == ["Maximum_CpuTime_Exceeded"]

        outputs = list(replay.get_mpc_outputs())
        assert outputs[3]["cost"] == 4.0
        assert outputs[7]["success"] is False
        np.testing.assert_allclose(outputs[0]["predicted_x"], np.linspace(0.5, 4.5, PREDICTION_LENGTH))

        xs, _ = replay.get_trajectory()
        np.testing.assert_allclose(xs, np.arange(45.0))

        commands = list(replay.get_control_commands())
        assert commands[0]["throttle"] == 0.5
        assert commands[0]["steering_angle"] == pytest.approx(0.04)


def test_missing_raw_actuation_stored_as_nan(tmp_path):
    frame = _frame(0)
    frame.control_command = ControlCommand(timestamp=0.0, steering=0.0, throttle=0.0, brake=0.2)
    with DataRecorder(tmp_path, recording_name="nan", prediction_length=PREDICTION_LENGTH) as recorder:
        recorder.record_frame(frame)

    with DataReplay(tmp_path / "nan.h5") as replay:
        command = next(replay.get_control_commands())
        assert np.isnan(command["steering_angle"])
        assert command["brake"] == pytest.approx(0.2)


def test_wrong_prediction_length_rejected(tmp_path):
    recorder = DataRecorder(tmp_path, recording_name="bad", prediction_length=PREDICTION_LENGTH + 1)
    recorder.record_frame(_frame(0))
    with pytest.raises(ValueError):
        recorder.flush()
    recorder.h5_file.close()


def test_replay_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        DataReplay(tmp_path / "missing.h5")


def test_stack_records_every_cycle(tmp_path):
    from control.mpc_controller import MPCController, config_from_profile
    from control.nlp_solver import SolverOptions
    from mpc_stack import MPCStack, SimulationConfig

    controller = MPCController(config_from_profile("72mph", ref_v=15.0,
                                                   solver=SolverOptions(max_cpu_time=5.0)))
    recorder = DataRecorder(tmp_path, recording_name="stack",
                            prediction_length=controller.config.horizon - 1)
    stack = MPCStack(controller, SimulationConfig(path="straight", path_length_m=200.0), recorder)
    try:
        results = stack.run(5)
    finally:
        recorder.close()

    with DataReplay(tmp_path / "stack.h5") as replay:
        assert len(replay) == len(results) == 5
        outputs = list(replay.get_mpc_outputs())
        assert all(o["success"] for o in outputs)
        assert outputs[0]["local_state"][3] == pytest.approx(10.0)
