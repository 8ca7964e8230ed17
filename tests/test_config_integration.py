"""
Integration tests for configuration system.
Tests that config parameters are correctly passed from YAML to the controller.
"""

import math
import sys
import tempfile
from pathlib import Path

import pytest
import yaml

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from control.mpc_controller import MPC_PROFILES, build_mpc_config, build_mpc_controller
from mpc_stack import DEFAULT_CONFIG_PATH, build_simulation_config, load_config


def _write_config(config_data: dict) -> str:
    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        yaml.dump(config_data, f)
        return f.name


class TestConfigParameterFlow:
    """Test that config parameters flow correctly from YAML to components."""

    def test_mpc_params_flow(self):
        """Test that MPC weights and limits flow from config to controller."""
        config_path = _write_config({
            'control': {
                'mpc': {
                    'profile': '72mph',
                    'ref_v': 60.0,
                    'w_cte': 3.0,
                    'w_epsi': 2.0,
                    'w_v': 0.5,
                    'w_delta': 300.0,
                    'w_a': 4.0,
                    'w_ddelta': 650.0,
                    'w_da': 6.0,
                    'max_accel': 0.8,
                    'lf': 2.5,
                    'latency': 0.05,
                    'commit_failed_solves': False,
                    'solver': {
                        'max_cpu_time': 0.2,
                        'max_iter': 500,
                        'derivative_mode': 'reverse',
                    },
                }
            }
        })

        try:
            controller = build_mpc_controller(load_config(config_path))
            cfg = controller.config

            # Profile supplies what the file leaves out
            assert cfg.horizon == 10
            assert cfg.dt == 0.05

            assert cfg.ref_v == 60.0
            assert cfg.w_cte == 3.0
            assert cfg.w_epsi == 2.0
            assert cfg.w_v == 0.5
            assert cfg.w_delta == 300.0
            assert cfg.w_a == 4.0
            assert cfg.w_ddelta == 650.0
            assert cfg.w_da == 6.0
            assert cfg.max_accel == 0.8
            assert cfg.lf == 2.5
            assert cfg.latency == 0.05
            assert cfg.commit_failed_solves is False
            assert controller.num_states_in_latency == 1

            assert cfg.solver.max_cpu_time == 0.2
            assert cfg.solver.max_iter == 500
            assert cfg.solver.derivative_mode == 'reverse'
        finally:
            Path(config_path).unlink()

    def test_steering_limit_in_degrees(self):
        """max_delta_deg is converted to radians."""
        config_path = _write_config({'control': {'mpc': {'max_delta_deg': 20.0}}})
        try:
            cfg = build_mpc_config(load_config(config_path))
            assert cfg.max_delta == pytest.approx(math.radians(20.0))
        finally:
            Path(config_path).unlink()

    def test_integer_fields_are_cast(self):
        config_path = _write_config({'control': {'mpc': {'horizon': 15.0, 'dt': 1}}})
        try:
            cfg = build_mpc_config(load_config(config_path))
            assert cfg.horizon == 15
            assert isinstance(cfg.horizon, int)
            assert isinstance(cfg.dt, float)
        finally:
            Path(config_path).unlink()

    def test_simulation_params_flow(self):
        config_path = _write_config({
            'simulation': {
                'path': 'circle',
                'circle_radius_m': 60.0,
                'num_waypoints': 8,
                'initial_speed': 12.0,
                'apply_latency': False,
            }
        })
        try:
            sim = build_simulation_config(load_config(config_path))
            assert sim.path == 'circle'
            assert sim.circle_radius_m == 60.0
            assert sim.num_waypoints == 8
            assert sim.initial_speed == 12.0
            assert sim.apply_latency is False
            # Defaults for the rest
            assert sim.waypoint_spacing_m == 5.0
        finally:
            Path(config_path).unlink()


class TestProfileSelection:
    """Test that named tuning profiles are applied before explicit overrides."""

    @pytest.mark.parametrize("profile", sorted(MPC_PROFILES))
    def test_profile_values_applied(self, profile):
        cfg = build_mpc_config({'control': {'mpc': {'profile': profile}}})
        for key, value in MPC_PROFILES[profile].items():
            assert getattr(cfg, key) == value

    def test_override_beats_profile(self):
        cfg = build_mpc_config({'control': {'mpc': {'profile': '88mph', 'w_delta': 10.0}}})
        assert cfg.w_delta == 10.0
        assert cfg.dt == 0.1

    def test_unknown_profile_rejected(self):
        with pytest.raises(ValueError):
            build_mpc_config({'control': {'mpc': {'profile': '55mph'}}})

    def test_invalid_value_rejected_at_startup(self):
        with pytest.raises(ValueError):
            build_mpc_controller({'control': {'mpc': {'dt': -0.05}}})


class TestConfigDefaults:
    """Test that default values are used when config is missing."""

    def test_missing_config_uses_defaults(self):
        """Test that missing config file uses hardcoded defaults."""
        config = load_config('/nonexistent/config.yaml')
        assert config == {}

        cfg = build_mpc_config(config)
        assert cfg.horizon == 12
        assert cfg.dt == 0.05
        assert cfg.ref_v == 85.0
        assert cfg.w_ddelta == 700.0
        assert cfg.latency == 0.1

    def test_partial_config_uses_defaults_for_missing(self):
        """Test that partial config uses defaults for missing parameters."""
        config_path = _write_config({'control': {'mpc': {'w_cte': 5.0}}})
        try:
            cfg = build_mpc_config(load_config(config_path))
            assert cfg.w_cte == 5.0
            assert cfg.w_epsi == 1.0  # Default
            assert cfg.solver.max_cpu_time == 0.05  # Default
        finally:
            Path(config_path).unlink()

    def test_empty_config_file(self):
        config_path = _write_config({})
        try:
            assert load_config(config_path) == {}
        finally:
            Path(config_path).unlink()

    def test_shipped_config_is_valid(self):
        """The config file in the repo builds a working controller configuration."""
        config = load_config(str(DEFAULT_CONFIG_PATH))
        cfg = build_mpc_config(config)
        cfg.validate()
        assert cfg.max_delta == pytest.approx(math.radians(25.0))
        build_simulation_config(config)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
