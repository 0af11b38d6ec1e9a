"""Tests for the config dataclasses and the layered central configuration."""

import argparse
import os
from unittest.mock import patch

import pytest

from rlcoord.central_config import get_config, load_config_data, reset_config
from rlcoord.config import EngineConfig, RLConfig
from rlcoord.errors import ConfigurationError


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestRLConfig:
    def test_defaults(self):
        config = RLConfig()
        assert config.exploration_rate == 1.0
        assert config.learning_rate == 0.001
        assert config.reward_threshold == 100.0
        assert config.convergence_target == 0.95
        assert config.adaptation_enabled is True
        assert config.dqn_enabled is True
        assert config.target_network_update_freq == 1000
        assert config.batch_size == 32
        assert config.memory_size == 50000
        assert config.discount_factor == 0.99
        assert config.double_q_enabled is True
        assert config.prioritized_replay_enabled is False

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"exploration_rate": 1.5},
            {"exploration_rate": -0.1},
            {"learning_rate": 0.0},
            {"learning_rate": 2.0},
            {"convergence_target": 1.1},
            {"target_network_update_freq": 0},
            {"batch_size": -1},
            {"memory_size": 0},
            {"memory_size": 10.5},
            {"discount_factor": 1.5},
            {"reward_threshold": float("inf")},
            {"dqn_enabled": "yes"},
            {"exploration_rate": "0.5"},
            {"discount_factor": True},
            {"convergence_target": float("nan")},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigurationError):
            RLConfig(**kwargs)

    def test_exploration_below_minimum(self):
        config = RLConfig(exploration_rate=0.05)
        with pytest.raises(ConfigurationError):
            config.validate(exploration_min=0.1)


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.tick_interval == 3.0
        assert config.scoring_weights == (0.4, 0.3, 20.0, 0.1)
        assert config.skill_match == "exact"
        assert config.seed is None

    def test_weights_converted_to_tuple(self):
        assert EngineConfig(scoring_weights=[1, 2, 3, 4]).scoring_weights == (1, 2, 3, 4)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"tick_interval": 0},
            {"exploration_min": 1.5},
            {"exploration_decay": 0.0},
            {"priority_alpha": -1.0},
            {"priority_beta": 2.0},
            {"exploration_decay": "0.9"},
            {"scoring_weights": (1.0, 2.0, 3.0)},
            {"skill_match": "fuzzy"},
            {"state_dim": 0},
            {"seed": "abc"},
            {"history_length": 0},
            {"stats_interval": 0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigurationError):
            EngineConfig(**kwargs)


class TestCliIntegration:
    def make_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser()
        RLConfig.configure_parser(parser)
        EngineConfig.configure_parser(parser)
        return parser

    def test_defaults_round_trip(self):
        args = self.make_parser().parse_args([])
        assert RLConfig.from_args(args) == RLConfig()
        assert EngineConfig.from_args(args) == EngineConfig()

    def test_flags(self):
        args = self.make_parser().parse_args(
            [
                "--lr", "0.01",
                "--no-dqn",
                "--prioritized-replay",
                "--target-update-freq", "5",
                "--tick-interval", "0.5",
                "--skill-match", "prefix",
            ]
        )
        rl = RLConfig.from_args(args)
        engine = EngineConfig.from_args(args)
        assert rl.learning_rate == 0.01
        assert rl.dqn_enabled is False
        assert rl.prioritized_replay_enabled is True
        assert rl.target_network_update_freq == 5
        assert engine.tick_interval == 0.5
        assert engine.skill_match == "prefix"

    def test_invalid_choice_rejected(self):
        with pytest.raises(SystemExit):
            self.make_parser().parse_args(["--skill-match", "fuzzy"])

    def test_base_supplies_fields_without_flags(self):
        base = EngineConfig(archive_limit=7, scoring_weights=(1, 1, 1, 1))
        args = self.make_parser().parse_args([])
        engine = EngineConfig.from_args(args, base=base)
        assert engine.archive_limit == 7
        assert engine.scoring_weights == (1, 1, 1, 1)

    def test_parser_defaults_from_base(self):
        parser = self.make_parser()
        RLConfig.set_parser_defaults(parser, RLConfig(batch_size=64, dqn_enabled=False))
        rl = RLConfig.from_args(parser.parse_args([]))
        assert rl.batch_size == 64
        assert rl.dqn_enabled is False


class TestCentralConfig:
    def test_defaults_file(self):
        config = get_config()
        assert config.rl == RLConfig()
        assert config.engine.scoring_weights == (0.4, 0.3, 20.0, 0.1)
        assert config.logging.format == "text"
        assert config.metrics.port == 0

    def test_cached(self):
        assert get_config() is get_config()
        assert get_config(reload=True) is not None

    def test_env_overrides(self):
        env = {
            "RLCOORD_RL_MEMORY_SIZE": "1234",
            "RLCOORD_RL_DQN_ENABLED": "false",
            "RLCOORD_ENGINE_TICK_INTERVAL": "0.25",
            "RLCOORD_ENGINE_SCORING_WEIGHTS": "1,2,3,4",
            "RLCOORD_ENGINE_SEED": "42",
            "RLCOORD_LOGGING_FORMAT": "json",
        }
        with patch.dict(os.environ, env):
            config = get_config(reload=True)

        assert config.rl.memory_size == 1234
        assert config.rl.dqn_enabled is False
        assert config.engine.tick_interval == 0.25
        assert config.engine.scoring_weights == (1.0, 2.0, 3.0, 4.0)
        assert config.engine.seed == 42
        assert config.logging.format == "json"

    def test_unknown_sections_ignored(self):
        with patch.dict(os.environ, {"RLCOORD_BOGUS_KEY": "1"}):
            data = load_config_data()
        assert "bogus" not in data

    def test_user_config_file(self, tmp_path):
        user = tmp_path / "custom.toml"
        user.write_text("[rl]\nbatch_size = 16\n\n[engine]\nskill_match = \"prefix\"\n")
        with patch.dict(os.environ, {"RLCOORD_CONFIG": str(user)}):
            config = get_config(reload=True)

        assert config.rl.batch_size == 16
        assert config.rl.memory_size == 50000
        assert config.engine.skill_match == "prefix"

    def test_env_beats_user_file(self, tmp_path):
        user = tmp_path / "custom.toml"
        user.write_text("[rl]\nbatch_size = 16\n")
        env = {"RLCOORD_CONFIG": str(user), "RLCOORD_RL_BATCH_SIZE": "8"}
        with patch.dict(os.environ, env):
            assert get_config(reload=True).rl.batch_size == 8

    def test_invalid_value_rejected(self):
        with patch.dict(os.environ, {"RLCOORD_RL_MEMORY_SIZE": "0"}):
            with pytest.raises(ConfigurationError):
                get_config(reload=True)

    def test_unknown_metrics_key_rejected(self, tmp_path):
        user = tmp_path / "custom.toml"
        user.write_text("[metrics]\nhost = \"0.0.0.0\"\n")
        with patch.dict(os.environ, {"RLCOORD_CONFIG": str(user)}):
            with pytest.raises(ConfigurationError):
                get_config(reload=True)

    def test_to_dict(self):
        data = get_config().to_dict()
        assert set(data) == {"rl", "engine", "logging", "metrics"}
        assert data["engine"]["scoring_weights"] == [0.4, 0.3, 20.0, 0.1]
        assert data["logging"]["include_timestamps"] is True
