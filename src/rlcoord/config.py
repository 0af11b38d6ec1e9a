"""Coordinator configuration and CLI argument helpers.

This module provides:
- RLConfig: the learning parameters supplied by the caller at construction
- EngineConfig: engine knobs (tick interval, exploration schedule, scoring)
- CLI field metadata for automatic argparse integration
- Validation raising ConfigurationError for out-of-range values
"""

import dataclasses
import math
from dataclasses import dataclass, field, fields
from typing import Any

from .errors import ConfigurationError

__all__ = ["RLConfig", "EngineConfig", "cli_field"]


def cli_field(
    default: Any,
    *,
    cli: str | None = None,
    help: str = "",
    choices: list[Any] | None = None,
    action: str | None = None,
) -> Any:
    """Create a dataclass field with CLI metadata.

    Args:
        default: Default value for the field.
        cli: CLI flag (e.g., "--batch-size"). If None, field is not exposed to CLI.
        help: Help text for the CLI argument.
        choices: Valid choices for the argument.
        action: argparse action (e.g., "store_true", "store_false").

    Returns:
        A dataclass field with CLI metadata attached.
    """
    metadata: dict[str, object] = {}
    if cli is not None:
        metadata["cli"] = cli
        metadata["help"] = help
        if choices:
            metadata["choices"] = choices
        if action:
            metadata["action"] = action

    return field(default=default, metadata=metadata)


class _CliConfig:
    """argparse integration shared by the config dataclasses."""

    @classmethod
    def configure_parser(cls, parser: Any) -> None:
        """Add CLI arguments to parser based on field metadata."""
        for f in fields(cls):
            cli_flag = f.metadata.get("cli")
            if not cli_flag:
                continue

            kwargs: dict[str, object] = {
                "help": f.metadata.get("help", ""),
            }

            if f.default is not dataclasses.MISSING:
                kwargs["default"] = f.default

            action = f.metadata.get("action")
            if action:
                kwargs["action"] = action
                kwargs.pop("default", None)
            else:
                if f.type in (int, float, str):
                    kwargs["type"] = f.type

            if f.metadata.get("choices"):
                kwargs["choices"] = f.metadata["choices"]

            parser.add_argument(cli_flag, **kwargs)

    @classmethod
    def set_parser_defaults(cls, parser: Any, base: Any) -> None:
        """Use the values of ``base`` (e.g. the central config) as CLI defaults."""
        defaults = {}
        for f in fields(cls):
            cli_flag = f.metadata.get("cli")
            if cli_flag:
                defaults[cli_flag.lstrip("-").replace("-", "_")] = getattr(base, f.name)
        parser.set_defaults(**defaults)

    @classmethod
    def from_args(cls, args: Any, base: Any = None):
        """Construct a config from parsed argparse args.

        Fields without a CLI flag are taken from ``base`` when given,
        otherwise they keep their defaults.
        """
        config_kwargs: dict[str, object] = {}
        if base is not None:
            config_kwargs.update(
                (f.name, getattr(base, f.name))
                for f in fields(cls)
                if not f.metadata.get("cli")
            )
        for f in fields(cls):
            cli_flag = f.metadata.get("cli")
            if not cli_flag:
                continue

            arg_name = cli_flag.lstrip("-").replace("-", "_")
            if hasattr(args, arg_name):
                config_kwargs[f.name] = getattr(args, arg_name)

        return cls(**config_kwargs)

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        """Build from a config section, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def _check_unit(name: str, value: Any, low_open: bool = False) -> None:
    interval = "(0, 1]" if low_open else "[0, 1]"
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be in {interval}, got {value!r}")
    low_ok = value > 0.0 if low_open else value >= 0.0
    if not (low_ok and value <= 1.0):
        raise ConfigurationError(f"{name} must be in {interval}, got {value!r}")


def _check_positive_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")


def _check_positive(name: str, value: Any) -> None:
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or not math.isfinite(value)
        or value <= 0
    ):
        raise ConfigurationError(f"{name} must be a positive number, got {value!r}")


@dataclass
class RLConfig(_CliConfig):
    """Learning parameters of the coordinator."""

    exploration_rate: float = cli_field(
        1.0, cli="--exploration-rate", help="Initial exploration rate (epsilon)"
    )
    learning_rate: float = cli_field(0.001, cli="--lr", help="Learning rate")
    reward_threshold: float = cli_field(
        100.0,
        cli="--reward-threshold",
        help="Episode reward counted towards convergence",
    )
    convergence_target: float = cli_field(
        0.95,
        cli="--convergence-target",
        help="Convergence rate at which training counts as converged",
    )
    adaptation_enabled: bool = cli_field(
        True,
        cli="--no-adaptation",
        action="store_false",
        help="Do not adapt agent performance/confidence on task outcomes",
    )
    dqn_enabled: bool = cli_field(
        True,
        cli="--no-dqn",
        action="store_false",
        help="Disable DQN networks and allocation",
    )
    target_network_update_freq: int = cli_field(
        1000,
        cli="--target-update-freq",
        help="Training steps between target network syncs",
    )
    batch_size: int = cli_field(32, cli="--batch-size", help="Replay batch size")
    memory_size: int = cli_field(
        50000, cli="--memory-size", help="Replay memory capacity"
    )
    discount_factor: float = cli_field(
        0.99, cli="--gamma", help="Discount factor for future rewards"
    )
    double_q_enabled: bool = cli_field(
        True,
        cli="--no-double-q",
        action="store_false",
        help="Use the target network for action selection too",
    )
    prioritized_replay_enabled: bool = cli_field(
        False,
        cli="--prioritized-replay",
        action="store_true",
        help="Sample replay proportionally to priority",
    )

    def __post_init__(self) -> None:
        self.validate()

    def validate(self, exploration_min: float = 0.0) -> None:
        """Check every field is within its documented range.

        Raises:
            ConfigurationError: On the first invalid field.
        """
        _check_unit("exploration_rate", self.exploration_rate)
        if self.exploration_rate < exploration_min:
            raise ConfigurationError(
                f"exploration_rate {self.exploration_rate} is below "
                f"exploration_min {exploration_min}"
            )
        _check_unit("learning_rate", self.learning_rate, low_open=True)
        if not (
            isinstance(self.reward_threshold, (int, float))
            and math.isfinite(self.reward_threshold)
        ):
            raise ConfigurationError(
                f"reward_threshold must be finite, got {self.reward_threshold!r}"
            )
        _check_unit("convergence_target", self.convergence_target)
        _check_positive_int("target_network_update_freq", self.target_network_update_freq)
        _check_positive_int("batch_size", self.batch_size)
        _check_positive_int("memory_size", self.memory_size)
        _check_unit("discount_factor", self.discount_factor)
        for name in (
            "adaptation_enabled",
            "dqn_enabled",
            "double_q_enabled",
            "prioritized_replay_enabled",
        ):
            if not isinstance(getattr(self, name), bool):
                raise ConfigurationError(f"{name} must be a boolean")


@dataclass
class EngineConfig(_CliConfig):
    """Engine settings around the learning parameters."""

    tick_interval: float = cli_field(
        3.0, cli="--tick-interval", help="Seconds between scheduler ticks"
    )
    exploration_min: float = cli_field(
        0.01, cli="--exploration-min", help="Floor of the exploration schedule"
    )
    exploration_decay: float = cli_field(
        0.995, cli="--exploration-decay", help="Per-episode exploration decay"
    )
    priority_alpha: float = cli_field(
        0.6, cli="--priority-alpha", help="Prioritized replay exponent"
    )
    priority_beta: float = cli_field(
        0.4, cli="--priority-beta", help="Importance sampling exponent"
    )
    scoring_weights: tuple[float, ...] = (0.4, 0.3, 20.0, 0.1)
    skill_match: str = cli_field(
        "exact",
        cli="--skill-match",
        choices=["exact", "prefix"],
        help="How agent skills are matched against task requirements",
    )
    state_dim: int = cli_field(8, cli="--state-dim", help="State vector length")
    action_space_size: int = cli_field(
        5, cli="--action-space-size", help="Number of actions (Q-values per agent)"
    )
    seed: int | None = None
    lock_timeout: float = 5.0
    history_length: int = 100
    adaptation_rate: float = 0.05
    archive_limit: int = 1000
    stats_path: str = cli_field(
        "", cli="--stats", help="Path to write stats.json for polling (empty = off)"
    )
    stats_interval: int = cli_field(
        10, cli="--stats-interval", help="Ticks between stats writes"
    )

    def __post_init__(self) -> None:
        self.scoring_weights = tuple(self.scoring_weights)
        self.validate()

    def validate(self) -> None:
        """Check every field is within its documented range.

        Raises:
            ConfigurationError: On the first invalid field.
        """
        _check_positive("tick_interval", self.tick_interval)
        _check_unit("exploration_min", self.exploration_min)
        _check_unit("exploration_decay", self.exploration_decay, low_open=True)
        _check_positive("priority_alpha", self.priority_alpha)
        _check_unit("priority_beta", self.priority_beta)
        if len(self.scoring_weights) != 4:
            raise ConfigurationError(
                f"scoring_weights needs exactly 4 values, got {len(self.scoring_weights)}"
            )
        if self.skill_match not in ("exact", "prefix"):
            raise ConfigurationError(
                f"skill_match must be 'exact' or 'prefix', got {self.skill_match!r}"
            )
        _check_positive_int("state_dim", self.state_dim)
        _check_positive_int("action_space_size", self.action_space_size)
        if self.seed is not None and (
            isinstance(self.seed, bool) or not isinstance(self.seed, int)
        ):
            raise ConfigurationError(f"seed must be an integer, got {self.seed!r}")
        _check_positive("lock_timeout", self.lock_timeout)
        _check_positive_int("history_length", self.history_length)
        _check_unit("adaptation_rate", self.adaptation_rate)
        _check_positive_int("archive_limit", self.archive_limit)
        _check_positive_int("stats_interval", self.stats_interval)
