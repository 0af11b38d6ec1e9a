"""Metrics aggregation and stats persistence for the coordinator.

This module provides the MetricsAggregator, which rolls up episode, step,
loss and exploration statistics behind a single lock, the immutable
MetricsSnapshot handed to external pollers, and functions for loading and
saving snapshots with atomic writes to prevent corruption during
concurrent reads.
"""

import json
import logging
import math
import os
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from .concurrency import DEFAULT_LOCK_TIMEOUT, acquire
from .errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_EXPLORATION_MIN = 0.01
DEFAULT_EXPLORATION_DECAY = 0.995
DEFAULT_HISTORY_LENGTH = 100
DEFAULT_ADAPTATION_RATE = 0.05


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time copy of the aggregator state."""

    episode_count: int = 0
    total_steps: int = 0
    average_reward: float = 0.0
    success_rate: float = 0.0
    convergence_rate: float = 0.0
    exploration_rate: float = 1.0
    dqn_loss: float = 0.0
    target_network_updates: int = 0
    replay_size: int = 0

    best_reward: float | None = None
    learning_rate: float = 0.0
    training_steps: int = 0
    allocations: int = 0
    deferred_allocations: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    converged: bool = False
    history: tuple[dict, ...] = ()
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "episode_count": self.episode_count,
            "total_steps": self.total_steps,
            "average_reward": self.average_reward,
            "success_rate": self.success_rate,
            "convergence_rate": self.convergence_rate,
            "exploration_rate": self.exploration_rate,
            "dqn_loss": self.dqn_loss,
            "target_network_updates": self.target_network_updates,
            "replay_size": self.replay_size,
            "best_reward": self.best_reward,
            "learning_rate": self.learning_rate,
            "training_steps": self.training_steps,
            "allocations": self.allocations,
            "deferred_allocations": self.deferred_allocations,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "converged": self.converged,
            "history": [dict(entry) for entry in self.history],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MetricsSnapshot":
        """Create a MetricsSnapshot from a dictionary."""
        return cls(
            episode_count=data.get("episode_count", 0),
            total_steps=data.get("total_steps", 0),
            average_reward=data.get("average_reward", 0.0),
            success_rate=data.get("success_rate", 0.0),
            convergence_rate=data.get("convergence_rate", 0.0),
            exploration_rate=data.get("exploration_rate", 1.0),
            dqn_loss=data.get("dqn_loss", 0.0),
            target_network_updates=data.get("target_network_updates", 0),
            replay_size=data.get("replay_size", 0),
            best_reward=data.get("best_reward"),
            learning_rate=data.get("learning_rate", 0.0),
            training_steps=data.get("training_steps", 0),
            allocations=data.get("allocations", 0),
            deferred_allocations=data.get("deferred_allocations", 0),
            completed_tasks=data.get("completed_tasks", 0),
            failed_tasks=data.get("failed_tasks", 0),
            converged=data.get("converged", False),
            history=tuple(dict(e) for e in data.get("history", [])),
            timestamp=data.get("timestamp", 0.0),
        )


def adapt_agent_scores(
    performance: float,
    confidence: float,
    success: bool,
    rate: float = DEFAULT_ADAPTATION_RATE,
) -> tuple[float, float]:
    """Move performance and confidence toward 100 on success, 0 on failure.

    Both stay on [0, 100] for any rate in [0, 1].
    """
    goal = 100.0 if success else 0.0
    return (
        performance + (goal - performance) * rate,
        confidence + (goal - confidence) * rate,
    )


class MetricsAggregator:
    """Running training statistics, serialized behind one lock.

    Counters (episodes, steps, allocations) only grow until reset().
    Exploration decays once per completed episode as
    ``eps = max(exploration_min, eps * exploration_decay)`` and therefore
    never drops below exploration_min.

    Args:
        exploration_rate: Initial exploration rate.
        exploration_min: Floor of the exploration schedule.
        exploration_decay: Multiplicative decay applied per episode.
        reward_threshold: Episode reward counted as converged.
        convergence_target: Convergence rate at which training is converged.
        learning_rate: Learning rate reported alongside the metrics.
        history_length: Size of the rolling windows and the history list.
        lock_timeout: Seconds to wait for the aggregator lock.

    Raises:
        ConfigurationError: If the exploration schedule or window is invalid.
    """

    def __init__(
        self,
        exploration_rate: float = 1.0,
        exploration_min: float = DEFAULT_EXPLORATION_MIN,
        exploration_decay: float = DEFAULT_EXPLORATION_DECAY,
        reward_threshold: float = 100.0,
        convergence_target: float = 0.95,
        learning_rate: float = 0.001,
        history_length: int = DEFAULT_HISTORY_LENGTH,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        if not 0.0 <= exploration_min <= 1.0:
            raise ConfigurationError(
                f"exploration_min must be in [0, 1], got {exploration_min}"
            )
        if not 0.0 < exploration_decay <= 1.0:
            raise ConfigurationError(
                f"exploration_decay must be in (0, 1], got {exploration_decay}"
            )
        if not exploration_min <= exploration_rate <= 1.0:
            raise ConfigurationError(
                f"exploration_rate must be in [{exploration_min}, 1], "
                f"got {exploration_rate}"
            )
        if (
            isinstance(history_length, bool)
            or not isinstance(history_length, int)
            or history_length <= 0
        ):
            raise ConfigurationError(
                f"history_length must be a positive integer, got {history_length!r}"
            )

        self.initial_exploration_rate = exploration_rate
        self.exploration_min = exploration_min
        self.exploration_decay = exploration_decay
        self.reward_threshold = reward_threshold
        self.convergence_target = convergence_target
        self.learning_rate = learning_rate
        self.history_length = history_length
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._clear()

    def _locked(self):
        return acquire(self._lock, "metrics", self._lock_timeout)

    def _clear(self) -> None:
        self._episode_count = 0
        self._total_steps = 0
        self._training_steps = 0
        self._exploration_rate = self.initial_exploration_rate
        self._dqn_loss = 0.0
        self._target_updates = 0
        self._replay_size = 0
        self._best_reward: float | None = None
        self._allocations = 0
        self._deferred = 0
        self._completed = 0
        self._failed = 0
        self._episode_rewards: deque[float] = deque(maxlen=self.history_length)
        self._outcomes: deque[bool] = deque(maxlen=self.history_length)
        self._history: deque[dict] = deque(maxlen=self.history_length)

    # ========== Reports ==========

    def record_steps(self, steps: int) -> None:
        """Add environment steps to the running total."""
        if steps < 0:
            raise ValidationError(f"step count must be non-negative, got {steps}")
        with self._locked():
            self._total_steps += steps

    def complete_episode(self, reward: float, steps: int = 0) -> None:
        """Close an episode: count it, decay exploration, update windows."""
        if not math.isfinite(reward):
            raise ValidationError(f"episode reward must be finite, got {reward}")
        if steps < 0:
            raise ValidationError(f"step count must be non-negative, got {steps}")
        with self._locked():
            self._episode_count += 1
            self._total_steps += steps
            self._exploration_rate = max(
                self.exploration_min, self._exploration_rate * self.exploration_decay
            )
            self._episode_rewards.append(float(reward))
            if self._best_reward is None or reward > self._best_reward:
                self._best_reward = float(reward)
            self._history.append(
                {
                    "episode": self._episode_count,
                    "reward": float(reward),
                    "steps": self._total_steps,
                    "exploration_rate": self._exploration_rate,
                    "loss": self._dqn_loss,
                    "timestamp": time.time(),
                }
            )

    def record_training_step(self, loss: float | None = None) -> None:
        """Count one external training step and remember its loss."""
        if loss is not None and (not math.isfinite(loss) or loss < 0):
            raise ValidationError(
                f"loss must be a finite non-negative number, got {loss}"
            )
        with self._locked():
            self._training_steps += 1
            if loss is not None:
                self._dqn_loss = float(loss)

    def record_target_sync(self, count: int = 1) -> None:
        with self._locked():
            self._target_updates += count

    def record_outcome(self, success: bool) -> None:
        """Record a finished task for the rolling success rate."""
        with self._locked():
            self._outcomes.append(bool(success))
            if success:
                self._completed += 1
            else:
                self._failed += 1

    def record_allocation(self, assigned: bool) -> None:
        with self._locked():
            if assigned:
                self._allocations += 1
            else:
                self._deferred += 1

    def set_replay_size(self, size: int) -> None:
        with self._locked():
            self._replay_size = size

    @property
    def exploration_rate(self) -> float:
        with self._locked():
            return self._exploration_rate

    # ========== Lifecycle ==========

    def reset(self) -> None:
        """Return to the initial configuration."""
        with self._locked():
            self._clear()
        logger.info("Metrics reset")

    def restore(self, snapshot: MetricsSnapshot) -> None:
        """Load counters from a snapshot.

        The reward window is rebuilt from the snapshot history; the task
        outcome window starts empty.
        """
        with self._locked():
            self._clear()
            self._episode_count = snapshot.episode_count
            self._total_steps = snapshot.total_steps
            self._training_steps = snapshot.training_steps
            self._exploration_rate = min(
                1.0, max(self.exploration_min, snapshot.exploration_rate)
            )
            self._dqn_loss = snapshot.dqn_loss
            self._target_updates = snapshot.target_network_updates
            self._replay_size = snapshot.replay_size
            self._best_reward = snapshot.best_reward
            self._allocations = snapshot.allocations
            self._deferred = snapshot.deferred_allocations
            self._completed = snapshot.completed_tasks
            self._failed = snapshot.failed_tasks
            for entry in snapshot.history:
                self._history.append(dict(entry))
                self._episode_rewards.append(float(entry.get("reward", 0.0)))

    # ========== Reads ==========

    def snapshot(self) -> MetricsSnapshot:
        """Immutable copy of the current metrics."""
        with self._locked():
            rewards = list(self._episode_rewards)
            average_reward = sum(rewards) / len(rewards) if rewards else 0.0
            converged_count = sum(1 for r in rewards if r >= self.reward_threshold)
            convergence_rate = converged_count / len(rewards) if rewards else 0.0
            outcomes = list(self._outcomes)
            success_rate = sum(outcomes) / len(outcomes) if outcomes else 0.0
            return MetricsSnapshot(
                episode_count=self._episode_count,
                total_steps=self._total_steps,
                average_reward=average_reward,
                success_rate=success_rate,
                convergence_rate=convergence_rate,
                exploration_rate=self._exploration_rate,
                dqn_loss=self._dqn_loss,
                target_network_updates=self._target_updates,
                replay_size=self._replay_size,
                best_reward=self._best_reward,
                learning_rate=self.learning_rate,
                training_steps=self._training_steps,
                allocations=self._allocations,
                deferred_allocations=self._deferred,
                completed_tasks=self._completed,
                failed_tasks=self._failed,
                converged=bool(rewards) and convergence_rate >= self.convergence_target,
                history=tuple(dict(e) for e in self._history),
            )


def load_stats(path: str | Path) -> MetricsSnapshot | None:
    """Load a snapshot from a JSON file.

    Returns:
        The snapshot, or None if the file doesn't exist or is invalid.
    """
    stats_path = Path(path)
    if not stats_path.exists():
        return None

    try:
        with open(stats_path) as f:
            data = json.load(f)
        snapshot = MetricsSnapshot.from_dict(data)
        logger.info(
            f"Loaded existing stats: {snapshot.episode_count} episodes, "
            f"{len(snapshot.history)} history records"
        )
        return snapshot
    except Exception as e:
        logger.warning(f"Failed to load existing stats: {e}")
        return None


def write_stats(snapshot: MetricsSnapshot, path: str | Path) -> None:
    """Write a snapshot to a JSON file using atomic write-then-rename.

    Raises:
        Exception: If the write fails (temp file is cleaned up on error).
    """
    stats_path = Path(path)
    stats_path.parent.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(suffix=".json", dir=stats_path.parent)
    try:
        with os.fdopen(temp_fd, "w") as f:
            json.dump(snapshot.to_dict(), f, indent=2)
        os.replace(temp_path, stats_path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise
