"""Bounded in-memory experience replay.

The memory holds at most ``capacity`` transition records. Each push that
would overflow evicts exactly one existing entry first:

    - uniform mode: the oldest entry (FIFO)
    - prioritized mode: the lowest-priority entry (oldest among ties)

so the incoming record is always stored and the size never exceeds the
capacity, even transiently. Sampling is uniform, or proportional to
``priority ** alpha`` in prioritized mode (Schaul et al., 2016). Priorities
are opaque caller-supplied weights; records are immutable once written.

All reads and writes are serialized by a single lock, which also guards the
injected numpy Generator (Generators are not thread-safe).
"""

import logging
import math
import numbers
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any

import numpy as np

from .concurrency import DEFAULT_LOCK_TIMEOUT, acquire
from .errors import ConfigurationError, ValidationError
from .models import as_vector

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY_ALPHA = 0.6
DEFAULT_PRIORITY_BETA = 0.4

# Priority given to the first record of an empty prioritized memory
DEFAULT_PRIORITY = 1.0


@dataclass(frozen=True)
class TransitionRecord:
    """A single (state, action, reward, next_state, done) transition."""

    state: tuple[float, ...]
    action: int
    reward: float
    next_state: tuple[float, ...]
    done: bool = False
    priority: float | None = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        state: Any,
        action: int,
        reward: float,
        next_state: Any,
        done: bool = False,
        priority: float | None = None,
        timestamp: float | None = None,
    ) -> "TransitionRecord":
        """Validate raw values (lists, numpy arrays) and build a record.

        Raises:
            ValidationError: If vectors are not numeric, the action is not a
                non-negative integer, or the priority is negative.
        """
        if isinstance(action, bool) or not isinstance(action, numbers.Integral):
            raise ValidationError(f"action must be an integer index, got {action!r}")
        if action < 0:
            raise ValidationError(f"action must be non-negative, got {action}")
        if isinstance(reward, bool) or not isinstance(reward, numbers.Real):
            raise ValidationError(f"reward must be a number, got {reward!r}")
        if not math.isfinite(reward):
            raise ValidationError(f"reward must be finite, got {reward}")
        if priority is not None:
            if not isinstance(priority, numbers.Real) or not math.isfinite(priority):
                raise ValidationError(f"priority must be a number, got {priority!r}")
            if priority < 0:
                raise ValidationError(f"priority must be >= 0, got {priority}")
            priority = float(priority)

        return cls(
            state=as_vector("state", state) or (),
            action=int(action),
            reward=float(reward),
            next_state=as_vector("next_state", next_state) or (),
            done=bool(done),
            priority=priority,
            timestamp=time.time() if timestamp is None else float(timestamp),
        )

    def to_dict(self) -> dict:
        return {
            "state": list(self.state),
            "action": self.action,
            "reward": self.reward,
            "next_state": list(self.next_state),
            "done": self.done,
            "priority": self.priority,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransitionRecord":
        return cls.create(
            state=data.get("state", []),
            action=data.get("action", 0),
            reward=data.get("reward", 0.0),
            next_state=data.get("next_state", []),
            done=data.get("done", False),
            priority=data.get("priority"),
            timestamp=data.get("timestamp"),
        )


@dataclass(frozen=True)
class ReplayBufferStats:
    """Occupancy of the replay memory."""

    size: int
    capacity: int
    utilization_percent: float

    def to_dict(self) -> dict:
        return {
            "size": self.size,
            "capacity": self.capacity,
            "utilization_percent": self.utilization_percent,
        }


@dataclass(frozen=True)
class ReplayBatch:
    """A sampled batch as numpy arrays, ready for a trainer.

    - states, next_states: shape (batch, state_dim), float32
    - actions: shape (batch,), int64
    - rewards, dones, weights: shape (batch,), float32
    """

    states: np.ndarray
    actions: np.ndarray
    rewards: np.ndarray
    next_states: np.ndarray
    dones: np.ndarray
    weights: np.ndarray

    def __len__(self) -> int:
        return len(self.actions)


def _to_matrix(vectors: list[tuple[float, ...]], dim: int) -> np.ndarray:
    """Stack vectors into (len, dim), zero-padding or truncating each row."""
    matrix = np.zeros((len(vectors), dim), dtype=np.float32)
    for i, vec in enumerate(vectors):
        n = min(dim, len(vec))
        matrix[i, :n] = vec[:n]
    return matrix


class ReplayMemory:
    """Thread-safe bounded replay memory with optional prioritized sampling.

    Raises:
        ConfigurationError: If capacity is not a positive integer, alpha is
            not positive, or beta is outside [0, 1].
    """

    def __init__(
        self,
        capacity: int,
        prioritized: bool = False,
        alpha: float = DEFAULT_PRIORITY_ALPHA,
        beta: float = DEFAULT_PRIORITY_BETA,
        rng: np.random.Generator | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        if (
            isinstance(capacity, bool)
            or not isinstance(capacity, numbers.Integral)
            or capacity <= 0
        ):
            raise ConfigurationError(
                f"replay capacity must be a positive integer, got {capacity!r}"
            )
        if not alpha > 0:
            raise ConfigurationError(f"priority alpha must be > 0, got {alpha}")
        if not 0.0 <= beta <= 1.0:
            raise ConfigurationError(f"priority beta must be in [0, 1], got {beta}")

        self.capacity = int(capacity)
        self.prioritized = prioritized
        self.alpha = alpha
        self.beta = beta
        self._rng = rng if rng is not None else np.random.default_rng()
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._entries: deque[TransitionRecord] = deque()
        self._total_pushed = 0
        self._total_evicted = 0

    @property
    def mode(self) -> str:
        return "prioritized" if self.prioritized else "uniform"

    def _locked(self):
        return acquire(self._lock, "replay memory", self._lock_timeout)

    def __len__(self) -> int:
        with self._locked():
            return len(self._entries)

    @property
    def total_pushed(self) -> int:
        return self._total_pushed

    @property
    def total_evicted(self) -> int:
        return self._total_evicted

    def push(self, record: TransitionRecord) -> TransitionRecord | None:
        """Store a record, evicting one entry first if the memory is full.

        In prioritized mode a record without a priority gets the current
        maximum priority, so fresh experience is sampled at least once.

        Returns:
            The evicted record, or None if nothing was evicted.
        """
        if not isinstance(record, TransitionRecord):
            raise ValidationError(
                f"expected TransitionRecord, got {type(record).__name__}"
            )

        with self._locked():
            if self.prioritized and record.priority is None:
                record = replace(record, priority=self._max_priority())

            evicted = None
            if len(self._entries) >= self.capacity:
                evicted = self._evict_one()
            self._entries.append(record)
            self._total_pushed += 1

        if evicted is not None:
            logger.debug(
                f"Replay memory full ({self.capacity}), evicted entry "
                f"from {evicted.timestamp:.3f} ({self.mode})"
            )
        return evicted

    def _max_priority(self) -> float:
        priorities = [e.priority for e in self._entries if e.priority is not None]
        return max(priorities) if priorities else DEFAULT_PRIORITY

    def _evict_one(self) -> TransitionRecord:
        if not self.prioritized:
            evicted = self._entries.popleft()
        else:
            # O(C) scan; min() keeps the first (oldest) entry among ties
            index = min(
                range(len(self._entries)),
                key=lambda i: self._priority_of(self._entries[i]),
            )
            evicted = self._entries[index]
            del self._entries[index]
        self._total_evicted += 1
        return evicted

    @staticmethod
    def _priority_of(record: TransitionRecord) -> float:
        return record.priority if record.priority is not None else DEFAULT_PRIORITY

    def _probabilities(self, entries: list[TransitionRecord]) -> np.ndarray | None:
        """Sampling distribution, or None for uniform sampling."""
        if not self.prioritized:
            return None
        scaled = np.array([self._priority_of(e) for e in entries], dtype=np.float64)
        scaled = scaled**self.alpha
        total = scaled.sum()
        if total <= 0:
            # Every priority is zero: nothing to prefer
            return None
        return scaled / total

    def _sample(
        self, batch_size: int
    ) -> tuple[list[TransitionRecord], np.ndarray | None, int]:
        if (
            isinstance(batch_size, bool)
            or not isinstance(batch_size, numbers.Integral)
            or batch_size < 0
        ):
            raise ValidationError(
                f"batch size must be a non-negative integer, got {batch_size!r}"
            )

        with self._locked():
            entries = list(self._entries)
            if not entries or batch_size == 0:
                return [], None, len(entries)

            probabilities = self._probabilities(entries)
            # Prioritized sampling draws with replacement so empirical
            # frequencies follow the priority distribution exactly.
            replace_draws = probabilities is not None or batch_size > len(entries)
            indices = self._rng.choice(
                len(entries), size=batch_size, replace=replace_draws, p=probabilities
            )

        selected = [entries[i] for i in indices]
        selected_probs = probabilities[indices] if probabilities is not None else None
        return selected, selected_probs, len(entries)

    def sample_batch(self, batch_size: int) -> list[TransitionRecord]:
        """Sample ``batch_size`` records.

        Uniform mode draws without replacement when the memory holds at least
        ``batch_size`` records. Prioritized mode always draws with replacement.
        An empty memory yields an empty list.

        Raises:
            ValidationError: If batch_size is negative or not an integer.
        """
        records, _, _ = self._sample(batch_size)
        return records

    def sample_arrays(self, batch_size: int, state_dim: int) -> ReplayBatch | None:
        """Sample a batch and return it as numpy arrays.

        States are zero-padded or truncated to ``state_dim``. Importance
        sampling weights ``(N * P(i)) ** -beta`` normalized by their maximum
        are returned in prioritized mode; uniform mode returns ones.

        Returns:
            ReplayBatch, or None if the memory is empty.
        """
        records, probabilities, size = self._sample(batch_size)
        if not records:
            return None

        if probabilities is not None:
            weights = (size * probabilities) ** (-self.beta)
            weights = (weights / weights.max()).astype(np.float32)
        else:
            weights = np.ones(len(records), dtype=np.float32)

        return ReplayBatch(
            states=_to_matrix([r.state for r in records], state_dim),
            actions=np.array([r.action for r in records], dtype=np.int64),
            rewards=np.array([r.reward for r in records], dtype=np.float32),
            next_states=_to_matrix([r.next_state for r in records], state_dim),
            dones=np.array([r.done for r in records], dtype=np.float32),
            weights=weights,
        )

    def records(self) -> tuple[TransitionRecord, ...]:
        """All stored records, oldest first."""
        with self._locked():
            return tuple(self._entries)

    def stats(self) -> ReplayBufferStats:
        with self._locked():
            size = len(self._entries)
        return ReplayBufferStats(
            size=size,
            capacity=self.capacity,
            utilization_percent=100.0 * size / self.capacity,
        )

    def clear(self) -> int:
        """Delete every record. Returns the number removed."""
        with self._locked():
            removed = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared {removed} transitions from replay memory")
        return removed
