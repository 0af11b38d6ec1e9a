"""Main/target network pairs and their synchronization cadence.

Each agent may own one pair. The manager only does bookkeeping: it counts
training steps reported by an external trainer and, whenever the step count
reaches a multiple of ``sync_frequency``, replaces the target handle with a
copy of the main handle. The copy is built first and then swapped in under
the manager lock, so readers see either the old target or the new one,
never a partial copy.
"""

import logging
import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from .concurrency import DEFAULT_LOCK_TIMEOUT, acquire
from .errors import ConfigurationError, NotFoundError, ValidationError
from .network import clone_parameters, count_parameters

logger = logging.getLogger(__name__)

# Number of recent loss reports averaged into average_loss
DEFAULT_LOSS_WINDOW = 100


@dataclass
class NetworkPair:
    """Mutable pair record owned by the manager."""

    id: str
    agent_id: str
    main: Any
    target: Any
    sync_frequency: int
    training_steps: int = 0
    last_sync_step: int = 0
    sync_count: int = 0
    last_update: float = field(default_factory=time.time)
    recent_losses: deque = field(default_factory=deque)

    @property
    def average_loss(self) -> float | None:
        if not self.recent_losses:
            return None
        return sum(self.recent_losses) / len(self.recent_losses)


@dataclass(frozen=True)
class NetworkPairSnapshot:
    """Read-only view of a network pair's counters."""

    id: str
    agent_id: str
    training_steps: int
    last_sync_step: int
    sync_frequency: int
    sync_count: int
    average_loss: float | None
    parameter_count: int
    last_update: float

    @property
    def steps_until_sync(self) -> int:
        return self.sync_frequency - (self.training_steps % self.sync_frequency)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "training_steps": self.training_steps,
            "last_sync_step": self.last_sync_step,
            "sync_frequency": self.sync_frequency,
            "sync_count": self.sync_count,
            "average_loss": self.average_loss,
            "parameter_count": self.parameter_count,
            "last_update": self.last_update,
        }


def _check_frequency(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(
            f"sync frequency must be a positive integer, got {value!r}"
        )
    return value


class NetworkPairManager:
    """Tracks training steps per agent and syncs target parameters.

    Args:
        sync_frequency: Default number of training steps between syncs.
        clone: Function producing an independent copy of a main handle.
        loss_window: Number of recent losses averaged into average_loss.
        lock_timeout: Seconds to wait for the manager lock.

    Raises:
        ConfigurationError: If sync_frequency is not a positive integer.
    """

    def __init__(
        self,
        sync_frequency: int,
        clone: Callable[[Any], Any] = clone_parameters,
        loss_window: int = DEFAULT_LOSS_WINDOW,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.sync_frequency = _check_frequency(sync_frequency)
        self._clone = clone
        self._loss_window = loss_window
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._pairs: dict[str, NetworkPair] = {}  # agent_id -> pair
        self._on_sync: list[Callable[[NetworkPairSnapshot], None]] = []

    def _locked(self):
        return acquire(self._lock, "network pairs", self._lock_timeout)

    def add_sync_listener(self, callback: Callable[[NetworkPairSnapshot], None]) -> None:
        """Register a callback invoked (outside the lock) after every sync."""
        self._on_sync.append(callback)

    def create_pair(
        self,
        agent_id: str,
        main: Any,
        target: Any | None = None,
        sync_frequency: int | None = None,
        pair_id: str | None = None,
    ) -> NetworkPairSnapshot:
        """Create the pair for an agent.

        The target starts as a copy of main unless given explicitly.

        Raises:
            ValidationError: If the agent already has a pair.
            ConfigurationError: If sync_frequency is not a positive integer.
        """
        frequency = (
            self.sync_frequency
            if sync_frequency is None
            else _check_frequency(sync_frequency)
        )
        pair = NetworkPair(
            id=pair_id or f"dqn-{agent_id}-{uuid.uuid4().hex[:8]}",
            agent_id=agent_id,
            main=main,
            target=self._clone(main) if target is None else target,
            sync_frequency=frequency,
            recent_losses=deque(maxlen=self._loss_window),
        )
        with self._locked():
            if agent_id in self._pairs:
                raise ValidationError(f"agent {agent_id} already has a network pair")
            self._pairs[agent_id] = pair
            snapshot = self._snapshot(pair)

        logger.info(
            f"Created network pair {pair.id} for agent {agent_id} "
            f"(sync every {frequency} steps, {snapshot.parameter_count} params)"
        )
        return snapshot

    def remove_pair(self, agent_id: str) -> bool:
        """Drop an agent's pair. Returns False if it had none."""
        with self._locked():
            pair = self._pairs.pop(agent_id, None)
        if pair is not None:
            logger.info(f"Removed network pair {pair.id} for agent {agent_id}")
        return pair is not None

    def has_pair(self, agent_id: str) -> bool:
        with self._locked():
            return agent_id in self._pairs

    def _get(self, agent_id: str) -> NetworkPair:
        pair = self._pairs.get(agent_id)
        if pair is None:
            raise NotFoundError(f"no network pair for agent {agent_id}")
        return pair

    def record_training_step(self, agent_id: str, loss: float | None = None) -> bool:
        """Count one training step and sync the target on cadence.

        Args:
            agent_id: Agent whose main network was trained.
            loss: Loss reported by the external trainer for this step.

        Returns:
            True if this step triggered a target sync.

        Raises:
            NotFoundError: If the agent has no pair.
            ValidationError: If loss is negative or not finite.
        """
        if loss is not None and (not math.isfinite(loss) or loss < 0):
            raise ValidationError(
                f"loss must be a finite non-negative number, got {loss}"
            )

        with self._locked():
            pair = self._get(agent_id)
            pair.training_steps += 1
            pair.last_update = time.time()
            if loss is not None:
                pair.recent_losses.append(float(loss))
            synced = pair.training_steps % pair.sync_frequency == 0
            if synced:
                self._sync(pair)
                snapshot = self._snapshot(pair)

        if synced:
            self._notify(snapshot)
        return synced

    def sync_target(self, agent_id: str) -> NetworkPairSnapshot:
        """Copy main into target immediately, off cadence.

        Raises:
            NotFoundError: If the agent has no pair.
        """
        with self._locked():
            pair = self._get(agent_id)
            self._sync(pair)
            snapshot = self._snapshot(pair)
        self._notify(snapshot)
        return snapshot

    def sync_all(self) -> int:
        """Sync every pair immediately. Returns the number synced."""
        with self._locked():
            pairs = list(self._pairs.values())
            for pair in pairs:
                self._sync(pair)
            snapshots = [self._snapshot(p) for p in pairs]
        for snapshot in snapshots:
            self._notify(snapshot)
        return len(snapshots)

    def _sync(self, pair: NetworkPair) -> None:
        # Build the full copy before the swap; the swap is a single rebinding.
        new_target = self._clone(pair.main)
        pair.target = new_target
        pair.last_sync_step = pair.training_steps
        pair.sync_count += 1
        logger.debug(
            f"Synced target network {pair.id} at step {pair.training_steps}"
        )

    def _notify(self, snapshot: NetworkPairSnapshot) -> None:
        for callback in self._on_sync:
            callback(snapshot)

    def set_main(self, agent_id: str, main: Any) -> None:
        """Replace the main parameter handle (used by an external trainer)."""
        with self._locked():
            pair = self._get(agent_id)
            pair.main = main
            pair.last_update = time.time()

    def get_main(self, agent_id: str) -> Any:
        with self._locked():
            return self._get(agent_id).main

    def get_target(self, agent_id: str) -> Any:
        with self._locked():
            return self._get(agent_id).target

    def get_handles(self, agent_id: str) -> tuple[Any, Any]:
        """Main and target handles read together, consistent with each other."""
        with self._locked():
            pair = self._get(agent_id)
            return pair.main, pair.target

    def training_steps(self, agent_id: str) -> int:
        with self._locked():
            return self._get(agent_id).training_steps

    def last_sync_step(self, agent_id: str) -> int:
        with self._locked():
            return self._get(agent_id).last_sync_step

    def average_loss(self, agent_id: str) -> float | None:
        with self._locked():
            return self._get(agent_id).average_loss

    def snapshot(self, agent_id: str) -> NetworkPairSnapshot:
        with self._locked():
            return self._snapshot(self._get(agent_id))

    def snapshots(self) -> list[NetworkPairSnapshot]:
        with self._locked():
            return [self._snapshot(p) for p in self._pairs.values()]

    def agent_ids(self) -> list[str]:
        with self._locked():
            return sorted(self._pairs)

    @staticmethod
    def _snapshot(pair: NetworkPair) -> NetworkPairSnapshot:
        return NetworkPairSnapshot(
            id=pair.id,
            agent_id=pair.agent_id,
            training_steps=pair.training_steps,
            last_sync_step=pair.last_sync_step,
            sync_frequency=pair.sync_frequency,
            sync_count=pair.sync_count,
            average_loss=pair.average_loss,
            parameter_count=count_parameters(pair.main),
            last_update=pair.last_update,
        )
