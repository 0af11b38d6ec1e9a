"""The coordinator: entity API, allocation and the periodic tick.

The Coordinator owns the agent registry, task queue, replay memory, network
pair manager and metrics aggregator, and exposes the only supported way to
mutate them. A background thread fires ``tick()`` every ``tick_interval``
seconds while started; each tick allocates pending tasks, hands control to
the injected trainer, closes an episode in the metrics and publishes the
snapshot. Ticks are serialized with each other, but task submission, agent
registration and training-step reports may arrive from any thread.

Lifecycle:
    start()  - idempotent; never runs two tick threads
    pause()  - stops the tick thread and waits for it to exit
    reset()  - clears replay memory and metrics; only while paused
"""

import logging
import math
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterable

import numpy as np

from . import metrics as prom
from .config import EngineConfig, RLConfig
from .errors import LifecycleError, NotFoundError, ValidationError
from .models import (
    AgentDefinition,
    AgentSnapshot,
    AgentStatus,
    TaskSnapshot,
    TaskStatus,
    TaskSubmission,
)
from .network import create_q_network
from .network_pair import NetworkPairManager, NetworkPairSnapshot
from .persistence import CoordinatorState, load_state, save_state
from .registry import AgentRegistry, TaskQueue
from .replay import ReplayBufferStats, ReplayMemory
from .scoring import (
    DQN_DISABLED,
    AllocationDeferred,
    AllocationResult,
    AllocationScorer,
    AllocationUnchanged,
    Assignment,
    ScoringStrategy,
    ScoringWeights,
    WeightedScorer,
)
from .stats import (
    MetricsAggregator,
    MetricsSnapshot,
    adapt_agent_scores,
    load_stats,
    write_stats,
)
from .structured_logging import clear_trace_context, set_trace_context
from .trainer import ExternalTrainer, NullTrainer

logger = logging.getLogger(__name__)


class Coordinator:
    """Reinforcement-learning training coordinator.

    Args:
        rl_config: Learning parameters (defaults to RLConfig()).
        engine_config: Engine settings (defaults to EngineConfig()).
        trainer: Collaborator called once per tick (defaults to NullTrainer).
        strategy: Allocation scoring strategy (defaults to the weighted sum
            built from ``engine_config.scoring_weights``).
        rng: Generator for fallback state vectors and replay sampling.
            Seeded from ``engine_config.seed`` when omitted.
        state_sampler: Replaces the rng-based fallback state sampler.
        network_factory: Builds the main parameter handle for agents
            registered without one while DQN is enabled.

    Raises:
        ConfigurationError: If either config is invalid.
    """

    def __init__(
        self,
        rl_config: RLConfig | None = None,
        engine_config: EngineConfig | None = None,
        trainer: ExternalTrainer | None = None,
        strategy: ScoringStrategy | None = None,
        rng: np.random.Generator | None = None,
        state_sampler: Callable[[], np.ndarray] | None = None,
        network_factory: Callable[[], Any] | None = None,
    ):
        self.rl_config = rl_config or RLConfig()
        self.engine_config = engine_config or EngineConfig()
        engine = self.engine_config
        rl = self.rl_config
        engine.validate()
        rl.validate(exploration_min=engine.exploration_min)

        if strategy is None:
            strategy = WeightedScorer(
                ScoringWeights.from_sequence(engine.scoring_weights),
                engine.skill_match,
            )

        if rng is None:
            replay_seed, state_seed = np.random.SeedSequence(engine.seed).spawn(2)
            replay_rng = np.random.default_rng(replay_seed)
            self.rng = np.random.default_rng(state_seed)
        else:
            replay_rng = self.rng = rng
        self._rng_lock = threading.Lock()

        timeout = engine.lock_timeout
        self.registry = AgentRegistry(engine.action_space_size, timeout)
        self.queue = TaskQueue(engine.archive_limit, timeout)
        self.replay = ReplayMemory(
            rl.memory_size,
            prioritized=rl.prioritized_replay_enabled,
            alpha=engine.priority_alpha,
            beta=engine.priority_beta,
            rng=replay_rng,
            lock_timeout=timeout,
        )
        self.pairs = NetworkPairManager(
            rl.target_network_update_freq, lock_timeout=timeout
        )
        self.pairs.add_sync_listener(self._on_target_sync)
        self.metrics = MetricsAggregator(
            exploration_rate=rl.exploration_rate,
            exploration_min=engine.exploration_min,
            exploration_decay=engine.exploration_decay,
            reward_threshold=rl.reward_threshold,
            convergence_target=rl.convergence_target,
            learning_rate=rl.learning_rate,
            history_length=engine.history_length,
            lock_timeout=timeout,
        )
        self.scorer = AllocationScorer(
            self.registry,
            self.queue,
            self.replay,
            state_sampler or self._sample_state,
            strategy=strategy,
            prioritized=rl.prioritized_replay_enabled,
            metrics=self.metrics,
        )
        self.trainer: ExternalTrainer = trainer or NullTrainer()
        self._network_factory = network_factory or (
            lambda: create_q_network(engine.state_dim, engine.action_space_size)
        )

        self._lifecycle_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event: threading.Event | None = None
        self._tick_count = 0

        if engine.stats_path:
            previous = load_stats(engine.stats_path)
            if previous is not None:
                self.metrics.restore(previous)

        prom.set_coordinator_info(
            self.replay.mode, rl.dqn_enabled, rl.memory_size
        )
        logger.info(
            f"Coordinator ready: replay={self.replay.mode} "
            f"(capacity {rl.memory_size}), dqn={'on' if rl.dqn_enabled else 'off'}, "
            f"sync every {rl.target_network_update_freq} steps"
        )

    def _sample_state(self) -> np.ndarray:
        with self._rng_lock:
            return self.rng.random(self.engine_config.state_dim)

    def _on_target_sync(self, snapshot: NetworkPairSnapshot) -> None:
        self.metrics.record_target_sync()
        prom.record_target_sync()
        logger.info(
            f"Target network of agent {snapshot.agent_id} synced "
            f"at step {snapshot.training_steps}"
        )

    # ========== Agents ==========

    def register_agent(
        self, definition: AgentDefinition, network: Any | None = None
    ) -> AgentSnapshot:
        """Register an agent and, with DQN enabled, its network pair.

        Args:
            definition: Agent input.
            network: Main parameter handle. When omitted and DQN is enabled a
                default Q-network is created.

        Raises:
            ValidationError: If the definition is malformed or the id is taken.
        """
        snapshot = self.registry.register(definition)
        if network is None and not self.rl_config.dqn_enabled:
            return snapshot

        try:
            main = network if network is not None else self._network_factory()
            pair = self.pairs.create_pair(snapshot.id, main)
        except Exception:
            self.registry.unregister(snapshot.id)
            raise
        return self.registry.set_network_pair(snapshot.id, pair.id)

    def unregister_agent(self, agent_id: str) -> AgentSnapshot:
        """Remove an agent, failing the tasks it still holds.

        Raises:
            NotFoundError: If the agent is unknown.
        """
        snapshot = self.registry.unregister(agent_id)
        for task in self.queue.fail_agent_tasks(agent_id):
            logger.warning(f"Task {task.id} failed: agent {agent_id} was unregistered")
            self.metrics.record_outcome(False)
        self.pairs.remove_pair(agent_id)
        return snapshot

    def set_agent_status(self, agent_id: str, status: AgentStatus | str) -> AgentSnapshot:
        return self.registry.set_status(agent_id, status)

    def update_agent_stats(
        self,
        agent_id: str,
        performance: float | None = None,
        confidence: float | None = None,
        q_values: Iterable[float] | None = None,
    ) -> AgentSnapshot:
        """Apply learning updates coming from an external trainer."""
        return self.registry.update_stats(agent_id, performance, confidence, q_values)

    def get_agent(self, agent_id: str) -> AgentSnapshot:
        return self.registry.get(agent_id)

    def agents(self) -> list[AgentSnapshot]:
        return self.registry.list_agents()

    def available_agents(
        self, status_filter: Iterable[AgentStatus | str] | None = None
    ) -> list[AgentSnapshot]:
        return self.registry.list_available(status_filter)

    # ========== Tasks ==========

    def submit_task(self, submission: TaskSubmission) -> TaskSnapshot:
        """Validate and enqueue a task. It is allocated on the next tick or
        the next explicit allocation call.

        Raises:
            ValidationError: If the submission is malformed.
        """
        return self.queue.submit(submission)

    def get_task(self, task_id: str) -> TaskSnapshot:
        return self.queue.get(task_id)

    def tasks(self) -> list[TaskSnapshot]:
        """Non-terminal tasks in submission order."""
        return self.queue.active()

    def pending_tasks(self) -> list[TaskSnapshot]:
        return self.queue.pending()

    def archived_tasks(self) -> list[TaskSnapshot]:
        return self.queue.archived()

    def start_task(self, task_id: str) -> TaskSnapshot:
        """External "started" signal: Assigned -> InProgress."""
        return self.queue.start(task_id)

    def complete_task(
        self, task_id: str, success: bool, reward: float | None = None
    ) -> TaskSnapshot:
        """External outcome: InProgress -> Completed or Failed.

        A successful task credits its reward (or ``reward`` when given) to
        the agent. With adaptation enabled the agent's performance and
        confidence move toward the outcome.

        Raises:
            NotFoundError: If the task is unknown.
            InvalidTransitionError: If the task is not in progress.
            ValidationError: If reward is not finite.
        """
        if reward is not None and not math.isfinite(reward):
            raise ValidationError(f"reward must be finite, got {reward}")

        task = self.queue.finish(task_id, success)
        earned = (task.reward if reward is None else reward) if success else 0.0

        if task.assigned_agent is not None:
            self._release_agent(task.assigned_agent, task.id, earned, success)

        self.metrics.record_outcome(success)
        logger.info(
            f"Task {task.id} {task.status.value}"
            + (f" by agent {task.assigned_agent}" if task.assigned_agent else "")
        )
        return task

    def _release_agent(
        self, agent_id: str, task_id: str, reward: float, success: bool
    ) -> None:
        held = self.queue.held_by(agent_id)
        next_task = held[-1].id if held else None
        agent = self.registry.release(agent_id, task_id, reward, next_task)
        if agent is None:
            return
        try:
            if self.rl_config.adaptation_enabled:
                performance, confidence = adapt_agent_scores(
                    agent.performance,
                    agent.confidence,
                    success,
                    self.engine_config.adaptation_rate,
                )
                agent = self.registry.update_stats(
                    agent_id, performance=performance, confidence=confidence
                )
            if not held and agent.status == AgentStatus.ACTIVE:
                self.registry.set_status(agent_id, AgentStatus.IDLE)
        except NotFoundError:
            logger.debug(f"Agent {agent_id} left before its task outcome was applied")

    # ========== Allocation ==========

    def allocate(self, task_id: str) -> AllocationResult:
        """Try to assign one pending task.

        Raises:
            NotFoundError: If the task is unknown.
        """
        result: AllocationResult
        if self.rl_config.dqn_enabled:
            result = self.scorer.allocate(task_id)
        else:
            task = self.queue.get(task_id)
            if task.status == TaskStatus.PENDING:
                self.metrics.record_allocation(assigned=False)
                result = AllocationDeferred(task, reason=DQN_DISABLED)
            else:
                result = AllocationUnchanged(task)
        self._publish_allocations([result])
        return result

    def optimize_allocation(self) -> list[AllocationResult]:
        """Try to assign every pending task, highest priority first."""
        if not self.rl_config.dqn_enabled:
            results = self.scorer.defer_pending(DQN_DISABLED)
        else:
            results = self.scorer.allocate_pending()
        self._publish_allocations(results)
        return results

    def _publish_allocations(self, results: list[AllocationResult]) -> None:
        for result in results:
            if isinstance(result, Assignment):
                prom.record_allocation(True)
            elif isinstance(result, AllocationDeferred):
                prom.record_allocation(False)
        self.metrics.set_replay_size(len(self.replay))

    # ========== Training ==========

    def report_training_step(self, agent_id: str, loss: float | None = None) -> bool:
        """Count a training step from the external trainer.

        Returns:
            True if the step triggered a target network sync.

        Raises:
            NotFoundError: If the agent has no network pair.
            ValidationError: If loss is negative or not finite.
        """
        synced = self.pairs.record_training_step(agent_id, loss)
        self.metrics.record_training_step(loss)
        return synced

    def sync_target_networks(self) -> int:
        """Copy every main network into its target now. Returns the count."""
        count = self.pairs.sync_all()
        logger.info(f"Manually synced {count} target networks")
        return count

    # ========== Tick & lifecycle ==========

    def tick(self) -> list[AllocationResult]:
        """Run one scheduling round.

        Allocates pending tasks, lets the trainer run, closes one episode
        when the trainer reports one and publishes the metrics.
        """
        with self._tick_lock:
            set_trace_context()
            try:
                results = self.optimize_allocation()
                report = self.trainer.on_tick(self)
                if report is not None:
                    self.metrics.complete_episode(report.episode_reward, report.steps)
                self.metrics.set_replay_size(len(self.replay))

                self._tick_count += 1
                snapshot = self.metrics.snapshot()
                prom.record_snapshot(snapshot)
                prom.record_replay(self.replay.stats())

                stats_path = self.engine_config.stats_path
                if stats_path and self._tick_count % self.engine_config.stats_interval == 0:
                    write_stats(snapshot, stats_path)
                return results
            finally:
                clear_trace_context()

    def _safe_tick(self) -> None:
        start = time.perf_counter()
        failed = False
        try:
            self.tick()
        except Exception:
            failed = True
            logger.exception("Tick failed; retrying on the next interval")
        finally:
            prom.record_tick(time.perf_counter() - start, failed)

    def _run(self, stop_event: threading.Event) -> None:
        logger.info(
            f"Tick loop started (every {self.engine_config.tick_interval:.2f}s)"
        )
        while not stop_event.wait(self.engine_config.tick_interval):
            self._safe_tick()
        logger.info("Tick loop stopped")

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def start(self) -> bool:
        """Start the tick thread. Returns False if it was already running."""
        with self._lifecycle_lock:
            if self.is_running:
                logger.debug("Coordinator already running")
                return False
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name="rlcoord-tick",
                daemon=True,
            )
            self._thread.start()
        logger.info("Coordinator started")
        return True

    def pause(self) -> bool:
        """Stop the tick thread and wait for it. Returns False if not running."""
        with self._lifecycle_lock:
            thread, event = self._thread, self._stop_event
            if thread is None or event is None:
                return False
            event.set()
            if thread is not threading.current_thread():
                thread.join()
            self._thread = None
            self._stop_event = None
        logger.info("Coordinator paused")
        return True

    def reset(self) -> None:
        """Clear replay memory and restore the initial metrics.

        Agents, tasks and network pairs are kept.

        Raises:
            LifecycleError: If the tick thread is running.
        """
        with self._lifecycle_lock:
            if self.is_running:
                raise LifecycleError("pause the coordinator before resetting it")
            with self._tick_lock:
                self.replay.clear()
                self.metrics.reset()
                self._tick_count = 0
        logger.info("Coordinator reset")

    def close(self) -> None:
        self.pause()

    def __enter__(self) -> "Coordinator":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ========== Read-only views ==========

    def metrics_snapshot(self) -> MetricsSnapshot:
        return self.metrics.snapshot()

    def replay_stats(self) -> ReplayBufferStats:
        return self.replay.stats()

    def network_pairs(self) -> list[NetworkPairSnapshot]:
        return sorted(self.pairs.snapshots(), key=lambda p: p.agent_id)

    # ========== Persistence ==========

    def save_state(self, path: str | Path) -> None:
        """Write agents, tasks, replay records and metrics to ``path``."""
        state = CoordinatorState(
            agents=self.registry.list_agents(),
            tasks=self.queue.active(),
            archived_tasks=self.queue.archived(),
            replay=list(self.replay.records()),
            metrics=self.metrics.snapshot(),
        )
        save_state(state, path)

    def restore_state(self, path: str | Path) -> None:
        """Replace all state with the document at ``path``.

        Network parameters are not persisted; with DQN enabled every restored
        agent gets a fresh network pair under its saved pair id.

        Raises:
            LifecycleError: If the tick thread is running.
            ConfigurationError: If the schema version is unsupported.
            ValidationError: If the document is malformed.
        """
        state = load_state(path)
        with self._lifecycle_lock:
            if self.is_running:
                raise LifecycleError("pause the coordinator before restoring state")
            with self._tick_lock:
                self.registry.clear()
                self.queue.clear()
                self.replay.clear()
                for agent_id in self.pairs.agent_ids():
                    self.pairs.remove_pair(agent_id)

                for agent in state.agents:
                    self.registry.restore(agent)
                    if self.rl_config.dqn_enabled:
                        pair = self.pairs.create_pair(
                            agent.id,
                            self._network_factory(),
                            pair_id=agent.network_pair_id,
                        )
                        self.registry.set_network_pair(agent.id, pair.id)
                    else:
                        self.registry.set_network_pair(agent.id, None)
                for task in state.archived_tasks + state.tasks:
                    self.queue.restore(task)
                for record in state.replay:
                    self.replay.push(record)
                if state.metrics is not None:
                    self.metrics.restore(state.metrics)
                else:
                    self.metrics.reset()
                self.metrics.set_replay_size(len(self.replay))

        logger.info(
            f"Restored state from {path}: {len(state.agents)} agents, "
            f"{len(state.tasks)} open tasks, {len(state.replay)} transitions"
        )
