"""Tests for the Coordinator facade and its tick loop.

Tests cover:
- Allocation through the coordinator (scenario, DQN disabled, no agents)
- Task outcomes, reward credit and agent adaptation
- Training-step reports and target syncs
- start/pause/reset lifecycle and tick loop resilience
- State save/restore and stats.json publishing
"""

import threading
import time

import numpy as np
import pytest
import torch

from rlcoord.config import EngineConfig, RLConfig
from rlcoord.coordinator import Coordinator
from rlcoord.errors import (
    ConfigurationError,
    InvalidTransitionError,
    LifecycleError,
    NotFoundError,
)
from rlcoord.models import AgentDefinition, AgentStatus, TaskStatus, TaskSubmission
from rlcoord.scoring import (
    DQN_DISABLED,
    NO_AGENT_AVAILABLE,
    AllocationDeferred,
    Assignment,
    WeightedScorer,
)
from rlcoord.stats import load_stats
from rlcoord.trainer import SyntheticTrainer, TickReport


def make_task(task_id: str = "t1", **kwargs) -> TaskSubmission:
    values = {
        "id": task_id,
        "priority": 8,
        "complexity": 3,
        "required_skills": ["x"],
        "reward": 100.0,
        "deadline": "2030-01-01T00:00:00Z",
    }
    values.update(kwargs)
    return TaskSubmission(**values)


AGENT_A = AgentDefinition(
    id="A", skills=["x", "y"], performance=90, confidence=90, q_values=[0.8] * 5
)
AGENT_B = AgentDefinition(
    id="B", skills=["z"], performance=50, confidence=50, q_values=[0.3] * 5
)


def make_coordinator(rl=None, engine=None, **kwargs) -> Coordinator:
    """Coordinator with small opaque network handles."""
    kwargs.setdefault("network_factory", lambda: np.zeros(4))
    return Coordinator(
        rl or RLConfig(),
        engine or EngineConfig(seed=0),
        **kwargs,
    )


class EpisodeTrainer:
    """Reports one fixed episode per tick."""

    def __init__(self, reward: float = 5.0, steps: int = 3):
        self.reward = reward
        self.steps = steps
        self.calls = 0

    def on_tick(self, coordinator):
        self.calls += 1
        return TickReport(steps=self.steps, episode_reward=self.reward)


class FailingTrainer:
    def __init__(self):
        self.calls = 0

    def on_tick(self, coordinator):
        self.calls += 1
        raise RuntimeError("trainer exploded")


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestConstruction:
    def test_exploration_below_minimum_rejected(self):
        with pytest.raises(ConfigurationError):
            Coordinator(
                RLConfig(exploration_rate=0.005), EngineConfig(exploration_min=0.01)
            )

    def test_scoring_weights_length_rejected(self):
        engine = EngineConfig()
        engine.scoring_weights = (1.0, 2.0, 3.0)
        with pytest.raises(ConfigurationError):
            Coordinator(engine_config=engine)

    def test_default_network_pair_created(self):
        coordinator = Coordinator(engine_config=EngineConfig(state_dim=4))
        snapshot = coordinator.register_agent(AGENT_A)

        assert snapshot.network_pair_id is not None
        main = coordinator.pairs.get_main("A")
        assert isinstance(main, torch.nn.Module)
        assert main.input_size == 4
        assert main.output_size == 5

    def test_failed_network_rolls_back_registration(self):
        def broken():
            raise RuntimeError("no network")

        coordinator = make_coordinator(network_factory=broken)
        with pytest.raises(RuntimeError):
            coordinator.register_agent(AGENT_A)
        assert coordinator.agents() == []


class TestAllocation:
    def test_scenario(self):
        """Test the better-matching agent wins and one transition is written."""
        coordinator = make_coordinator()
        coordinator.register_agent(AGENT_A)
        coordinator.register_agent(AGENT_B)
        coordinator.submit_task(make_task())

        results = coordinator.optimize_allocation()

        assert len(results) == 1
        result = results[0]
        assert isinstance(result, Assignment)
        assert result.agent_id == "A"
        assert result.score == pytest.approx(20.68)
        assert coordinator.get_task("t1").status == TaskStatus.ASSIGNED
        assert len(coordinator.replay) == 1
        assert coordinator.replay.records()[0].reward == 100.0
        assert coordinator.metrics_snapshot().replay_size == 1
        assert coordinator.pending_tasks() == []

    def test_allocation_is_reproducible(self):
        def run():
            coordinator = make_coordinator(engine=EngineConfig(seed=11))
            coordinator.register_agent(AGENT_A)
            coordinator.register_agent(AGENT_B)
            for i in range(4):
                coordinator.submit_task(make_task(f"t{i}", required_skills=["z"]))
            coordinator.optimize_allocation()
            return [(r.state, r.next_state) for r in coordinator.replay.records()]

        assert run() == run()

    def test_zero_agents_deferred(self):
        coordinator = make_coordinator()
        coordinator.submit_task(make_task())

        result = coordinator.allocate("t1")

        assert isinstance(result, AllocationDeferred)
        assert result.reason == NO_AGENT_AVAILABLE
        assert coordinator.get_task("t1").status == TaskStatus.PENDING
        assert len(coordinator.replay) == 0

    def test_dqn_disabled_defers(self):
        coordinator = make_coordinator(rl=RLConfig(dqn_enabled=False))
        snapshot = coordinator.register_agent(AGENT_A)
        coordinator.submit_task(make_task())

        result = coordinator.allocate("t1")

        assert snapshot.network_pair_id is None
        assert coordinator.network_pairs() == []
        assert isinstance(result, AllocationDeferred)
        assert result.reason == DQN_DISABLED
        assert len(coordinator.replay) == 0
        assert [r.reason for r in coordinator.tick()] == [DQN_DISABLED]

    def test_explicit_network_with_dqn_disabled(self):
        coordinator = make_coordinator(rl=RLConfig(dqn_enabled=False))
        snapshot = coordinator.register_agent(AGENT_A, network=np.ones(3))
        assert snapshot.network_pair_id is not None

    def test_unknown_task(self):
        with pytest.raises(NotFoundError):
            make_coordinator().allocate("ghost")


class TestTaskOutcomes:
    def assigned(self) -> Coordinator:
        coordinator = make_coordinator()
        coordinator.register_agent(AGENT_A)
        coordinator.submit_task(make_task())
        coordinator.optimize_allocation()
        return coordinator

    def test_success_credits_reward_and_frees_agent(self):
        coordinator = self.assigned()
        assert coordinator.get_agent("A").status == AgentStatus.ACTIVE

        coordinator.start_task("t1")
        task = coordinator.complete_task("t1", success=True)

        assert task.status == TaskStatus.COMPLETED
        agent = coordinator.get_agent("A")
        assert agent.reward == 100.0
        assert agent.current_task is None
        assert agent.status == AgentStatus.IDLE
        # 90 + (100 - 90) * 0.05
        assert agent.performance == pytest.approx(90.5)
        assert agent.confidence == pytest.approx(90.5)

        snapshot = coordinator.metrics_snapshot()
        assert snapshot.success_rate == 1.0
        assert snapshot.completed_tasks == 1
        assert [t.id for t in coordinator.archived_tasks()] == ["t1"]

    def test_reward_override(self):
        coordinator = self.assigned()
        coordinator.start_task("t1")
        coordinator.complete_task("t1", success=True, reward=7.5)
        assert coordinator.get_agent("A").reward == 7.5

    def test_failure_earns_nothing(self):
        coordinator = self.assigned()
        coordinator.start_task("t1")
        coordinator.complete_task("t1", success=False)

        agent = coordinator.get_agent("A")
        assert agent.reward == 0.0
        assert agent.performance == pytest.approx(85.5)
        assert coordinator.metrics_snapshot().success_rate == 0.0

    def test_adaptation_disabled(self):
        coordinator = make_coordinator(rl=RLConfig(adaptation_enabled=False))
        coordinator.register_agent(AGENT_A)
        coordinator.submit_task(make_task())
        coordinator.optimize_allocation()
        coordinator.start_task("t1")
        coordinator.complete_task("t1", success=True)
        assert coordinator.get_agent("A").performance == 90.0

    def test_complete_requires_in_progress(self):
        coordinator = self.assigned()
        with pytest.raises(InvalidTransitionError):
            coordinator.complete_task("t1", success=True)

    def test_unregister_fails_held_tasks(self):
        coordinator = self.assigned()

        coordinator.unregister_agent("A")

        assert coordinator.get_task("t1").status == TaskStatus.FAILED
        assert coordinator.metrics_snapshot().failed_tasks == 1
        assert coordinator.network_pairs() == []
        with pytest.raises(NotFoundError):
            coordinator.get_agent("A")

    def test_agent_unregistered_while_scored(self):
        class LeavingScorer(WeightedScorer):
            coordinator = None

            def score(self, agent, task):
                if agent.id in {a.id for a in self.coordinator.agents()}:
                    self.coordinator.unregister_agent(agent.id)
                return super().score(agent, task)

        strategy = LeavingScorer()
        coordinator = make_coordinator(strategy=strategy)
        strategy.coordinator = coordinator
        coordinator.register_agent(AGENT_A)
        coordinator.submit_task(make_task())

        result = coordinator.allocate("t1")

        assert isinstance(result, AllocationDeferred)
        task = coordinator.get_task("t1")
        assert task.status == TaskStatus.PENDING
        assert task.assigned_agent is None
        assert coordinator.replay_stats().size == 0
        assert coordinator.agents() == []

    def test_agent_with_other_tasks_stays_active(self):
        coordinator = make_coordinator()
        coordinator.register_agent(AGENT_A)
        coordinator.submit_task(make_task("t1"))
        coordinator.submit_task(make_task("t2", priority=2))
        coordinator.optimize_allocation()
        coordinator.start_task("t1")
        coordinator.start_task("t2")

        coordinator.complete_task("t2", success=True)

        agent = coordinator.get_agent("A")
        assert agent.status == AgentStatus.ACTIVE
        assert agent.current_task == "t1"

        coordinator.complete_task("t1", success=True)

        agent = coordinator.get_agent("A")
        assert agent.status == AgentStatus.IDLE
        assert agent.current_task is None


class TestTraining:
    def test_report_training_step_syncs(self):
        coordinator = make_coordinator(rl=RLConfig(target_network_update_freq=2))
        coordinator.register_agent(AGENT_A)

        assert coordinator.report_training_step("A", 0.5) is False
        assert coordinator.report_training_step("A", 0.25) is True

        snapshot = coordinator.metrics_snapshot()
        assert snapshot.training_steps == 2
        assert snapshot.target_network_updates == 1
        assert snapshot.dqn_loss == 0.25
        pair = coordinator.network_pairs()[0]
        assert pair.last_sync_step == 2

    def test_report_for_unknown_agent(self):
        coordinator = make_coordinator()
        with pytest.raises(NotFoundError):
            coordinator.report_training_step("ghost")

    def test_manual_sync(self):
        coordinator = make_coordinator()
        coordinator.register_agent(AGENT_A)
        coordinator.register_agent(AGENT_B)

        assert coordinator.sync_target_networks() == 2
        assert coordinator.metrics_snapshot().target_network_updates == 2

    def test_update_agent_stats(self):
        coordinator = make_coordinator()
        coordinator.register_agent(AGENT_A)
        agent = coordinator.update_agent_stats("A", q_values=[0.1] * 5)
        assert agent.avg_q_value == pytest.approx(0.1)


class TestTick:
    def test_tick_closes_episode(self):
        trainer = EpisodeTrainer(reward=5.0, steps=3)
        coordinator = make_coordinator(trainer=trainer)

        coordinator.tick()
        coordinator.tick()

        snapshot = coordinator.metrics_snapshot()
        assert trainer.calls == 2
        assert coordinator.tick_count == 2
        assert snapshot.episode_count == 2
        assert snapshot.total_steps == 6
        assert snapshot.exploration_rate == pytest.approx(0.995**2)

    def test_null_trainer_closes_no_episode(self):
        coordinator = make_coordinator()
        coordinator.tick()
        assert coordinator.metrics_snapshot().episode_count == 0

    def test_synthetic_trainer(self):
        """Test a seeded synthetic run trains every pair and is reproducible."""

        def run():
            torch.manual_seed(0)
            coordinator = Coordinator(
                RLConfig(batch_size=4),
                EngineConfig(seed=3),
                trainer=SyntheticTrainer(np.random.default_rng(3)),
            )
            coordinator.register_agent(AGENT_A)
            coordinator.register_agent(AGENT_B)
            coordinator.submit_task(make_task())
            for _ in range(3):
                coordinator.tick()
            return coordinator

        first = run()
        snapshot = first.metrics_snapshot()
        assert snapshot.episode_count == 3
        assert snapshot.training_steps == 6
        assert snapshot.dqn_loss >= 0.0
        assert all(p.training_steps == 3 for p in first.network_pairs())
        for agent in first.agents():
            assert 0.0 <= agent.performance <= 100.0
            assert len(agent.q_values) == 5

        second = run()
        assert [a.performance for a in first.agents()] == [
            a.performance for a in second.agents()
        ]


class TestLifecycle:
    def test_start_is_idempotent(self):
        coordinator = make_coordinator(engine=EngineConfig(tick_interval=0.01))
        try:
            assert coordinator.start() is True
            assert coordinator.start() is False
            ticks = [t for t in threading.enumerate() if t.name == "rlcoord-tick"]
            assert len(ticks) == 1
            assert wait_for(lambda: coordinator.tick_count >= 2)
        finally:
            coordinator.pause()

        assert not coordinator.is_running
        assert coordinator.pause() is False

    def test_restart_after_pause(self):
        coordinator = make_coordinator(engine=EngineConfig(tick_interval=0.01))
        coordinator.start()
        coordinator.pause()
        count = coordinator.tick_count
        coordinator.start()
        try:
            assert wait_for(lambda: coordinator.tick_count > count)
        finally:
            coordinator.pause()

    def test_reset_while_running_rejected(self):
        coordinator = make_coordinator(engine=EngineConfig(tick_interval=0.01))
        coordinator.start()
        try:
            with pytest.raises(LifecycleError):
                coordinator.reset()
        finally:
            coordinator.pause()

    def test_reset_clears_replay_and_metrics(self):
        coordinator = make_coordinator(trainer=EpisodeTrainer())
        coordinator.register_agent(AGENT_A)
        coordinator.submit_task(make_task())
        coordinator.tick()
        assert len(coordinator.replay) == 1

        coordinator.reset()

        snapshot = coordinator.metrics_snapshot()
        assert len(coordinator.replay) == 0
        assert snapshot.episode_count == 0
        assert snapshot.exploration_rate == 1.0
        assert coordinator.tick_count == 0
        # Agents and tasks survive a reset
        assert [a.id for a in coordinator.agents()] == ["A"]
        assert coordinator.get_task("t1").status == TaskStatus.ASSIGNED

    def test_tick_loop_survives_failing_trainer(self):
        trainer = FailingTrainer()
        coordinator = make_coordinator(
            engine=EngineConfig(tick_interval=0.01), trainer=trainer
        )
        with coordinator:
            coordinator.start()
            assert wait_for(lambda: trainer.calls >= 3)
            assert coordinator.is_running
        assert not coordinator.is_running

    def test_entities_mutable_while_running(self):
        coordinator = make_coordinator(engine=EngineConfig(tick_interval=0.01))
        with coordinator:
            coordinator.start()
            coordinator.register_agent(AGENT_A)
            coordinator.submit_task(make_task())
            assert wait_for(
                lambda: coordinator.get_task("t1").status == TaskStatus.ASSIGNED
            )


class TestPersistence:
    def test_save_and_restore(self, tmp_path):
        path = tmp_path / "state.json"
        source = make_coordinator(trainer=EpisodeTrainer())
        source.register_agent(AGENT_A)
        source.register_agent(AGENT_B)
        source.submit_task(make_task("t1"))
        source.submit_task(make_task("t2", required_skills=["z"]))
        source.submit_task(make_task("t3", required_skills=["w"], priority=1))
        source.tick()
        source.start_task("t1")
        source.complete_task("t1", success=True)
        source.save_state(path)

        restored = make_coordinator()
        restored.register_agent(AgentDefinition(id="stale", skills=["x"]))
        restored.restore_state(path)

        assert [a.to_dict() for a in restored.agents()] == [
            a.to_dict() for a in source.agents()
        ]
        assert [p.id for p in restored.network_pairs()] == [
            p.id for p in source.network_pairs()
        ]
        assert [t.to_dict() for t in restored.tasks()] == [
            t.to_dict() for t in source.tasks()
        ]
        assert restored.get_task("t1").status == TaskStatus.COMPLETED
        assert list(restored.replay.records()) == list(source.replay.records())
        assert restored.metrics_snapshot().episode_count == 1

    def test_restore_while_running_rejected(self, tmp_path):
        path = tmp_path / "state.json"
        coordinator = make_coordinator(engine=EngineConfig(tick_interval=0.01))
        coordinator.save_state(path)
        with coordinator:
            coordinator.start()
            with pytest.raises(LifecycleError):
                coordinator.restore_state(path)

    def test_stats_file_written_and_reloaded(self, tmp_path):
        stats_path = tmp_path / "stats.json"
        engine = EngineConfig(stats_path=str(stats_path), stats_interval=2)
        coordinator = make_coordinator(engine=engine, trainer=EpisodeTrainer())

        coordinator.tick()
        assert not stats_path.exists()
        coordinator.tick()

        assert load_stats(stats_path).episode_count == 2
        reloaded = make_coordinator(
            engine=EngineConfig(stats_path=str(stats_path), stats_interval=2)
        )
        assert reloaded.metrics_snapshot().episode_count == 2
