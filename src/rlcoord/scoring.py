"""Task-to-agent allocation.

For each pending task every available agent gets a score from a pluggable
strategy. The default is a weighted sum:

    score = w1 * avg_q + w2 * performance / 100
          + w3 * matched_skills + w4 * confidence / 100

The highest score wins, ties going to the lexically smallest agent id, so
identical inputs always produce the same assignment. A successful
assignment writes one transition into replay memory. When no agent is
available the task stays pending and the result is ``AllocationDeferred``.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Protocol, Sequence, Union

import numpy as np

from .errors import ConfigurationError, NotFoundError
from .models import (
    PRIORITY_MAX,
    AgentSnapshot,
    TaskSnapshot,
    TaskStatus,
    assign_action_index,
)
from .registry import AgentRegistry, TaskQueue
from .replay import ReplayMemory, TransitionRecord
from .stats import MetricsAggregator

logger = logging.getLogger(__name__)

NO_AGENT_AVAILABLE = "Pending — no agent available"
DQN_DISABLED = "Pending — DQN allocation disabled"


class SkillMatch(str, Enum):
    """How agent skills are counted against a task's required skills."""

    EXACT = "exact"
    # Agent skill "anomaly_detection" matches any requirement containing "anomaly"
    PREFIX = "prefix"


def skill_match_count(
    agent_skills: Iterable[str],
    required_skills: Iterable[str],
    mode: SkillMatch = SkillMatch.EXACT,
) -> int:
    """Number of the agent's skills that satisfy the task's requirements."""
    required = frozenset(required_skills)
    if mode == SkillMatch.EXACT:
        return len(frozenset(agent_skills) & required)
    return sum(
        1
        for skill in agent_skills
        if any(skill.split("_")[0] in req for req in required)
    )


@dataclass(frozen=True)
class ScoringWeights:
    """Weights of the default scoring formula.

    The skill term dominates with the default magnitudes; they are starting
    values, not tuned constants.
    """

    q_value: float = 0.4
    performance: float = 0.3
    skill_match: float = 20.0
    confidence: float = 0.1

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "ScoringWeights":
        """Build weights from (q_value, performance, skill_match, confidence).

        Raises:
            ConfigurationError: If there are not exactly four finite numbers.
        """
        values = list(values)
        if len(values) != 4:
            raise ConfigurationError(
                f"scoring weights need exactly 4 values, got {len(values)}"
            )
        try:
            weights = [float(v) for v in values]
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"scoring weights must be numbers: {values}") from e
        if not all(math.isfinite(w) for w in weights):
            raise ConfigurationError(f"scoring weights must be finite: {values}")
        return cls(*weights)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.q_value, self.performance, self.skill_match, self.confidence)


class ScoringStrategy(Protocol):
    """Scores how well an agent fits a task; higher is better."""

    def score(self, agent: AgentSnapshot, task: TaskSnapshot) -> float: ...


class WeightedScorer:
    """The default weighted-sum scoring strategy."""

    def __init__(
        self,
        weights: ScoringWeights | None = None,
        skill_match: SkillMatch | str = SkillMatch.EXACT,
    ):
        self.weights = weights or ScoringWeights()
        try:
            self.skill_match = SkillMatch(skill_match)
        except ValueError as e:
            raise ConfigurationError(f"unknown skill match mode {skill_match!r}") from e

    def score(self, agent: AgentSnapshot, task: TaskSnapshot) -> float:
        w = self.weights
        matched = skill_match_count(agent.skills, task.required_skills, self.skill_match)
        return (
            w.q_value * agent.avg_q_value
            + w.performance * (agent.performance / 100.0)
            + w.skill_match * matched
            + w.confidence * (agent.confidence / 100.0)
        )


def select_agent(
    strategy: ScoringStrategy,
    agents: Iterable[AgentSnapshot],
    task: TaskSnapshot,
) -> tuple[AgentSnapshot, float] | None:
    """Best-scoring agent for a task, ties broken by lexical id order."""
    best: tuple[AgentSnapshot, float] | None = None
    for agent in sorted(agents, key=lambda a: a.id):
        score = strategy.score(agent, task)
        if best is None or score > best[1]:
            best = (agent, score)
    return best


# ========== Allocation results ==========


@dataclass(frozen=True)
class Assignment:
    """A pending task was assigned."""

    task: TaskSnapshot
    agent_id: str
    score: float
    transition: TransitionRecord

    @property
    def task_id(self) -> str:
        return self.task.id


@dataclass(frozen=True)
class AllocationDeferred:
    """No assignment was possible; the task stays pending. Not an error."""

    task: TaskSnapshot
    reason: str = NO_AGENT_AVAILABLE

    @property
    def task_id(self) -> str:
        return self.task.id


@dataclass(frozen=True)
class AllocationUnchanged:
    """The task had already left the pending state; nothing was done."""

    task: TaskSnapshot

    @property
    def task_id(self) -> str:
        return self.task.id


AllocationResult = Union[Assignment, AllocationDeferred, AllocationUnchanged]


class AllocationScorer:
    """Matches pending tasks to available agents.

    Args:
        agents: Agent registry to read candidates from.
        tasks: Task queue holding pending tasks.
        replay: Replay memory receiving one transition per assignment.
        state_sampler: Produces fallback and next-state vectors.
        strategy: Scoring strategy (defaults to WeightedScorer()).
        prioritized: Attach priority = task.priority / 10 to transitions.
        metrics: Aggregator notified of every assignment and deferral.
    """

    def __init__(
        self,
        agents: AgentRegistry,
        tasks: TaskQueue,
        replay: ReplayMemory,
        state_sampler: Callable[[], np.ndarray],
        strategy: ScoringStrategy | None = None,
        prioritized: bool = False,
        metrics: MetricsAggregator | None = None,
    ):
        self.agents = agents
        self.tasks = tasks
        self.replay = replay
        self.strategy = strategy or WeightedScorer()
        self.prioritized = prioritized
        self.metrics = metrics
        self._sample_state = state_sampler

    def allocate(self, task_id: str) -> AllocationResult:
        """Try to assign one task.

        An agent unregistered between selection and assignment is skipped
        and the task is offered to the remaining agents.

        Raises:
            NotFoundError: If the task is unknown.
        """
        while True:
            task = self.tasks.get(task_id)
            if task.status != TaskStatus.PENDING:
                return AllocationUnchanged(task)

            choice = select_agent(self.strategy, self.agents.list_available(), task)
            if choice is None:
                logger.debug(f"Task {task.id} deferred: no agent available")
                if self.metrics is not None:
                    self.metrics.record_allocation(assigned=False)
                return AllocationDeferred(task)

            agent, score = choice
            changed, snapshot = self.tasks.assign(task.id, agent.id)
            if not changed:
                # Another caller allocated it between our read and the assign
                return AllocationUnchanged(snapshot)

            try:
                self.agents.note_assignment(agent.id, task.id)
            except NotFoundError:
                logger.warning(
                    f"Agent {agent.id} was unregistered while receiving task {task.id}"
                )
                self.tasks.unassign(task.id, agent.id)
                continue
            break

        state = task.state_vector
        if state is None:
            state = self._sample_state()
        record = TransitionRecord.create(
            state=state,
            action=assign_action_index(task.action_space),
            reward=task.reward,
            next_state=self._sample_state(),
            done=False,
            priority=task.priority / PRIORITY_MAX if self.prioritized else None,
        )
        self.replay.push(record)
        if self.metrics is not None:
            self.metrics.record_allocation(assigned=True)

        logger.info(f"Assigned task {task.id} to agent {agent.id} (score={score:.3f})")
        return Assignment(task=snapshot, agent_id=agent.id, score=score, transition=record)

    def allocate_pending(self) -> list[AllocationResult]:
        """Try every pending task, highest priority first."""
        return [self.allocate(task.id) for task in self.tasks.pending()]

    def defer_pending(self, reason: str) -> list[AllocationResult]:
        """Report every pending task as deferred without scoring."""
        results: list[AllocationResult] = []
        for task in self.tasks.pending():
            if self.metrics is not None:
                self.metrics.record_allocation(assigned=False)
            results.append(AllocationDeferred(task, reason=reason))
        return results
