"""Agent registry and task queue.

Both stores own their records exclusively. Every mutation goes through a
validated method, and every read returns frozen snapshots.

Task state machine:
    PENDING -> ASSIGNED -> IN_PROGRESS -> COMPLETED | FAILED

Transitions only move forward. Assigning a task that already left PENDING
is a no-op that reports the current state. Terminal tasks are moved to a
bounded archive and never change again.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Iterable

from .concurrency import DEFAULT_LOCK_TIMEOUT, acquire
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    AVAILABLE_STATUSES,
    SCORE_MAX,
    SCORE_MIN,
    Agent,
    AgentDefinition,
    AgentSnapshot,
    AgentStatus,
    Task,
    TaskSnapshot,
    TaskStatus,
    TaskSubmission,
    check_range,
    validate_q_values,
)

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_LIMIT = 1000


class AgentRegistry:
    """Thread-safe store of learning agents.

    Args:
        action_space_size: Required Q-value vector length (None = any).
        lock_timeout: Seconds to wait for the registry lock.
    """

    def __init__(
        self,
        action_space_size: int | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.action_space_size = action_space_size
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._agents: dict[str, Agent] = {}

    def _locked(self):
        return acquire(self._lock, "agent registry", self._lock_timeout)

    def __len__(self) -> int:
        with self._locked():
            return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        with self._locked():
            return agent_id in self._agents

    def _get(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError(f"unknown agent {agent_id}")
        return agent

    def register(self, definition: AgentDefinition) -> AgentSnapshot:
        """Validate and add an agent.

        Raises:
            ValidationError: If the definition is malformed or the id is taken.
        """
        agent = Agent.from_definition(definition, self.action_space_size)
        with self._locked():
            if agent.id in self._agents:
                raise ValidationError(f"agent {agent.id} is already registered")
            self._agents[agent.id] = agent
            snapshot = agent.snapshot()
        logger.info(
            f"Registered agent {agent.id} ({agent.status.value}, "
            f"skills={sorted(agent.skills)})"
        )
        return snapshot

    def restore(self, snapshot: AgentSnapshot) -> AgentSnapshot:
        """Re-insert a persisted agent, replacing any record with its id."""
        agent = Agent.from_snapshot(snapshot)
        validate_q_values(agent.q_values, self.action_space_size)
        with self._locked():
            self._agents[agent.id] = agent
            return agent.snapshot()

    def unregister(self, agent_id: str) -> AgentSnapshot:
        """Remove an agent.

        Raises:
            NotFoundError: If the agent is unknown.
        """
        with self._locked():
            agent = self._get(agent_id)
            del self._agents[agent_id]
            snapshot = agent.snapshot()
        logger.info(f"Unregistered agent {agent_id}")
        return snapshot

    def get(self, agent_id: str) -> AgentSnapshot:
        with self._locked():
            return self._get(agent_id).snapshot()

    def list_agents(self) -> list[AgentSnapshot]:
        """Every agent, ordered by id."""
        with self._locked():
            return [self._agents[k].snapshot() for k in sorted(self._agents)]

    def list_available(
        self, status_filter: Iterable[AgentStatus | str] | None = None
    ) -> list[AgentSnapshot]:
        """Agents that may receive work, ordered by id.

        Args:
            status_filter: Statuses to accept. Defaults to idle and active.
        """
        if status_filter is None:
            accepted = AVAILABLE_STATUSES
        else:
            accepted = frozenset(AgentStatus(s) for s in status_filter)
        with self._locked():
            return [
                self._agents[k].snapshot()
                for k in sorted(self._agents)
                if self._agents[k].status in accepted
            ]

    def set_status(self, agent_id: str, status: AgentStatus | str) -> AgentSnapshot:
        try:
            new_status = AgentStatus(status)
        except ValueError as e:
            raise ValidationError(f"unknown agent status {status!r}") from e
        with self._locked():
            agent = self._get(agent_id)
            agent.status = new_status
            return agent.snapshot()

    def set_network_pair(self, agent_id: str, pair_id: str | None) -> AgentSnapshot:
        with self._locked():
            agent = self._get(agent_id)
            agent.network_pair_id = pair_id
            return agent.snapshot()

    def note_assignment(self, agent_id: str, task_id: str) -> AgentSnapshot:
        """Record that a task was assigned and one transition was written."""
        with self._locked():
            agent = self._get(agent_id)
            agent.current_task = task_id
            agent.experience_count += 1
            if agent.status == AgentStatus.IDLE:
                agent.status = AgentStatus.ACTIVE
            return agent.snapshot()

    def release(
        self,
        agent_id: str,
        task_id: str,
        reward: float = 0.0,
        next_task: str | None = None,
    ) -> AgentSnapshot | None:
        """Clear an agent's current task and credit the reward earned.

        ``next_task`` becomes the current task when the agent still holds one.
        Returns None if the agent was unregistered in the meantime.
        """
        with self._locked():
            agent = self._agents.get(agent_id)
            if agent is None:
                return None
            if agent.current_task == task_id:
                agent.current_task = next_task
            agent.reward += reward
            return agent.snapshot()

    def update_stats(
        self,
        agent_id: str,
        performance: float | None = None,
        confidence: float | None = None,
        q_values: Iterable[float] | None = None,
    ) -> AgentSnapshot:
        """Apply learning updates from the trainer or metrics aggregator.

        Raises:
            NotFoundError: If the agent is unknown.
            ValidationError: If a value is out of range.
        """
        if performance is not None:
            performance = check_range(
                "performance", performance, SCORE_MIN, SCORE_MAX
            )
        if confidence is not None:
            confidence = check_range(
                "confidence", confidence, SCORE_MIN, SCORE_MAX
            )
        new_q = validate_q_values(q_values, self.action_space_size)

        with self._locked():
            agent = self._get(agent_id)
            if performance is not None:
                agent.performance = performance
            if confidence is not None:
                agent.confidence = confidence
            if new_q is not None:
                agent.q_values = new_q
            return agent.snapshot()

    def clear(self) -> None:
        with self._locked():
            self._agents.clear()


class TaskQueue:
    """Thread-safe store of submitted tasks and their archive.

    Args:
        archive_limit: Maximum number of terminal tasks kept.
        lock_timeout: Seconds to wait for the queue lock.
    """

    def __init__(
        self,
        archive_limit: int = DEFAULT_ARCHIVE_LIMIT,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.archive_limit = archive_limit
        self._lock_timeout = lock_timeout
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._archive: OrderedDict[str, Task] = OrderedDict()
        self._sequence: dict[str, int] = {}
        self._next_sequence = 0

    def _locked(self):
        return acquire(self._lock, "task queue", self._lock_timeout)

    def __len__(self) -> int:
        with self._locked():
            return len(self._tasks)

    def _insert(self, task: Task) -> None:
        self._tasks[task.id] = task
        self._sequence[task.id] = self._next_sequence
        self._next_sequence += 1

    def submit(self, submission: TaskSubmission) -> TaskSnapshot:
        """Validate and enqueue a new pending task.

        Raises:
            ValidationError: If priority/complexity are out of range, the
                required-skill set is empty, or the id is already in use.
        """
        task = Task.from_submission(submission)
        with self._locked():
            if task.id in self._tasks or task.id in self._archive:
                raise ValidationError(f"task {task.id} already exists")
            self._insert(task)
            snapshot = task.snapshot()
        logger.info(
            f"Submitted task {task.id} (priority={task.priority}, "
            f"skills={sorted(task.required_skills)})"
        )
        return snapshot

    def restore(self, snapshot: TaskSnapshot) -> TaskSnapshot:
        """Re-insert a persisted task into the queue or the archive."""
        task = Task.from_snapshot(snapshot)
        with self._locked():
            if task.status.is_terminal:
                self._archive_task(task)
            else:
                self._insert(task)
            return task.snapshot()

    def _find(self, task_id: str) -> Task:
        task = self._tasks.get(task_id) or self._archive.get(task_id)
        if task is None:
            raise NotFoundError(f"unknown task {task_id}")
        return task

    def get(self, task_id: str) -> TaskSnapshot:
        with self._locked():
            return self._find(task_id).snapshot()

    def pending(self) -> list[TaskSnapshot]:
        """Pending tasks by priority (highest first), then earliest deadline."""
        with self._locked():
            tasks = [t for t in self._tasks.values() if t.status == TaskStatus.PENDING]
            tasks.sort(key=lambda t: (-t.priority, t.deadline, self._sequence[t.id]))
            return [t.snapshot() for t in tasks]

    def active(self) -> list[TaskSnapshot]:
        """Non-terminal tasks in submission order."""
        with self._locked():
            tasks = sorted(self._tasks.values(), key=lambda t: self._sequence[t.id])
            return [t.snapshot() for t in tasks]

    def archived(self) -> list[TaskSnapshot]:
        """Terminal tasks, oldest first."""
        with self._locked():
            return [t.snapshot() for t in self._archive.values()]

    def assign(self, task_id: str, agent_id: str) -> tuple[bool, TaskSnapshot]:
        """Move a pending task to ASSIGNED.

        Returns:
            (changed, snapshot). ``changed`` is False, and nothing is touched,
            when the task is no longer pending.

        Raises:
            NotFoundError: If the task is unknown.
        """
        with self._locked():
            task = self._find(task_id)
            if task.status != TaskStatus.PENDING:
                return False, task.snapshot()
            task.status = TaskStatus.ASSIGNED
            task.assigned_agent = agent_id
            return True, task.snapshot()

    def unassign(self, task_id: str, agent_id: str) -> bool:
        """Return an ASSIGNED task held by ``agent_id`` to PENDING.

        Returns:
            False when the task has moved on or belongs to another agent.

        Raises:
            NotFoundError: If the task is unknown.
        """
        with self._locked():
            task = self._find(task_id)
            if task.status != TaskStatus.ASSIGNED or task.assigned_agent != agent_id:
                return False
            task.status = TaskStatus.PENDING
            task.assigned_agent = None
            return True

    def held_by(self, agent_id: str) -> list[TaskSnapshot]:
        """Assigned or in-progress tasks held by an agent, oldest first."""
        with self._locked():
            tasks = [
                t
                for t in self._tasks.values()
                if t.assigned_agent == agent_id and not t.status.is_terminal
            ]
            tasks.sort(key=lambda t: self._sequence[t.id])
            return [t.snapshot() for t in tasks]

    def start(self, task_id: str) -> TaskSnapshot:
        """Handle the external "started" signal (ASSIGNED -> IN_PROGRESS).

        Repeating the signal on an in-progress task is a no-op.

        Raises:
            NotFoundError: If the task is unknown.
            InvalidTransitionError: If the task is pending or terminal.
        """
        with self._locked():
            task = self._find(task_id)
            if task.status == TaskStatus.IN_PROGRESS:
                return task.snapshot()
            if task.status != TaskStatus.ASSIGNED:
                raise InvalidTransitionError(
                    f"cannot start task {task_id} in state {task.status.value}"
                )
            task.status = TaskStatus.IN_PROGRESS
            task.started_at = time.time()
            return task.snapshot()

    def finish(self, task_id: str, success: bool) -> TaskSnapshot:
        """Record the external outcome (IN_PROGRESS -> COMPLETED | FAILED).

        Raises:
            NotFoundError: If the task is unknown.
            InvalidTransitionError: If the task is not in progress.
        """
        with self._locked():
            task = self._find(task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                raise InvalidTransitionError(
                    f"cannot finish task {task_id} in state {task.status.value}"
                )
            outcome = TaskStatus.COMPLETED if success else TaskStatus.FAILED
            self._terminate(task, outcome)
            return task.snapshot()

    def fail_agent_tasks(self, agent_id: str) -> list[TaskSnapshot]:
        """Fail every assigned or in-progress task held by an agent."""
        with self._locked():
            held = [
                t
                for t in self._tasks.values()
                if t.assigned_agent == agent_id and not t.status.is_terminal
            ]
            for task in held:
                self._terminate(task, TaskStatus.FAILED)
            return [t.snapshot() for t in held]

    def _terminate(self, task: Task, status: TaskStatus) -> None:
        task.status = status
        task.finished_at = time.time()
        del self._tasks[task.id]
        self._sequence.pop(task.id, None)
        self._archive_task(task)

    def _archive_task(self, task: Task) -> None:
        self._archive[task.id] = task
        while len(self._archive) > self.archive_limit:
            self._archive.popitem(last=False)

    def clear(self) -> None:
        with self._locked():
            self._tasks.clear()
            self._archive.clear()
            self._sequence.clear()
