"""Agents and tasks managed by the coordinator.

Internal records (:class:`Agent`, :class:`Task`) are mutable and owned
exclusively by :mod:`rlcoord.registry`. Callers submit the input types
(:class:`AgentDefinition`, :class:`TaskSubmission`) and only ever get the
frozen snapshot types back, so no caller can write entity fields directly.
"""

import math
import numbers
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from .errors import ValidationError

SCORE_MIN = 0.0
SCORE_MAX = 100.0
PRIORITY_MIN, PRIORITY_MAX = 1, 10
COMPLEXITY_MIN, COMPLEXITY_MAX = 1, 10

# Mean Q-value assumed for agents that have no estimates yet
DEFAULT_Q_VALUE = 0.5

# Action label whose index is recorded when a task is assigned
ASSIGN_ACTION = "assign"


class AgentStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    LEARNING = "learning"
    OPTIMIZING = "optimizing"


AVAILABLE_STATUSES = frozenset({AgentStatus.IDLE, AgentStatus.ACTIVE})


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


def check_range(name: str, value: Any, low: float, high: float) -> float:
    if (
        isinstance(value, bool)
        or not isinstance(value, numbers.Real)
        or not math.isfinite(value)
    ):
        raise ValidationError(f"{name} must be a finite number, got {value!r}")
    if not low <= value <= high:
        raise ValidationError(f"{name} must be in [{low}, {high}], got {value}")
    return float(value)


def _check_int(name: str, value: Any, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if not low <= value <= high:
        raise ValidationError(f"{name} must be in [{low}, {high}], got {value}")
    return int(value)


def _check_id(kind: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{kind} id must be a non-empty string, got {value!r}")
    return value


def as_vector(name: str, values: Iterable[Any] | None) -> tuple[float, ...] | None:
    """Validate an optional numeric vector and return it as a float tuple."""
    if values is None:
        return None
    try:
        vector = tuple(float(v) for v in values)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be a sequence of numbers") from e
    if not all(math.isfinite(v) for v in vector):
        raise ValidationError(f"{name} must contain only finite numbers")
    return vector


def _as_skill_set(name: str, values: Iterable[str] | None) -> frozenset[str]:
    if values is None or isinstance(values, str):
        raise ValidationError(f"{name} must be a collection of skill tags")
    skills = frozenset(values)
    if not all(isinstance(s, str) and s for s in skills):
        raise ValidationError(f"{name} must contain non-empty strings")
    return skills


def parse_deadline(value: Any) -> datetime:
    """Coerce an ISO string, epoch seconds or datetime to an aware datetime."""
    if isinstance(value, datetime):
        deadline = value
    elif isinstance(value, str):
        try:
            deadline = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"deadline is not an ISO timestamp: {value!r}") from e
    elif isinstance(value, numbers.Real) and not isinstance(value, bool):
        deadline = datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        raise ValidationError(f"deadline must be a timestamp, got {value!r}")

    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=timezone.utc)
    return deadline


def average_q_value(q_values: tuple[float, ...] | None) -> float:
    """Mean of a Q-value vector, or DEFAULT_Q_VALUE when there is none."""
    if not q_values:
        return DEFAULT_Q_VALUE
    return sum(q_values) / len(q_values)


def assign_action_index(action_space: tuple[str, ...] | None) -> int:
    """Index of the assign action in a task's action labels (0 if absent)."""
    if action_space and ASSIGN_ACTION in action_space:
        return action_space.index(ASSIGN_ACTION)
    return 0


# ========== Agents ==========


@dataclass(frozen=True)
class AgentDefinition:
    """Input accepted by ``register_agent``."""

    id: str
    skills: Iterable[str]
    performance: float = 50.0
    confidence: float = 50.0
    q_values: Iterable[float] | None = None
    status: AgentStatus | str = AgentStatus.IDLE
    name: str = ""
    role: str = ""


@dataclass(frozen=True)
class AgentSnapshot:
    """Read-only view of an agent."""

    id: str
    skills: frozenset[str]
    performance: float
    confidence: float
    q_values: tuple[float, ...] | None
    status: AgentStatus
    name: str = ""
    role: str = ""
    network_pair_id: str | None = None
    reward: float = 0.0
    current_task: str | None = None
    experience_count: int = 0

    @property
    def avg_q_value(self) -> float:
        return average_q_value(self.q_values)

    @property
    def is_available(self) -> bool:
        return self.status in AVAILABLE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "skills": sorted(self.skills),
            "performance": self.performance,
            "confidence": self.confidence,
            "q_values": list(self.q_values) if self.q_values is not None else None,
            "status": self.status.value,
            "name": self.name,
            "role": self.role,
            "network_pair_id": self.network_pair_id,
            "reward": self.reward,
            "current_task": self.current_task,
            "experience_count": self.experience_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgentSnapshot":
        q_values = data.get("q_values")
        return cls(
            id=data["id"],
            skills=frozenset(data.get("skills", [])),
            performance=data.get("performance", 50.0),
            confidence=data.get("confidence", 50.0),
            q_values=tuple(q_values) if q_values is not None else None,
            status=AgentStatus(data.get("status", AgentStatus.IDLE.value)),
            name=data.get("name", ""),
            role=data.get("role", ""),
            network_pair_id=data.get("network_pair_id"),
            reward=data.get("reward", 0.0),
            current_task=data.get("current_task"),
            experience_count=data.get("experience_count", 0),
        )


@dataclass
class Agent:
    """Mutable agent record owned by the agent registry."""

    id: str
    skills: frozenset[str]
    performance: float
    confidence: float
    q_values: tuple[float, ...] | None
    status: AgentStatus
    name: str = ""
    role: str = ""
    network_pair_id: str | None = None
    reward: float = 0.0
    current_task: str | None = None
    experience_count: int = 0

    @classmethod
    def from_definition(
        cls, definition: AgentDefinition, action_space_size: int | None = None
    ) -> "Agent":
        """Validate a definition and build the internal record.

        Raises:
            ValidationError: If any field is out of range or malformed.
        """
        agent_id = _check_id("agent", definition.id)
        skills = _as_skill_set("skills", definition.skills)
        try:
            status = AgentStatus(definition.status)
        except ValueError as e:
            raise ValidationError(f"unknown agent status {definition.status!r}") from e

        return cls(
            id=agent_id,
            skills=skills,
            performance=check_range(
                "performance", definition.performance, SCORE_MIN, SCORE_MAX
            ),
            confidence=check_range(
                "confidence", definition.confidence, SCORE_MIN, SCORE_MAX
            ),
            q_values=validate_q_values(definition.q_values, action_space_size),
            status=status,
            name=definition.name or agent_id,
            role=definition.role,
        )

    @classmethod
    def from_snapshot(cls, snapshot: AgentSnapshot) -> "Agent":
        return cls(
            id=snapshot.id,
            skills=snapshot.skills,
            performance=snapshot.performance,
            confidence=snapshot.confidence,
            q_values=snapshot.q_values,
            status=snapshot.status,
            name=snapshot.name,
            role=snapshot.role,
            network_pair_id=snapshot.network_pair_id,
            reward=snapshot.reward,
            current_task=snapshot.current_task,
            experience_count=snapshot.experience_count,
        )

    def snapshot(self) -> AgentSnapshot:
        return AgentSnapshot(
            id=self.id,
            skills=self.skills,
            performance=self.performance,
            confidence=self.confidence,
            q_values=self.q_values,
            status=self.status,
            name=self.name,
            role=self.role,
            network_pair_id=self.network_pair_id,
            reward=self.reward,
            current_task=self.current_task,
            experience_count=self.experience_count,
        )


def validate_q_values(
    values: Iterable[float] | None, expected_size: int | None = None
) -> tuple[float, ...] | None:
    """Check a Q-value vector: every entry in [0, 1], optionally fixed length."""
    q_values = as_vector("q_values", values)
    if q_values is None:
        return None
    if expected_size is not None and len(q_values) != expected_size:
        raise ValidationError(
            f"q_values must have {expected_size} entries, got {len(q_values)}"
        )
    for q in q_values:
        check_range("q_value", q, 0.0, 1.0)
    return q_values


# ========== Tasks ==========


@dataclass(frozen=True)
class TaskSubmission:
    """Input accepted by ``submit_task``."""

    id: str
    priority: int
    complexity: int
    required_skills: Iterable[str]
    reward: float
    deadline: datetime | str | float
    name: str = ""
    state_vector: Iterable[float] | None = None
    action_space: Iterable[str] | None = None


@dataclass(frozen=True)
class TaskSnapshot:
    """Read-only view of a task."""

    id: str
    priority: int
    complexity: int
    required_skills: frozenset[str]
    reward: float
    deadline: datetime
    status: TaskStatus
    name: str = ""
    state_vector: tuple[float, ...] | None = None
    action_space: tuple[str, ...] | None = None
    assigned_agent: str | None = None
    submitted_at: float = 0.0
    started_at: float | None = None
    finished_at: float | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "priority": self.priority,
            "complexity": self.complexity,
            "required_skills": sorted(self.required_skills),
            "reward": self.reward,
            "deadline": self.deadline.isoformat(),
            "status": self.status.value,
            "name": self.name,
            "state_vector": (
                list(self.state_vector) if self.state_vector is not None else None
            ),
            "action_space": (
                list(self.action_space) if self.action_space is not None else None
            ),
            "assigned_agent": self.assigned_agent,
            "submitted_at": self.submitted_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TaskSnapshot":
        state_vector = data.get("state_vector")
        action_space = data.get("action_space")
        return cls(
            id=data["id"],
            priority=data["priority"],
            complexity=data["complexity"],
            required_skills=frozenset(data.get("required_skills", [])),
            reward=data.get("reward", 0.0),
            deadline=parse_deadline(data["deadline"]),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            name=data.get("name", ""),
            state_vector=tuple(state_vector) if state_vector is not None else None,
            action_space=tuple(action_space) if action_space is not None else None,
            assigned_agent=data.get("assigned_agent"),
            submitted_at=data.get("submitted_at", 0.0),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )


@dataclass
class Task:
    """Mutable task record owned by the task queue."""

    id: str
    priority: int
    complexity: int
    required_skills: frozenset[str]
    reward: float
    deadline: datetime
    name: str = ""
    state_vector: tuple[float, ...] | None = None
    action_space: tuple[str, ...] | None = None
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent: str | None = None
    submitted_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None

    @classmethod
    def from_submission(cls, submission: TaskSubmission) -> "Task":
        """Validate a submission and build the internal record.

        Raises:
            ValidationError: If priority/complexity are out of range, the
                required-skill set is empty, or any field is malformed.
        """
        task_id = _check_id("task", submission.id)
        required = _as_skill_set("required_skills", submission.required_skills)
        if not required:
            raise ValidationError(f"task {task_id} must require at least one skill")
        reward = check_range("reward", submission.reward, -math.inf, math.inf)

        action_space = None
        if submission.action_space is not None:
            if isinstance(submission.action_space, str):
                raise ValidationError("action_space must be a sequence of labels")
            action_space = tuple(str(a) for a in submission.action_space)

        return cls(
            id=task_id,
            priority=_check_int(
                "priority", submission.priority, PRIORITY_MIN, PRIORITY_MAX
            ),
            complexity=_check_int(
                "complexity", submission.complexity, COMPLEXITY_MIN, COMPLEXITY_MAX
            ),
            required_skills=required,
            reward=reward,
            deadline=parse_deadline(submission.deadline),
            name=submission.name or task_id,
            state_vector=as_vector("state_vector", submission.state_vector),
            action_space=action_space,
        )

    @classmethod
    def from_snapshot(cls, snapshot: TaskSnapshot) -> "Task":
        return cls(
            id=snapshot.id,
            priority=snapshot.priority,
            complexity=snapshot.complexity,
            required_skills=snapshot.required_skills,
            reward=snapshot.reward,
            deadline=snapshot.deadline,
            name=snapshot.name,
            state_vector=snapshot.state_vector,
            action_space=snapshot.action_space,
            status=snapshot.status,
            assigned_agent=snapshot.assigned_agent,
            submitted_at=snapshot.submitted_at,
            started_at=snapshot.started_at,
            finished_at=snapshot.finished_at,
        )

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            id=self.id,
            priority=self.priority,
            complexity=self.complexity,
            required_skills=self.required_skills,
            reward=self.reward,
            deadline=self.deadline,
            status=self.status,
            name=self.name,
            state_vector=self.state_vector,
            action_space=self.action_space,
            assigned_agent=self.assigned_agent,
            submitted_at=self.submitted_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )
