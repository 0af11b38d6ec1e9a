"""Reinforcement-learning training coordinator.

Matches pending tasks to learning agents, records experience in a bounded
replay memory and keeps each agent's target network in step with its main
network.
"""

from .config import EngineConfig, RLConfig
from .coordinator import Coordinator
from .errors import (
    ConcurrencyError,
    ConfigurationError,
    CoordinatorError,
    InvalidTransitionError,
    LifecycleError,
    NotFoundError,
    ValidationError,
)
from .models import (
    AgentDefinition,
    AgentSnapshot,
    AgentStatus,
    TaskSnapshot,
    TaskStatus,
    TaskSubmission,
)
from .replay import ReplayBufferStats, ReplayMemory, TransitionRecord
from .scoring import (
    AllocationDeferred,
    AllocationUnchanged,
    Assignment,
    ScoringStrategy,
    ScoringWeights,
    WeightedScorer,
)
from .stats import MetricsSnapshot

__version__ = "0.1.0"

__all__ = [
    "AgentDefinition",
    "AgentSnapshot",
    "AgentStatus",
    "AllocationDeferred",
    "AllocationUnchanged",
    "Assignment",
    "ConcurrencyError",
    "ConfigurationError",
    "Coordinator",
    "CoordinatorError",
    "EngineConfig",
    "InvalidTransitionError",
    "LifecycleError",
    "MetricsSnapshot",
    "NotFoundError",
    "RLConfig",
    "ReplayBufferStats",
    "ReplayMemory",
    "ScoringStrategy",
    "ScoringWeights",
    "TaskSnapshot",
    "TaskStatus",
    "TaskSubmission",
    "TransitionRecord",
    "ValidationError",
    "WeightedScorer",
]
