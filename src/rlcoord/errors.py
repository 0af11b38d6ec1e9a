"""Exception hierarchy for the coordinator.

``AllocationDeferred`` is intentionally absent: a task that cannot be placed
is reported as a result value by :mod:`rlcoord.scoring`, not raised.
"""


class CoordinatorError(Exception):
    """Base class for every error raised by rlcoord."""

    pass


class ValidationError(CoordinatorError, ValueError):
    """Raised when agent, task or transition input is malformed."""

    pass


class InvalidTransitionError(ValidationError):
    """Raised when a task is moved along an edge its state machine forbids."""

    pass


class NotFoundError(CoordinatorError, KeyError):
    """Raised when an agent, task or network pair id is unknown."""

    def __str__(self) -> str:
        # KeyError repr-quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class ConfigurationError(CoordinatorError, ValueError):
    """Raised at construction time when configuration is invalid."""

    pass


class ConcurrencyError(CoordinatorError, RuntimeError):
    """Raised when a shared resource lock cannot be acquired in time."""

    pass


class LifecycleError(CoordinatorError, RuntimeError):
    """Raised when a lifecycle operation is invalid in the current state."""

    pass
