"""Lock helpers shared by the stateful components."""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from .errors import ConcurrencyError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 5.0  # seconds


@contextmanager
def acquire(
    lock: threading.Lock,
    resource: str,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> Iterator[None]:
    """Hold ``lock`` for the duration of the block.

    Args:
        lock: Lock guarding the shared resource.
        resource: Human-readable resource name for error messages.
        timeout: Seconds to wait before giving up.

    Raises:
        ConcurrencyError: If the lock is not acquired within ``timeout``.
    """
    if not lock.acquire(timeout=timeout):
        logger.error(f"Timed out after {timeout:.1f}s waiting for {resource} lock")
        raise ConcurrencyError(
            f"Timed out after {timeout:.1f}s waiting for {resource} lock"
        )
    try:
        yield
    finally:
        lock.release()
