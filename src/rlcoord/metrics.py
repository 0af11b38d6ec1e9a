"""Prometheus metrics for the coordinator.

This module mirrors the MetricsAggregator snapshot into gauges and tracks
tick health, allocations and target syncs for monitoring.
"""

import logging
import threading

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

from .replay import ReplayBufferStats
from .stats import MetricsSnapshot

logger = logging.getLogger(__name__)

# ========== Training Metrics ==========

EPISODE_COUNT = Gauge(
    "rlcoord_episodes",
    "Number of completed episodes",
)

TOTAL_STEPS = Gauge(
    "rlcoord_total_steps",
    "Total environment steps",
)

AVERAGE_REWARD = Gauge(
    "rlcoord_average_reward",
    "Rolling mean episode reward",
)

SUCCESS_RATE = Gauge(
    "rlcoord_success_rate",
    "Rolling task success rate",
)

CONVERGENCE_RATE = Gauge(
    "rlcoord_convergence_rate",
    "Fraction of recent episodes reaching the reward threshold",
)

EXPLORATION_RATE = Gauge(
    "rlcoord_exploration_rate",
    "Current exploration rate (epsilon)",
)

DQN_LOSS = Gauge(
    "rlcoord_dqn_loss",
    "Most recent TD loss reported by the trainer",
)

TARGET_NETWORK_UPDATES = Gauge(
    "rlcoord_target_network_updates",
    "Number of target network syncs",
)

# ========== Replay Memory Metrics ==========

REPLAY_SIZE = Gauge(
    "rlcoord_replay_size",
    "Number of transitions in replay memory",
)

REPLAY_UTILIZATION = Gauge(
    "rlcoord_replay_utilization_percent",
    "Replay memory fill level in percent",
)

# ========== Allocation Metrics ==========

ALLOCATIONS = Counter(
    "rlcoord_allocations_total",
    "Tasks assigned to agents",
)

DEFERRED_ALLOCATIONS = Counter(
    "rlcoord_allocations_deferred_total",
    "Allocation attempts deferred for lack of an available agent",
)

TARGET_SYNCS = Counter(
    "rlcoord_target_syncs_total",
    "Target network syncs performed",
)

# ========== Tick Metrics ==========

TICKS = Counter(
    "rlcoord_ticks_total",
    "Scheduler ticks run",
)

TICK_FAILURES = Counter(
    "rlcoord_tick_failures_total",
    "Scheduler ticks that raised an exception",
)

TICK_DURATION = Histogram(
    "rlcoord_tick_duration_seconds",
    "Time per scheduler tick",
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

# ========== Info Metric ==========

COORDINATOR_INFO = Info(
    "rlcoord",
    "Coordinator metadata",
)


# Server state
_metrics_server_started = False
_metrics_server_lock = threading.Lock()


def start_metrics_server(port: int = 9090) -> bool:
    """Start the Prometheus metrics HTTP server.

    Returns:
        True if server started, False if already running or it failed.
    """
    global _metrics_server_started

    with _metrics_server_lock:
        if _metrics_server_started:
            logger.debug("Metrics server already running")
            return False

        try:
            start_http_server(port)
            _metrics_server_started = True
            logger.info(f"Prometheus metrics server started on port {port}")
            return True
        except OSError as e:
            logger.warning(f"Failed to start metrics server on port {port}: {e}")
            return False


def set_coordinator_info(
    replay_mode: str, dqn_enabled: bool, memory_size: int
) -> None:
    COORDINATOR_INFO.info(
        {
            "replay_mode": replay_mode,
            "dqn_enabled": str(dqn_enabled).lower(),
            "memory_size": str(memory_size),
        }
    )


def record_snapshot(snapshot: MetricsSnapshot) -> None:
    """Copy an aggregator snapshot into the gauges."""
    EPISODE_COUNT.set(snapshot.episode_count)
    TOTAL_STEPS.set(snapshot.total_steps)
    AVERAGE_REWARD.set(snapshot.average_reward)
    SUCCESS_RATE.set(snapshot.success_rate)
    CONVERGENCE_RATE.set(snapshot.convergence_rate)
    EXPLORATION_RATE.set(snapshot.exploration_rate)
    DQN_LOSS.set(snapshot.dqn_loss)
    TARGET_NETWORK_UPDATES.set(snapshot.target_network_updates)
    REPLAY_SIZE.set(snapshot.replay_size)


def record_replay(stats: ReplayBufferStats) -> None:
    REPLAY_SIZE.set(stats.size)
    REPLAY_UTILIZATION.set(stats.utilization_percent)


def record_allocation(assigned: bool) -> None:
    if assigned:
        ALLOCATIONS.inc()
    else:
        DEFERRED_ALLOCATIONS.inc()


def record_target_sync() -> None:
    TARGET_SYNCS.inc()


def record_tick(duration_seconds: float, failed: bool = False) -> None:
    """Record one scheduler tick.

    Args:
        duration_seconds: Wall time spent in the tick.
        failed: Whether the tick raised.
    """
    TICKS.inc()
    TICK_DURATION.observe(duration_seconds)
    if failed:
        TICK_FAILURES.inc()
