"""External trainer collaborators driven by the coordinator tick.

The coordinator never generates its own training noise. Each tick it calls
``on_tick`` on an injected trainer, which may report training steps and
agent updates back through the coordinator's public API and returns a
TickReport that closes one episode in the metrics.

Two implementations are provided:
- NullTrainer: does nothing; allocation-only deployments use it.
- SyntheticTrainer: evaluates the TD loss of every network pair on a replay
  batch (no gradient step) and jitters agent statistics with a seeded
  numpy Generator, so runs are reproducible.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np
import torch
import torch.nn as nn

from .errors import NotFoundError
from .network import TDLoss, estimate_q_values

if TYPE_CHECKING:
    from .coordinator import Coordinator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickReport:
    """What a trainer did during one tick."""

    steps: int = 0
    episode_reward: float = 0.0


class ExternalTrainer(Protocol):
    def on_tick(self, coordinator: "Coordinator") -> TickReport | None: ...


class NullTrainer:
    """Trainer that never trains."""

    def on_tick(self, coordinator: "Coordinator") -> TickReport | None:
        return None


class SyntheticTrainer:
    """Deterministic stand-in for a real training loop.

    Args:
        rng: Generator used for every random draw.
        jitter: Standard deviation of the performance/confidence noise,
            as a fraction of the 0-100 range.
    """

    def __init__(self, rng: np.random.Generator, jitter: float = 0.02):
        self.rng = rng
        self.jitter = jitter

    def on_tick(self, coordinator: "Coordinator") -> TickReport:
        rl = coordinator.rl_config
        state_dim = coordinator.engine_config.state_dim
        loss_fn = TDLoss(rl.discount_factor, rl.double_q_enabled)

        steps = 0
        reward = 0.0
        for agent_id in coordinator.pairs.agent_ids():
            try:
                main, target = coordinator.pairs.get_handles(agent_id)
            except NotFoundError:
                continue  # unregistered mid-tick

            batch = coordinator.replay.sample_arrays(rl.batch_size, state_dim)
            loss = None
            if (
                batch is not None
                and isinstance(main, nn.Module)
                and isinstance(target, nn.Module)
                and hasattr(main, "output_size")
            ):
                main.eval()
                actions = np.clip(batch.actions, 0, main.output_size - 1)
                with torch.no_grad():
                    _, metrics = loss_fn(
                        main,
                        target,
                        torch.from_numpy(batch.states),
                        torch.from_numpy(actions),
                        torch.from_numpy(batch.rewards),
                        torch.from_numpy(batch.next_states),
                        torch.from_numpy(batch.dones),
                        torch.from_numpy(batch.weights),
                    )
                loss = metrics["loss/td"]
                reward += float(batch.rewards.mean())

            try:
                coordinator.report_training_step(agent_id, loss)
            except NotFoundError:
                continue
            steps += 1

        self._jitter_agents(
            coordinator, state_dim, coordinator.engine_config.action_space_size
        )
        logger.debug(f"Synthetic training tick: {steps} steps, reward {reward:.3f}")
        return TickReport(steps=steps, episode_reward=reward)

    def _jitter_agents(
        self, coordinator: "Coordinator", state_dim: int, action_space_size: int
    ) -> None:
        scale = self.jitter * 100.0
        for agent in coordinator.agents():
            performance = float(
                np.clip(agent.performance + self.rng.normal(0.0, scale), 0.0, 100.0)
            )
            confidence = float(
                np.clip(agent.confidence + self.rng.normal(0.0, scale), 0.0, 100.0)
            )

            q_values = None
            main = None
            if coordinator.pairs.has_pair(agent.id):
                try:
                    main = coordinator.pairs.get_main(agent.id)
                except NotFoundError:
                    main = None
            output_size = getattr(main, "output_size", None)
            if isinstance(main, nn.Module) and output_size == action_space_size:
                state = self.rng.random(state_dim, dtype=np.float32)
                q_values = estimate_q_values(main, state)
            elif agent.q_values is not None:
                noise = self.rng.normal(0.0, self.jitter, len(agent.q_values))
                q_values = tuple(
                    float(v) for v in np.clip(np.add(agent.q_values, noise), 0.0, 1.0)
                )

            try:
                coordinator.update_agent_stats(
                    agent.id,
                    performance=performance,
                    confidence=confidence,
                    q_values=q_values,
                )
            except NotFoundError:
                logger.debug(f"Agent {agent.id} left before its stats update")
