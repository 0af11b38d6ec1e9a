"""Default DQN parameter blobs for network pairs.

The coordinator treats main/target parameters as opaque handles; this module
supplies the torch network used when an agent is registered without one,
plus the helpers the network pair manager and the synthetic trainer need.

Architecture:
    Input (state_dim) -> FC(128) -> ReLU -> FC(256) -> ReLU -> Dropout(0.2)
        -> FC(128) -> ReLU -> FC(action_space_size)

Output:
    - Q-values: one unbounded estimate per action
"""

import copy
from typing import Any

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

DEFAULT_HIDDEN_SIZES = (128, 256, 128)
DEFAULT_DROPOUT = 0.2


class QNetwork(nn.Module):
    """Fully connected Q-network mapping a state vector to action values."""

    def __init__(
        self,
        input_size: int,
        output_size: int,
        hidden_sizes: tuple[int, ...] = DEFAULT_HIDDEN_SIZES,
        dropout: float = DEFAULT_DROPOUT,
    ):
        super().__init__()

        self.input_size = input_size
        self.output_size = output_size

        layers: list[nn.Module] = []
        prev = input_size
        for i, size in enumerate(hidden_sizes):
            layers.append(nn.Linear(prev, size))
            layers.append(nn.ReLU())
            # Dropout after the widest layer
            if i == 1 and dropout > 0:
                layers.append(nn.Dropout(dropout))
            prev = size
        self.body = nn.Sequential(*layers)
        self.head = nn.Linear(prev, output_size)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Forward pass.

        Args:
            x: State tensor of shape (batch, input_size)

        Returns:
            Q-values of shape (batch, output_size)
        """
        return self.head(self.body(x))


class TDLoss:
    """Temporal-difference loss of a main network against its target.

    target = r + gamma * (1 - done) * Q_target(s', a*)

    where a* = argmax_a Q_target(s', a), or argmax_a Q_main(s', a) when
    double Q-learning is enabled. The per-sample Huber loss is weighted by
    the replay importance weights.
    """

    def __init__(self, discount_factor: float = 0.99, double_q: bool = True):
        self.discount_factor = discount_factor
        self.double_q = double_q

    def __call__(
        self,
        main: nn.Module,
        target: nn.Module,
        states: torch.Tensor,
        actions: torch.Tensor,
        rewards: torch.Tensor,
        next_states: torch.Tensor,
        dones: torch.Tensor,
        weights: torch.Tensor | None = None,
    ) -> tuple[torch.Tensor, dict[str, float]]:
        """Compute the TD loss.

        Args:
            states, next_states: (batch, state_dim)
            actions: (batch,) int64
            rewards, dones: (batch,)
            weights: Optional importance weights (batch,)

        Returns:
            Tuple of (loss, metrics_dict)
        """
        q_taken = main(states).gather(1, actions.unsqueeze(1)).squeeze(1)

        with torch.no_grad():
            next_target = target(next_states)
            if self.double_q:
                best_actions = main(next_states).argmax(dim=1, keepdim=True)
            else:
                best_actions = next_target.argmax(dim=1, keepdim=True)
            next_q = next_target.gather(1, best_actions).squeeze(1)
            td_target = rewards + self.discount_factor * (1.0 - dones) * next_q

        per_sample = F.smooth_l1_loss(q_taken, td_target, reduction="none")
        if weights is not None:
            per_sample = per_sample * weights
        loss = per_sample.mean()

        metrics = {
            "loss/td": loss.item(),
            "q/mean": q_taken.mean().item(),
            "q/target_mean": td_target.mean().item(),
        }
        return loss, metrics


def create_q_network(
    input_size: int,
    output_size: int,
    hidden_sizes: tuple[int, ...] = DEFAULT_HIDDEN_SIZES,
    dropout: float = DEFAULT_DROPOUT,
) -> QNetwork:
    """Factory for the default Q-network.

    Raises:
        ValueError: If input or output size is not positive.
    """
    if input_size <= 0 or output_size <= 0:
        raise ValueError(
            f"network sizes must be positive, got {input_size} -> {output_size}"
        )
    return QNetwork(input_size, output_size, hidden_sizes, dropout)


def count_parameters(handle: Any) -> int:
    """Number of scalar parameters in a torch module (0 for other handles)."""
    if isinstance(handle, nn.Module):
        return sum(p.numel() for p in handle.parameters())
    return 0


def clone_parameters(handle: Any) -> Any:
    """Deep copy of a parameter handle.

    Torch modules are copied, frozen and put in eval mode, which is how a
    target network is used. Anything else is deep-copied as is.
    """
    clone = copy.deepcopy(handle)
    if isinstance(clone, nn.Module):
        clone.eval()
        clone.requires_grad_(False)
    return clone


def parameters_equal(a: Any, b: Any) -> bool:
    """Whether two parameter handles hold identical values."""
    if isinstance(a, nn.Module) and isinstance(b, nn.Module):
        state_a, state_b = a.state_dict(), b.state_dict()
        if state_a.keys() != state_b.keys():
            return False
        return all(torch.equal(state_a[k], state_b[k]) for k in state_a)
    if isinstance(a, np.ndarray) or isinstance(b, np.ndarray):
        return bool(np.array_equal(a, b))
    return a == b


def estimate_q_values(network: nn.Module, state: np.ndarray) -> tuple[float, ...]:
    """Squash a network's Q-values for one state into [0, 1].

    The registry stores Q-value estimates on the unit interval, so raw action
    values are passed through a sigmoid.
    """
    network.eval()
    with torch.no_grad():
        x = torch.as_tensor(state, dtype=torch.float32).reshape(1, -1)
        q = torch.sigmoid(network(x)).squeeze(0)
    return tuple(float(v) for v in q.tolist())
