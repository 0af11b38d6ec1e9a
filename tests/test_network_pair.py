"""Tests for the network pair manager and the default Q-network helpers."""

import threading

import numpy as np
import pytest
import torch

from rlcoord.errors import ConfigurationError, NotFoundError, ValidationError
from rlcoord.network import (
    QNetwork,
    TDLoss,
    clone_parameters,
    count_parameters,
    create_q_network,
    estimate_q_values,
    parameters_equal,
)
from rlcoord.network_pair import NetworkPairManager


class TestConstruction:
    @pytest.mark.parametrize("frequency", [0, -5, 1.5, True])
    def test_invalid_sync_frequency(self, frequency):
        with pytest.raises(ConfigurationError):
            NetworkPairManager(frequency)

    def test_invalid_pair_frequency(self):
        manager = NetworkPairManager(10)
        with pytest.raises(ConfigurationError):
            manager.create_pair("a", np.zeros(3), sync_frequency=0)

    def test_duplicate_pair_rejected(self):
        manager = NetworkPairManager(10)
        manager.create_pair("a", np.zeros(3))
        with pytest.raises(ValidationError):
            manager.create_pair("a", np.zeros(3))

    def test_pair_id_format(self):
        manager = NetworkPairManager(10)
        snapshot = manager.create_pair("agent-1", np.zeros(3))
        assert snapshot.id.startswith("dqn-agent-1-")
        assert snapshot.agent_id == "agent-1"
        assert snapshot.training_steps == 0
        assert snapshot.last_sync_step == 0

    def test_target_starts_as_copy(self):
        manager = NetworkPairManager(10)
        main = np.arange(4.0)
        manager.create_pair("a", main)
        target = manager.get_target("a")
        assert parameters_equal(target, main)
        assert target is not main


class TestSyncCadence:
    """Tests for counter-driven target syncs."""

    def test_target_equals_main_after_sync_frequency_steps(self):
        manager = NetworkPairManager(3)
        manager.create_pair("a", np.zeros(2))

        manager.set_main("a", np.ones(2))
        assert manager.record_training_step("a") is False
        manager.set_main("a", np.full(2, 2.0))
        assert manager.record_training_step("a") is False
        # Between syncs the target keeps the initial parameters
        np.testing.assert_array_equal(manager.get_target("a"), np.zeros(2))

        manager.set_main("a", np.full(2, 3.0))
        assert manager.record_training_step("a") is True

        main, target = manager.get_handles("a")
        assert parameters_equal(main, target)
        assert manager.last_sync_step("a") == 3
        assert manager.training_steps("a") == 3

    def test_target_unchanged_between_syncs(self):
        manager = NetworkPairManager(5)
        manager.create_pair("a", np.zeros(2))
        for step in range(1, 5):
            manager.set_main("a", np.full(2, float(step)))
            manager.record_training_step("a")
            np.testing.assert_array_equal(manager.get_target("a"), np.zeros(2))

    def test_sync_count_over_many_steps(self):
        manager = NetworkPairManager(4)
        manager.create_pair("a", np.zeros(1))
        synced = [manager.record_training_step("a") for _ in range(20)]
        assert sum(synced) == 5
        snapshot = manager.snapshot("a")
        assert snapshot.sync_count == 5
        assert snapshot.steps_until_sync == 4

    def test_torch_module_sync(self):
        """Test a trained main network is copied into the target at sync time."""
        torch.manual_seed(0)
        manager = NetworkPairManager(2)
        main = create_q_network(4, 3)
        manager.create_pair("a", main)

        with torch.no_grad():
            for p in main.parameters():
                p.add_(1.0)
        manager.record_training_step("a")
        assert not parameters_equal(manager.get_target("a"), main)

        manager.record_training_step("a")
        target = manager.get_target("a")
        assert parameters_equal(target, main)
        assert not target.training
        assert all(not p.requires_grad for p in target.parameters())

    def test_sync_listener_called(self):
        manager = NetworkPairManager(2)
        manager.create_pair("a", np.zeros(1))
        events = []
        manager.add_sync_listener(events.append)

        manager.record_training_step("a")
        manager.record_training_step("a")

        assert len(events) == 1
        assert events[0].agent_id == "a"
        assert events[0].training_steps == 2

    def test_manual_sync(self):
        manager = NetworkPairManager(100)
        manager.create_pair("a", np.zeros(1))
        manager.create_pair("b", np.zeros(1))
        manager.set_main("a", np.ones(1))

        assert manager.sync_all() == 2
        np.testing.assert_array_equal(manager.get_target("a"), np.ones(1))

        snapshot = manager.sync_target("b")
        assert snapshot.sync_count == 2

    def test_concurrent_training_steps(self):
        manager = NetworkPairManager(10)
        manager.create_pair("a", np.zeros(1))

        def worker():
            for _ in range(250):
                manager.record_training_step("a", loss=0.5)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = manager.snapshot("a")
        assert snapshot.training_steps == 1000
        assert snapshot.sync_count == 100
        assert snapshot.last_sync_step == 1000


class TestLossBookkeeping:
    def test_average_loss(self):
        manager = NetworkPairManager(10, loss_window=2)
        manager.create_pair("a", np.zeros(1))
        assert manager.average_loss("a") is None

        for loss in (1.0, 2.0, 4.0):
            manager.record_training_step("a", loss)

        assert manager.average_loss("a") == pytest.approx(3.0)

    @pytest.mark.parametrize("loss", [-1.0, float("inf"), float("nan")])
    def test_invalid_loss(self, loss):
        manager = NetworkPairManager(10)
        manager.create_pair("a", np.zeros(1))
        with pytest.raises(ValidationError):
            manager.record_training_step("a", loss)
        assert manager.training_steps("a") == 0

    def test_unknown_agent(self):
        manager = NetworkPairManager(10)
        with pytest.raises(NotFoundError):
            manager.record_training_step("ghost")
        assert manager.remove_pair("ghost") is False


class TestQNetwork:
    def test_architecture(self):
        net = QNetwork(8, 5)
        out = net(torch.zeros(3, 8))
        assert out.shape == (3, 5)
        assert any(isinstance(m, torch.nn.Dropout) for m in net.body)
        # 8*128+128 + 128*256+256 + 256*128+128 + 128*5+5
        assert count_parameters(net) == 67717

    def test_create_rejects_bad_sizes(self):
        with pytest.raises(ValueError):
            create_q_network(0, 5)

    def test_count_parameters_opaque_handle(self):
        assert count_parameters(np.zeros(10)) == 0

    def test_estimate_q_values_in_unit_interval(self):
        torch.manual_seed(1)
        net = create_q_network(4, 5)
        q = estimate_q_values(net, np.ones(4, dtype=np.float32))
        assert len(q) == 5
        assert all(0.0 <= v <= 1.0 for v in q)

    def test_td_loss_zero_for_perfect_estimates(self):
        """Test TD loss is zero when Q(s, a) already equals the target."""

        class Constant(torch.nn.Module):
            def __init__(self, value):
                super().__init__()
                self.value = value

            def forward(self, x):
                return torch.full((x.shape[0], 2), self.value)

        # With done=1 the target is just the reward
        loss_fn = TDLoss(discount_factor=0.9)
        loss, metrics = loss_fn(
            Constant(1.0),
            Constant(5.0),
            torch.zeros(4, 3),
            torch.zeros(4, dtype=torch.int64),
            torch.ones(4),
            torch.zeros(4, 3),
            torch.ones(4),
        )
        assert loss.item() == pytest.approx(0.0)
        assert metrics["q/target_mean"] == pytest.approx(1.0)

    def test_td_loss_uses_discounted_target(self):
        torch.manual_seed(0)
        main = create_q_network(3, 2)
        target = clone_parameters(main)
        loss_fn = TDLoss(discount_factor=0.99, double_q=False)
        main.eval()
        with torch.no_grad():
            loss, metrics = loss_fn(
                main,
                target,
                torch.rand(8, 3),
                torch.zeros(8, dtype=torch.int64),
                torch.ones(8),
                torch.rand(8, 3),
                torch.zeros(8),
                torch.ones(8),
            )
        assert loss.item() >= 0.0
        assert set(metrics) == {"loss/td", "q/mean", "q/target_mean"}
