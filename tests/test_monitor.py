"""
Swap monitor tests.
"""

import threading
import unittest
from unittest.mock import MagicMock, patch

from swapper.core import OrderStatus, SwapStatus
from swapper.errors import ChainError, ClaimOutstanding
from swapper.swap.monitor import SwapMonitor

from tests.test_coordinator import COUNTER_UNITS, TOKEN, CoordinatorTestCase


class TestTick(CoordinatorTestCase):

    def setUp(self):
        super().setUp()
        self.monitor = SwapMonitor(self.coordinator, interval=0.01)

    def test_expired_unfunded_swap_is_refunded(self):
        """Initiate, never fund, pass expiry, one tick refunds."""
        result = self.coordinator.initiate(self.params())
        refunded = MagicMock()
        self.monitor.on("refund", refunded)

        self.assertEqual(self.monitor.tick()["refunded"], 0)
        refunded.assert_not_called()

        self.clock.now = result.expires_at + 1
        counts = self.monitor.tick()

        self.assertEqual(counts["refunded"], 1)
        record = self.store.require(result.swap_id)
        self.assertEqual(record.status, SwapStatus.REFUNDED)
        self.assertEqual(self.registry.get_order(result.swap_id).status, OrderStatus.REFUNDED)
        refunded.assert_called_once()
        self.assertEqual(refunded.call_args[0][0].swap_id, result.swap_id)

        self.assertEqual(self.monitor.tick()["refunded"], 0)

    def test_refunded_elsewhere_emits_expire(self):
        result = self.coordinator.initiate(self.params())
        self.clock.now = result.expires_at + 1
        self.registry.refund(result.swap_id, "keeper", caller="keeper")
        expired = MagicMock()
        self.monitor.on("expire", expired)
        self.monitor.poll_events = False

        self.assertEqual(self.monitor.tick()["expired"], 1)
        expired.assert_called_once()
        self.assertEqual(self.store.require(result.swap_id).status, SwapStatus.EXPIRED)

    def test_tracked_deposit_completes_when_deep_enough(self):
        result = self.coordinator.initiate(self.params())
        txid = self.fund(result, confirmations=1)
        completed = MagicMock()
        self.monitor.on("complete", completed)
        self.monitor.track_deposit(result.swap_id, txid)

        self.assertEqual(self.monitor.tick()["completed"], 0)
        self.assertIn(result.swap_id, self.monitor.tracked_deposits)

        self.chain.mine(2)
        self.assertEqual(self.monitor.tick()["completed"], 1)
        completed.assert_called_once()
        self.assertEqual(self.monitor.tracked_deposits, {})
        self.assertEqual(self.store.require(result.swap_id).status, SwapStatus.COMPLETED)

    def test_errors_are_reported_and_retried(self):
        result = self.coordinator.initiate(self.params())
        self.clock.now = result.expires_at + 1
        errors = MagicMock()
        self.monitor.on("error", errors)

        with patch.object(self.registry, "refund", side_effect=ChainError("rpc down")):
            counts = self.monitor.tick()
        self.assertEqual(counts["errors"], 1)
        swap_id, error = errors.call_args[0]
        self.assertEqual(swap_id, result.swap_id)
        self.assertIsInstance(error, ChainError)
        self.assertEqual(self.store.require(result.swap_id).status, SwapStatus.INITIATED)

        self.assertEqual(self.monitor.tick()["refunded"], 1)

    def test_claimed_swap_is_completed_after_restart(self):
        """A claim broadcast before a crash is finished by a monitor that never saw the deposit."""
        result = self.coordinator.initiate(self.params())
        txid = self.fund(result)
        with patch.object(self.registry, "complete", side_effect=ChainError("rpc down")):
            with self.assertRaises(ChainError):
                self.coordinator.complete_on_deposit(result.swap_id, txid)

        monitor = SwapMonitor(self.make_coordinator(), interval=0.01)
        self.assertEqual(monitor.tracked_deposits, {})
        self.assertEqual(monitor.tick()["completed"], 1)

        self.assertEqual(self.store.require(result.swap_id).status, SwapStatus.COMPLETED)
        self.assertEqual(self.registry.get_order(result.swap_id).status, OrderStatus.COMPLETED)
        self.assertEqual(self.registry.released_to(TOKEN, "0xAlice"), COUNTER_UNITS)
        self.assertEqual(len(self.chain.broadcasts), 1)

    def test_claimed_swap_is_never_refunded(self):
        result = self.coordinator.initiate(self.params())
        txid = self.fund(result)
        errors = MagicMock()
        self.monitor.on("error", errors)

        with patch.object(self.registry, "complete", side_effect=ChainError("rpc down")):
            with self.assertRaises(ChainError):
                self.coordinator.complete_on_deposit(result.swap_id, txid)
            self.assertEqual(self.monitor.tick()["errors"], 0)

            self.clock.now = result.expires_at + 1
            counts = self.monitor.tick()

        self.assertEqual(counts["refunded"], 0)
        self.assertEqual(counts["errors"], 1)
        self.assertIsInstance(errors.call_args[0][1], ClaimOutstanding)
        self.assertEqual(self.store.require(result.swap_id).status, SwapStatus.INITIATED)
        self.assertEqual(self.registry.get_order(result.swap_id).status, OrderStatus.PENDING)
        self.assertEqual(self.registry.released_to(TOKEN, "coordinator"), 0)

    def test_failing_handler_does_not_stop_tick(self):
        first = self.coordinator.initiate(self.params())
        self.coordinator.initiate(self.params(depositor="bob"))
        self.clock.now = first.expires_at + 1
        self.monitor.on("refund", MagicMock(side_effect=RuntimeError("handler bug")))

        self.assertEqual(self.monitor.tick()["refunded"], 2)

    def test_handler_registration(self):
        handler = MagicMock()
        self.monitor.on("refund", handler)
        self.monitor.off("refund", handler)
        self.monitor.off("refund", handler)
        with self.assertRaises(ValueError):
            self.monitor.on("deposit", handler)


class TestLifecycle(CoordinatorTestCase):

    def test_start_and_stop(self):
        result = self.coordinator.initiate(self.params())
        self.clock.now = result.expires_at + 1

        monitor = SwapMonitor(self.coordinator, interval=0.01)
        done = threading.Event()
        monitor.on("refund", lambda record: done.set())

        monitor.start()
        self.assertTrue(monitor.running)
        monitor.start()
        self.assertTrue(done.wait(5))
        monitor.stop()
        self.assertFalse(monitor.running)
        self.assertEqual(self.store.require(result.swap_id).status, SwapStatus.REFUNDED)


if __name__ == "__main__":
    unittest.main()
