"""
Contract-backed order registry tests.

The web3 provider and contract are MagicMocks; signing goes through a real
eth-account key so the send path runs as it would against a node.
"""

import unittest
from unittest.mock import MagicMock

from web3.exceptions import ContractLogicError

from swapper.core import OrderStatus, generate_secret
from swapper.errors import (
    ChainError, DuplicateSwap, Expired, InvalidParameters, InvalidProof, InvalidSecret,
    LockNotExpired, NotPending, UnknownSwap,
)
from swapper.htlc.evm import ZERO_ADDRESS, EVMOrderRegistry, encode_proof
from swapper.registry import ORDER_REGISTERED
from swapper.swap.oracle import InclusionProof

from tests.fakes import Clock

PRIVATE_KEY = "0x" + "11" * 32
SWAP_ID = "0x" + "01" * 32
TOKEN = "0x" + "33" * 20
DAY = 86400


class EVMRegistryTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = Clock()
        self.registry = EVMOrderRegistry(
            "0x" + "44" * 20, "http://127.0.0.1:8545", 11155111,
            private_key=PRIVATE_KEY, clock=self.clock,
        )
        self.web3 = MagicMock()
        self.contract = MagicMock()
        self.registry._web3 = self.web3
        self.registry._contract = self.contract
        self.address = self.registry.account.address

        self.web3.eth.get_transaction_count.return_value = 5
        self.web3.eth.gas_price = 10 ** 9
        self.web3.eth.send_raw_transaction.return_value = b"\xaa" * 32
        self.web3.eth.wait_for_transaction_receipt.return_value = {"status": 1}

        self.secret, self.secret_hash = generate_secret()
        self.set_order(None)

    def set_order(self, status, user=None, lock_time=None, btc_tx_hash=b"\x00" * 32):
        if status is None:
            result = (ZERO_ADDRESS, ZERO_ADDRESS, 0, b"\x00" * 32, b"\x00" * 32, 0, 0, 0)
        else:
            result = (user or self.address, TOKEN, 10 ** 17, btc_tx_hash, self.secret_hash,
                      lock_time or self.clock.now + DAY, self.clock.now, int(status))
        self.contract.functions.getSwapOrder.return_value.call.return_value = result

    def arm_function(self, name):
        """Make contract.functions.<name>(...) return a fn that dry-runs and builds cleanly."""
        fn = getattr(self.contract.functions, name).return_value
        fn.call.return_value = None
        fn.build_transaction.return_value = {
            "to": "0x" + "44" * 20,
            "data": "0x",
            "value": 0,
            "nonce": 5,
            "gas": 350000,
            "gasPrice": 1_100_000_000,
            "chainId": 11155111,
        }
        return fn

    def proof(self, txid="dd" * 32):
        return InclusionProof(txid=txid, block_header="00" * 80, merkle_path=["ee" * 32], index=1)


class TestViews(EVMRegistryTestCase):

    def test_missing_order(self):
        self.assertIsNone(self.registry.get_order(SWAP_ID))
        with self.assertRaises(UnknownSwap):
            self.registry.is_expired(SWAP_ID)

    def test_order_mapping(self):
        self.set_order(OrderStatus.COMPLETED, btc_tx_hash=bytes.fromhex("dd" * 32))
        order = self.registry.get_order(SWAP_ID)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(order.depositor, self.address)
        self.assertEqual(order.counter_asset, TOKEN)
        self.assertEqual(order.secret_hash, self.secret_hash)
        self.assertEqual(order.deposit_tx_ref, "dd" * 32)

    def test_rpc_failure(self):
        self.contract.functions.getSwapOrder.return_value.call.side_effect = ConnectionError("down")
        with self.assertRaises(ChainError):
            self.registry.get_order(SWAP_ID)

    def test_expiry(self):
        self.set_order(OrderStatus.PENDING)
        self.assertFalse(self.registry.is_expired(SWAP_ID))
        self.clock.advance(DAY + 1)
        self.assertTrue(self.registry.is_expired(SWAP_ID))

    def test_events(self):
        self.contract.events.SwapInitiated.get_logs.return_value = [{
            "args": {"swapId": bytes.fromhex("01" * 32), "user": self.address, "tokenOut": TOKEN,
                     "amountOut": 10 ** 17, "bitcoinTxHash": b"\x00" * 32, "lockTime": 123},
            "blockNumber": 7,
            "transactionHash": b"\xbb" * 32,
        }]
        self.contract.events.SwapCompleted.get_logs.return_value = []
        self.contract.events.SwapRefunded.get_logs.return_value = []

        events = self.registry.events(since=5)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].name, ORDER_REGISTERED)
        self.assertEqual(events[0].swap_id, SWAP_ID)
        self.assertEqual(events[0].index, 7)
        self.assertEqual(events[0].data["amountOut"], 10 ** 17)
        self.contract.events.SwapInitiated.get_logs.assert_called_once_with(from_block=5)


class TestRegister(EVMRegistryTestCase):

    def test_register_sends_transaction(self):
        fn = self.arm_function("initiateSwap")
        tx_ref = self.registry.register(SWAP_ID, TOKEN, 10 ** 17, self.secret_hash,
                                        self.clock.now + DAY, beneficiary=self.address)

        self.assertEqual(tx_ref, "0x" + "aa" * 32)
        self.contract.functions.initiateSwap.assert_called_once_with(
            bytes.fromhex("01" * 32), TOKEN, 10 ** 17, self.secret_hash, self.clock.now + DAY,
        )
        fn.call.assert_called_once_with({"from": self.address})
        self.web3.eth.send_raw_transaction.assert_called_once()

    def test_duplicate(self):
        self.set_order(OrderStatus.PENDING)
        with self.assertRaises(DuplicateSwap):
            self.registry.register(SWAP_ID, TOKEN, 1, self.secret_hash, self.clock.now + DAY)
        self.contract.functions.initiateSwap.assert_not_called()

    def test_foreign_beneficiary(self):
        with self.assertRaises(InvalidParameters):
            self.registry.register(SWAP_ID, TOKEN, 1, self.secret_hash, self.clock.now + DAY,
                                   beneficiary="0x" + "55" * 20)

    def test_validation(self):
        with self.assertRaises(InvalidParameters):
            self.registry.register(SWAP_ID, TOKEN, 0, self.secret_hash, self.clock.now + DAY)
        with self.assertRaises(InvalidParameters):
            self.registry.register(SWAP_ID, TOKEN, 1, self.secret_hash, self.clock.now)

    def test_no_signing_key(self):
        registry = EVMOrderRegistry("0x" + "44" * 20, "http://127.0.0.1:8545", 1, clock=self.clock)
        registry._web3, registry._contract = self.web3, self.contract
        with self.assertRaises(InvalidParameters):
            registry.register(SWAP_ID, TOKEN, 1, self.secret_hash, self.clock.now + DAY)

    def test_reverted_receipt(self):
        self.arm_function("initiateSwap")
        self.web3.eth.wait_for_transaction_receipt.return_value = {"status": 0}
        with self.assertRaises(ChainError):
            self.registry.register(SWAP_ID, TOKEN, 1, self.secret_hash, self.clock.now + DAY)


class TestComplete(EVMRegistryTestCase):

    def test_complete_encodes_proof(self):
        self.set_order(OrderStatus.PENDING)
        self.arm_function("completeSwap")
        proof = self.proof()

        self.registry.complete(SWAP_ID, self.secret, proof)

        blob, path = encode_proof(proof)
        self.assertEqual(len(blob), 80 + 4 + 32)
        self.assertEqual(blob[80:84], (1).to_bytes(4, "little"))
        self.assertEqual(blob[84:], bytes.fromhex("dd" * 32)[::-1])
        self.contract.functions.completeSwap.assert_called_once_with(
            bytes.fromhex("01" * 32), self.secret, blob, path,
        )

    def test_prechecks(self):
        self.set_order(OrderStatus.PENDING)
        with self.assertRaises(InvalidSecret):
            self.registry.complete(SWAP_ID, b"\x00" * 32, self.proof())

        self.set_order(OrderStatus.REFUNDED)
        with self.assertRaises(NotPending):
            self.registry.complete(SWAP_ID, self.secret, self.proof())

        self.set_order(OrderStatus.PENDING)
        self.clock.advance(DAY + 1)
        with self.assertRaises(Expired):
            self.registry.complete(SWAP_ID, self.secret, self.proof())

        self.contract.functions.completeSwap.assert_not_called()

    def test_revert_reason_mapped(self):
        self.set_order(OrderStatus.PENDING)
        fn = self.arm_function("completeSwap")
        fn.call.side_effect = ContractLogicError("execution reverted: Invalid proof")
        with self.assertRaises(InvalidProof):
            self.registry.complete(SWAP_ID, self.secret, self.proof())
        self.web3.eth.send_raw_transaction.assert_not_called()


class TestRefund(EVMRegistryTestCase):

    def test_refund_after_expiry(self):
        self.set_order(OrderStatus.PENDING)
        self.arm_function("refundSwap")
        self.clock.advance(DAY + 1)
        self.assertEqual(self.registry.refund(SWAP_ID, "Swap timeout"), "0x" + "aa" * 32)
        self.contract.functions.refundSwap.assert_called_once_with(bytes.fromhex("01" * 32), "Swap timeout")

    def test_refund_too_early(self):
        self.set_order(OrderStatus.PENDING)
        with self.assertRaises(LockNotExpired):
            self.registry.refund(SWAP_ID, "early")
        self.contract.functions.refundSwap.assert_not_called()

    def test_revert_messages(self):
        self.assertIsInstance(EVMOrderRegistry._revert_error("reverted: Swap not expired", SWAP_ID),
                              LockNotExpired)
        self.assertIsInstance(EVMOrderRegistry._revert_error("reverted: Swap expired", SWAP_ID), Expired)
        self.assertIsInstance(EVMOrderRegistry._revert_error("out of gas", SWAP_ID), ChainError)


if __name__ == "__main__":
    unittest.main()
