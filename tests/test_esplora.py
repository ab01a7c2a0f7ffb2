"""
Esplora client tests against an httpx.MockTransport.
"""

import json
import unittest

import httpx

from swapper.chains.esplora import EsploraClient
from swapper.errors import ChainError, LockNotExpired

BASE = "https://esplora.test/api"
TXID = "aa" * 32


class FakeEsplora:
    """Route table for MockTransport: (method, path) -> (status, body)."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, body, status=200):
        self.routes[(method, path)] = (status, body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path[len("/api"):]
        status, body = self.routes.get((request.method, path), (404, "Transaction not found"))
        if isinstance(body, (dict, list)):
            return httpx.Response(status, content=json.dumps(body),
                                  headers={"content-type": "application/json"})
        return httpx.Response(status, text=body)


class EsploraTestCase(unittest.TestCase):

    def setUp(self):
        self.server = FakeEsplora()
        self.client = EsploraClient(BASE, client=httpx.Client(transport=httpx.MockTransport(self.server)))
        self.server.add("GET", "/blocks/tip/height", "105")

    def tearDown(self):
        self.client.close()


class TestConfirmations(EsploraTestCase):

    def test_unknown_tx(self):
        self.assertEqual(self.client.get_confirmations(TXID), 0)

    def test_mempool_tx(self):
        self.server.add("GET", f"/tx/{TXID}/status", {"confirmed": False})
        self.assertEqual(self.client.get_confirmations(TXID), 0)

    def test_confirmed_tx(self):
        self.server.add("GET", f"/tx/{TXID}/status", {"confirmed": True, "block_height": 103})
        self.assertEqual(self.client.get_confirmations(TXID), 3)
        self.assertEqual(self.client.get_block_count(), 105)

    def test_server_error(self):
        self.server.add("GET", f"/tx/{TXID}/status", "boom", status=500)
        with self.assertRaises(ChainError):
            self.client.get_confirmations(TXID)

    def test_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        client = EsploraClient(BASE, client=httpx.Client(transport=httpx.MockTransport(refuse)))
        with self.assertRaises(ChainError):
            client.get_block_count()


class TestProofs(EsploraTestCase):

    def test_inclusion_proof_with_descendants(self):
        self.server.add("GET", f"/tx/{TXID}/merkle-proof",
                        {"block_height": 103, "merkle": ["bb" * 32, "cc" * 32], "pos": 2})
        for height in (103, 104, 105):
            self.server.add("GET", f"/block-height/{height}", f"hash{height}")
            self.server.add("GET", f"/block/hash{height}/header", f"{height:02x}" * 80)

        proof = self.client.get_inclusion_proof(TXID, headers_after=5)
        self.assertEqual(proof.txid, TXID)
        self.assertEqual(proof.index, 2)
        self.assertEqual(proof.block_height, 103)
        self.assertEqual(proof.merkle_path, ["bb" * 32, "cc" * 32])
        self.assertEqual(proof.block_header, "67" * 80)
        # capped at the tip
        self.assertEqual(proof.headers_after, ["68" * 80, "69" * 80])
        self.assertEqual(proof.depth, 3)

    def test_missing_tx_hex(self):
        with self.assertRaises(ChainError) as ctx:
            self.client.get_transaction_hex(TXID)
        self.assertEqual(ctx.exception.details["status"], 404)


class TestSpendsAndBroadcast(EsploraTestCase):

    def test_unspent_output(self):
        self.server.add("GET", f"/tx/{TXID}/outspend/0", {"spent": False})
        self.assertIsNone(self.client.find_spending_transaction(TXID, 0))

    def test_spent_output(self):
        self.server.add("GET", f"/tx/{TXID}/outspend/1", {"spent": True, "txid": "dd" * 32, "vin": 0})
        self.server.add("GET", f"/tx/{'dd' * 32}/hex", "0200000001")
        self.assertEqual(self.client.find_spending_transaction(TXID, 1), "0200000001")

    def test_broadcast(self):
        self.server.add("POST", "/tx", "ee" * 32)
        self.assertEqual(self.client.send_raw_transaction("0200"), "ee" * 32)
        self.assertEqual(self.server.requests[-1].content, b"0200")

    def test_broadcast_non_final(self):
        self.server.add("POST", "/tx", "sendrawtransaction RPC error: non-final", status=400)
        with self.assertRaises(LockNotExpired):
            self.client.send_raw_transaction("0200")

    def test_broadcast_rejected(self):
        self.server.add("POST", "/tx", "bad-txns-inputs-missingorspent", status=400)
        with self.assertRaises(ChainError):
            self.client.send_raw_transaction("0200")

    def test_utxos_and_fees(self):
        self.server.add("GET", "/address/bcrt1qexample/utxo",
                        [{"txid": TXID, "vout": 1, "value": 5000, "status": {"confirmed": True}}])
        self.server.add("GET", "/fee-estimates", {"6": 3.5})
        utxos = self.client.list_unspent_for("bcrt1qexample")
        self.assertEqual((utxos[0].txid, utxos[0].vout, utxos[0].value), (TXID, 1, 5000))
        self.assertEqual(self.client.estimate_fee_rate(), 3.5)
        self.assertEqual(self.client.estimate_fee_rate(2), 1.0)


if __name__ == "__main__":
    unittest.main()
