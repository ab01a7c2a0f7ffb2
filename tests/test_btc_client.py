"""
bitcoin-cli client tests with subprocess.run patched out.
"""

import json
import subprocess
import unittest
from pathlib import Path
from unittest.mock import patch

from swapper.chains.btc import BTCClient, BTCConfig
from swapper.errors import ChainError, LockNotExpired
from swapper.swap.oracle import build_merkle_branch

TXIDS = ["aa" * 32, "bb" * 32, "cc" * 32]


class FakeCli:
    """Answers bitcoin-cli invocations from a (method, *args) table."""

    def __init__(self):
        self.responses = {}
        self.calls = []

    def add(self, *call, stdout="", stderr="", returncode=0):
        if not isinstance(stdout, str):
            stdout = json.dumps(stdout)
        self.responses[tuple(call)] = (returncode, stdout, stderr)

    def __call__(self, cmd, **kwargs):
        tail = [part for part in cmd[1:] if not part.startswith("-")]
        self.calls.append(cmd)
        returncode, stdout, stderr = self.responses.get(
            tuple(tail), (1, "", f"error: unexpected call {tail}"))
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


class BTCClientTestCase(unittest.TestCase):

    def setUp(self):
        self.cli = FakeCli()
        patcher = patch("swapper.chains.btc.subprocess.run", side_effect=self.cli)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.client = BTCClient(BTCConfig(
            network="regtest", rpc_port=18443, rpc_user="u", rpc_password="p",
            cli_path=Path("/opt/bitcoin/bin/bitcoin-cli"),
        ))


class TestCommands(BTCClientTestCase):

    def test_command_line(self):
        self.cli.add("getrawtransaction", TXIDS[0], "false", stdout="0200")
        self.assertEqual(self.client.get_transaction_hex(TXIDS[0]), "0200")
        self.assertEqual(self.cli.calls[0], [
            "/opt/bitcoin/bin/bitcoin-cli", "-regtest", "-rpcconnect=127.0.0.1", "-rpcport=18443",
            "-rpcuser=u", "-rpcpassword=p", "getrawtransaction", TXIDS[0], "false",
        ])

    def test_missing_cli(self):
        with patch.object(BTCClient, "_find_cli", return_value=None):
            client = BTCClient(BTCConfig(network="regtest"))
        with self.assertRaises(ChainError):
            client.get_block_count()

    def test_timeout(self):
        with patch("swapper.chains.btc.subprocess.run",
                   side_effect=subprocess.TimeoutExpired("bitcoin-cli", 30)):
            with self.assertRaises(ChainError):
                self.client.get_block_count()


class TestReads(BTCClientTestCase):

    def test_confirmations(self):
        self.cli.add("getrawtransaction", TXIDS[0], "true", stdout={"confirmations": 4})
        self.assertEqual(self.client.get_confirmations(TXIDS[0]), 4)

    def test_unknown_tx_has_no_confirmations(self):
        self.cli.add("getrawtransaction", TXIDS[0], "true", returncode=5,
                     stderr="error code: -5\nerror message:\nNo such mempool or blockchain transaction.")
        self.assertEqual(self.client.get_confirmations(TXIDS[0]), 0)

    def test_rpc_failure(self):
        self.cli.add("getrawtransaction", TXIDS[0], "true", returncode=1, stderr="Connection refused")
        with self.assertRaises(ChainError):
            self.client.get_confirmations(TXIDS[0])

    def test_inclusion_proof(self):
        self.cli.add("getrawtransaction", TXIDS[1], "true", stdout={"blockhash": "b1", "confirmations": 2})
        self.cli.add("getblock", "b1", "1", stdout={"tx": TXIDS, "height": 50, "nextblockhash": "b2"})
        self.cli.add("getblockheader", "b1", "false", stdout="01" * 80)
        self.cli.add("getblockheader", "b2", "false", stdout="02" * 80)
        self.cli.add("getblockheader", "b2", "true", stdout={"height": 51})

        proof = self.client.get_inclusion_proof(TXIDS[1], headers_after=3)
        self.assertEqual(proof.index, 1)
        self.assertEqual(proof.block_height, 50)
        self.assertEqual(proof.block_header, "01" * 80)
        self.assertEqual(proof.merkle_path, build_merkle_branch(TXIDS, 1)[0])
        self.assertEqual(proof.headers_after, ["02" * 80])

    def test_unconfirmed_proof(self):
        self.cli.add("getrawtransaction", TXIDS[1], "true", stdout={"confirmations": 0})
        with self.assertRaises(ChainError):
            self.client.get_inclusion_proof(TXIDS[1])

    def test_utxos(self):
        self.cli.add("scantxoutset", "start", json.dumps(["addr(bcrt1qexample)"]),
                     stdout={"success": True, "unspents": [{"txid": TXIDS[0], "vout": 0, "amount": 0.001}]})
        utxos = self.client.list_unspent_for("bcrt1qexample")
        self.assertEqual([(u.txid, u.vout, u.value) for u in utxos], [(TXIDS[0], 0, 100_000)])


class TestSpends(BTCClientTestCase):

    def test_unspent(self):
        self.cli.add("gettxout", TXIDS[0], "0", "true", stdout={"value": 0.001})
        self.assertIsNone(self.client.find_spending_transaction(TXIDS[0], 0))

    def test_spent_in_mempool(self):
        self.cli.add("gettxout", TXIDS[0], "0", "true", stdout="")
        self.cli.add("getrawmempool", stdout=["dd" * 32])
        self.cli.add("getrawtransaction", "dd" * 32, "true",
                     stdout={"hex": "0200ff", "vin": [{"txid": TXIDS[0], "vout": 0}]})
        self.assertEqual(self.client.find_spending_transaction(TXIDS[0], 0), "0200ff")

    def test_spent_in_recent_block(self):
        self.cli.add("gettxout", TXIDS[0], "1", "true", stdout="")
        self.cli.add("getrawmempool", stdout=[])
        self.cli.add("getblockcount", stdout="10")
        self.cli.add("getblockhash", "10", stdout="b10")
        self.cli.add("getblock", "b10", "2",
                     stdout={"tx": [{"hex": "0200ee", "vin": [{"txid": TXIDS[0], "vout": 1}]}]})
        self.assertEqual(self.client.find_spending_transaction(TXIDS[0], 1), "0200ee")

    def test_broadcast(self):
        self.cli.add("sendrawtransaction", "0200", stdout="ee" * 32)
        self.assertEqual(self.client.send_raw_transaction("0200"), "ee" * 32)

    def test_broadcast_before_locktime(self):
        self.cli.add("sendrawtransaction", "0200", returncode=26,
                     stderr="error code: -26\nerror message:\nnon-final")
        with self.assertRaises(LockNotExpired):
            self.client.send_raw_transaction("0200")


if __name__ == "__main__":
    unittest.main()
