"""
Bitcoin RPC client for swapper.

Talks to Bitcoin Core through bitcoin-cli. Implements the ChainReader
interface used by the proof oracle and the coordinator.
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core import Utxo, btc_to_sats
from ..errors import ChainError, LockNotExpired
from ..swap.oracle import InclusionProof, build_merkle_branch

log = logging.getLogger(__name__)


@dataclass
class BTCConfig:
    """Bitcoin node configuration."""
    network: str = "testnet"        # mainnet, testnet, signet, regtest
    rpc_host: str = "127.0.0.1"
    rpc_port: int = 18332
    rpc_user: str = ""
    rpc_password: str = ""
    cli_path: Optional[Path] = None  # Path to bitcoin-cli
    datadir: str = ""               # -datadir for bitcoin-cli (cookie auth)
    timeout: int = 30
    spend_scan_depth: int = 6       # blocks searched for an HTLC spend


class BTCClient:
    """
    Bitcoin RPC client.

    Uses bitcoin-cli for simplicity and reliability. Transaction lookups
    by txid need -txindex on the node.
    """

    def __init__(self, config: BTCConfig):
        self.config = config
        self.cli_path = config.cli_path or self._find_cli()

    def _find_cli(self) -> Optional[Path]:
        """Find bitcoin-cli binary."""
        paths = [
            Path.home() / "bitcoin" / "bin" / "bitcoin-cli",
            Path("/usr/local/bin/bitcoin-cli"),
            Path("/usr/bin/bitcoin-cli"),
        ]
        for p in paths:
            if p.exists():
                return p
        return None

    def _get_network_flag(self) -> str:
        flags = {
            "signet": "-signet",
            "testnet": "-testnet",
            "regtest": "-regtest",
            "mainnet": "",
        }
        return flags.get(self.config.network, "-testnet")

    def _build_cmd(self, method: str, *args) -> List[str]:
        if not self.cli_path:
            raise ChainError("bitcoin-cli not found")

        cmd = [str(self.cli_path)]
        net_flag = self._get_network_flag()
        if net_flag:
            cmd.append(net_flag)
        if self.config.datadir:
            cmd.append(f"-datadir={self.config.datadir}")
        cmd.append(f"-rpcconnect={self.config.rpc_host}")
        cmd.append(f"-rpcport={self.config.rpc_port}")
        if self.config.rpc_user:
            cmd.append("-rpcuser=" + self.config.rpc_user)
        if self.config.rpc_password:
            cmd.append("-rpcpassword=" + self.config.rpc_password)

        cmd.append(method)
        # JSON booleans, not Python ones
        cmd.extend(str(a).lower() if isinstance(a, bool) else str(a) for a in args)
        return cmd

    def _call(self, method: str, *args) -> Any:
        """Execute RPC call via CLI."""
        cmd = self._build_cmd(method, *args)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.config.timeout,
            )
        except subprocess.TimeoutExpired:
            raise ChainError(f"BTC RPC timeout: {method}")
        except OSError as e:
            raise ChainError(f"BTC RPC unavailable: {e}")

        if result.returncode != 0:
            error = result.stderr.strip()
            log.error(f"BTC RPC error: {method} -> {error}")
            raise ChainError(f"BTC RPC failed: {error}", method=method)

        output = result.stdout.strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError:
            return output

    # =========================================================================
    # Blockchain Info
    # =========================================================================

    def get_block_count(self) -> int:
        return int(self._call("getblockcount"))

    def get_block_hash(self, height: int) -> str:
        return self._call("getblockhash", height)

    def get_block_header(self, block_hash: str) -> str:
        """Raw 80-byte header as hex."""
        return self._call("getblockheader", block_hash, False)

    def get_block(self, block_hash: str, verbosity: int = 1) -> Dict:
        return self._call("getblock", block_hash, verbosity)

    def estimate_fee_rate(self, conf_target: int = 6) -> float:
        """Estimated fee rate in sat/vbyte."""
        result = self._call("estimatesmartfee", conf_target) or {}
        btc_per_kvb = result.get("feerate", 0.00001)
        return btc_per_kvb * 100_000_000 / 1000

    # =========================================================================
    # Transactions
    # =========================================================================

    def get_raw_transaction(self, txid: str, verbose: bool = True) -> Any:
        return self._call("getrawtransaction", txid, verbose)

    def get_transaction_hex(self, txid: str) -> str:
        return self.get_raw_transaction(txid, False)

    def get_confirmations(self, txid: str) -> int:
        try:
            tx = self.get_raw_transaction(txid, True)
        except ChainError as e:
            if "No such mempool or blockchain transaction" in str(e):
                return 0
            raise
        return int((tx or {}).get("confirmations", 0))

    def send_raw_transaction(self, hex_tx: str) -> str:
        """Broadcast raw transaction."""
        try:
            txid = self._call("sendrawtransaction", hex_tx)
        except ChainError as e:
            if "non-final" in str(e):
                raise LockNotExpired("Transaction timelock has not expired yet")
            raise
        log.info(f"Broadcast tx {txid}")
        return txid

    def list_unspent_for(self, address: str) -> List[Utxo]:
        """UTXOs at any address via scantxoutset (no wallet needed)."""
        scan = self._call("scantxoutset", "start", json.dumps([f"addr({address})"]))
        if not scan or not scan.get("success"):
            return []
        return [
            Utxo(u["txid"], u["vout"], btc_to_sats(u["amount"]))
            for u in scan.get("unspents", [])
        ]

    # =========================================================================
    # Proofs and spends
    # =========================================================================

    def get_inclusion_proof(self, txid: str, headers_after: int = 0) -> InclusionProof:
        """Build a Merkle proof for a confirmed transaction from node data."""
        tx = self.get_raw_transaction(txid, True)
        block_hash = (tx or {}).get("blockhash")
        if not block_hash:
            raise ChainError(f"Transaction {txid} is not confirmed")

        block = self.get_block(block_hash, 1)
        txids = block["tx"]
        path, _ = build_merkle_branch(txids, txids.index(txid))

        descendants = []
        next_hash = block.get("nextblockhash")
        while next_hash and len(descendants) < headers_after:
            descendants.append(self.get_block_header(next_hash))
            next_hash = self._call("getblockheader", next_hash, True).get("nextblockhash")

        return InclusionProof(
            txid=txid,
            block_header=self.get_block_header(block_hash),
            merkle_path=path,
            index=txids.index(txid),
            block_height=block.get("height"),
            headers_after=descendants,
        )

    def find_spending_transaction(self, txid: str, vout: int) -> Optional[str]:
        """
        Raw hex of the transaction spending txid:vout, if it can be found.

        Checks the mempool first, then the most recent blocks.
        """
        if self._call("gettxout", txid, vout, True) is not None:
            return None  # still unspent

        for mempool_txid in self._call("getrawmempool") or []:
            tx = self.get_raw_transaction(mempool_txid, True)
            if self._spends(tx, txid, vout):
                return tx["hex"]

        height = self.get_block_count()
        for h in range(height, max(height - self.config.spend_scan_depth, -1), -1):
            block = self.get_block(self.get_block_hash(h), 2)
            for tx in block.get("tx", []):
                if self._spends(tx, txid, vout):
                    return tx["hex"]
        return None

    @staticmethod
    def _spends(tx: Dict, txid: str, vout: int) -> bool:
        return any(vin.get("txid") == txid and vin.get("vout") == vout
                   for vin in tx.get("vin", []))
