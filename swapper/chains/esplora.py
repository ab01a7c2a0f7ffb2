"""
Esplora (Blockstream-style) REST client for swapper.

Same ChainReader surface as BTCClient, for deployments without a local node.
"""

import logging
from typing import Any, List, Optional

import httpx

from ..core import Utxo
from ..errors import ChainError, LockNotExpired
from ..swap.oracle import InclusionProof

log = logging.getLogger(__name__)

ESPLORA_URLS = {
    "mainnet": "https://blockstream.info/api",
    "testnet": "https://blockstream.info/testnet/api",
    "signet": "https://mempool.space/signet/api",
}


class EsploraClient:
    """Synchronous Esplora HTTP client."""

    def __init__(self, base_url: Optional[str] = None, network: str = "testnet",
                 timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.base_url = (base_url or ESPLORA_URLS.get(network, ESPLORA_URLS["testnet"])).rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ChainError(f"Esplora request failed: {method} {path}: {e}")
        return response

    def _get(self, path: str, json_body: bool = True) -> Any:
        response = self._request("GET", path)
        if response.status_code != 200:
            raise ChainError(f"Esplora GET {path} -> {response.status_code}: {response.text[:200]}",
                             status=response.status_code)
        return response.json() if json_body else response.text.strip()

    # =========================================================================
    # ChainReader
    # =========================================================================

    def get_block_count(self) -> int:
        return int(self._get("/blocks/tip/height", json_body=False))

    def get_confirmations(self, txid: str) -> int:
        response = self._request("GET", f"/tx/{txid}/status")
        if response.status_code == 404:
            return 0
        if response.status_code != 200:
            raise ChainError(f"Esplora tx status {txid} -> {response.status_code}")
        status = response.json()
        if not status.get("confirmed"):
            return 0
        return self.get_block_count() - status["block_height"] + 1

    def get_transaction_hex(self, txid: str) -> str:
        return self._get(f"/tx/{txid}/hex", json_body=False)

    def get_block_header(self, block_hash: str) -> str:
        return self._get(f"/block/{block_hash}/header", json_body=False)

    def get_block_hash(self, height: int) -> str:
        return self._get(f"/block-height/{height}", json_body=False)

    def get_inclusion_proof(self, txid: str, headers_after: int = 0) -> InclusionProof:
        proof = self._get(f"/tx/{txid}/merkle-proof")
        height = proof["block_height"]
        header = self.get_block_header(self.get_block_hash(height))

        tip = self.get_block_count()
        descendants = [
            self.get_block_header(self.get_block_hash(h))
            for h in range(height + 1, min(height + headers_after, tip) + 1)
        ]
        return InclusionProof(
            txid=txid,
            block_header=header,
            merkle_path=list(proof["merkle"]),
            index=proof["pos"],
            block_height=height,
            headers_after=descendants,
        )

    def find_spending_transaction(self, txid: str, vout: int) -> Optional[str]:
        outspend = self._get(f"/tx/{txid}/outspend/{vout}")
        if not outspend.get("spent"):
            return None
        return self.get_transaction_hex(outspend["txid"])

    def send_raw_transaction(self, hex_tx: str) -> str:
        response = self._request("POST", "/tx", content=hex_tx)
        if response.status_code != 200:
            body = response.text
            if "non-final" in body:
                raise LockNotExpired("Transaction timelock has not expired yet")
            raise ChainError(f"Broadcast rejected: {body[:200]}", status=response.status_code)
        txid = response.text.strip()
        log.info(f"Broadcast tx {txid}")
        return txid

    # =========================================================================
    # Extras
    # =========================================================================

    def list_unspent_for(self, address: str) -> List[Utxo]:
        return [Utxo(u["txid"], u["vout"], u["value"]) for u in self._get(f"/address/{address}/utxo")]

    def estimate_fee_rate(self, conf_target: int = 6) -> float:
        """Estimated fee rate in sat/vbyte."""
        estimates = self._get("/fee-estimates")
        return float(estimates.get(str(conf_target), 1.0))
