"""
UTXO chain clients for swapper.

Both implement the ChainReader interface the proof oracle consumes:
- BTCClient: Bitcoin Core through bitcoin-cli
- EsploraClient: Esplora REST API over httpx
"""

from .btc import BTCClient, BTCConfig
from .esplora import EsploraClient

__all__ = ["BTCClient", "BTCConfig", "EsploraClient"]
