"""
On-chain order registry client.

Talks to the deployed swap registry (FusionResolver ABI) on an EVM chain
and exposes the same interface as the in-process OrderRegistry.

Key features:
- SHA256 secret hashes for cross-chain compatibility with Bitcoin
- complete/refund are PERMISSIONLESS: any funded account can submit them
- Typed errors: order state is pre-checked with getSwapOrder and revert
  reasons from a dry-run are mapped before anything is broadcast
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Union

from ..core import DEFAULT_MAX_ORDER_LIFETIME, OrderStatus, sha256, to_bytes
from ..errors import (
    ChainError, DepositAlreadyProcessed, DuplicateSwap, Expired, InvalidParameters,
    InvalidProof, InvalidSecret, LockNotExpired, NotPending, SecretAlreadyUsed, UnknownSwap,
)
from ..registry import (
    ORDER_COMPLETED, ORDER_REFUNDED, ORDER_REGISTERED, OrderEvent, OrderRecord,
)

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

REGISTRY_ABI = [
    {
        "name": "initiateSwap",
        "type": "function",
        "inputs": [
            {"name": "swapId", "type": "bytes32"},
            {"name": "tokenOut", "type": "address"},
            {"name": "amountOut", "type": "uint256"},
            {"name": "secretHash", "type": "bytes32"},
            {"name": "lockTime", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "completeSwap",
        "type": "function",
        "inputs": [
            {"name": "swapId", "type": "bytes32"},
            {"name": "secret", "type": "bytes32"},
            {"name": "bitcoinTxProof", "type": "bytes"},
            {"name": "merkleProof", "type": "bytes32[]"}
        ],
        "outputs": []
    },
    {
        "name": "refundSwap",
        "type": "function",
        "inputs": [
            {"name": "swapId", "type": "bytes32"},
            {"name": "reason", "type": "string"}
        ],
        "outputs": []
    },
    {
        "name": "getSwapOrder",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "swapId", "type": "bytes32"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "user", "type": "address"},
                    {"name": "tokenOut", "type": "address"},
                    {"name": "amountOut", "type": "uint256"},
                    {"name": "bitcoinTxHash", "type": "bytes32"},
                    {"name": "secretHash", "type": "bytes32"},
                    {"name": "lockTime", "type": "uint256"},
                    {"name": "createdAt", "type": "uint256"},
                    {"name": "status", "type": "uint8"}
                ]
            }
        ]
    },
    {
        "name": "SwapInitiated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "swapId", "type": "bytes32", "indexed": True},
            {"name": "user", "type": "address", "indexed": True},
            {"name": "tokenOut", "type": "address", "indexed": False},
            {"name": "amountOut", "type": "uint256", "indexed": False},
            {"name": "bitcoinTxHash", "type": "bytes32", "indexed": False},
            {"name": "lockTime", "type": "uint256", "indexed": False}
        ]
    },
    {
        "name": "SwapCompleted",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "swapId", "type": "bytes32", "indexed": True},
            {"name": "user", "type": "address", "indexed": True},
            {"name": "secret", "type": "bytes32", "indexed": False},
            {"name": "bitcoinTxHash", "type": "bytes32", "indexed": False}
        ]
    },
    {
        "name": "SwapRefunded",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "swapId", "type": "bytes32", "indexed": True},
            {"name": "user", "type": "address", "indexed": True},
            {"name": "reason", "type": "string", "indexed": False}
        ]
    }
]

# Contract event -> registry event name
EVENT_NAMES = {
    "SwapInitiated": ORDER_REGISTERED,
    "SwapCompleted": ORDER_COMPLETED,
    "SwapRefunded": ORDER_REFUNDED,
}

# Revert reason fragments -> typed errors
REVERT_ERRORS = [
    ("already exists", DuplicateSwap),
    ("secret already used", SecretAlreadyUsed),
    ("already processed", DepositAlreadyProcessed),
    ("invalid proof", InvalidProof),
    ("invalid secret", InvalidSecret),
    ("expired", Expired),
    ("not expired", LockNotExpired),
    ("not pending", NotPending),
]


def encode_proof(proof) -> tuple:
    """
    Encode an InclusionProof for completeSwap.

    bitcoinTxProof = header(80) || index(uint32 LE) || txid(internal order)
                     || descendant headers
    merkleProof    = sibling hashes in internal byte order, leaf first
    """
    blob = bytes.fromhex(proof.block_header)
    blob += proof.index.to_bytes(4, "little")
    blob += bytes.fromhex(proof.txid)[::-1]
    for header in proof.headers_after:
        blob += bytes.fromhex(header)
    path = [bytes.fromhex(h)[::-1] for h in proof.merkle_path]
    return blob, path


def _bytes32(value: Union[bytes, str]) -> bytes:
    data = to_bytes(value)
    if len(data) != 32:
        raise InvalidParameters(f"Expected 32 bytes, got {len(data)}")
    return data


class EVMOrderRegistry:
    """
    Order registry backed by a deployed contract.

    The contract pays the counter asset to the account that registered the
    order, so `beneficiary` must equal the signing account.
    """

    def __init__(
        self,
        contract_address: str,
        rpc_url: str,
        chain_id: int,
        private_key: Optional[str] = None,
        max_lifetime: int = DEFAULT_MAX_ORDER_LIFETIME,
        clock: Callable[[], float] = time.time,
        gas_limit: int = 350000,
        receipt_timeout: int = 120,
    ):
        self.contract_address = contract_address
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.private_key = private_key
        self.max_lifetime = max_lifetime
        self.clock = clock
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self._web3 = None
        self._contract = None

    @property
    def web3(self):
        """Lazy-load web3 instance."""
        if self._web3 is None:
            from web3 import Web3
            self._web3 = Web3(Web3.HTTPProvider(self.rpc_url))
        return self._web3

    @property
    def contract(self):
        if self._contract is None:
            from web3 import Web3
            self._contract = self.web3.eth.contract(
                address=Web3.to_checksum_address(self.contract_address),
                abi=REGISTRY_ABI,
            )
        return self._contract

    @property
    def account(self):
        from eth_account import Account

        if not self.private_key:
            raise InvalidParameters("No signing key configured for registry writes")
        key = self.private_key if self.private_key.startswith("0x") else "0x" + self.private_key
        return Account.from_key(key)

    def _now(self) -> int:
        return int(self.clock())

    # =========================================================================
    # Views
    # =========================================================================

    def get_order(self, swap_id: str) -> Optional[OrderRecord]:
        """
        Fetch an order.

        Returns:
            OrderRecord or None if the contract has no such order
        """
        try:
            result = self.contract.functions.getSwapOrder(_bytes32(swap_id)).call()
        except (InvalidParameters, ChainError):
            raise
        except Exception as e:
            raise ChainError(f"getSwapOrder failed: {e}", swap_id=swap_id)

        user, token_out, amount_out, btc_tx_hash, secret_hash, lock_time, created_at, status = result
        if user == ZERO_ADDRESS:
            return None

        deposit_ref = None
        if btc_tx_hash and any(btc_tx_hash):
            deposit_ref = bytes(btc_tx_hash)[::-1].hex()

        return OrderRecord(
            swap_id=swap_id,
            depositor=user,
            beneficiary=user,
            counter_asset=token_out,
            amount=amount_out,
            secret_hash=bytes(secret_hash),
            lock_time=lock_time,
            created_at=created_at,
            status=OrderStatus(status),
            deposit_tx_ref=deposit_ref,
        )

    def _require(self, swap_id: str) -> OrderRecord:
        order = self.get_order(swap_id)
        if order is None:
            raise UnknownSwap(f"No order for swap {swap_id}", swap_id=swap_id)
        return order

    def _expired(self, order: OrderRecord) -> bool:
        now = self._now()
        return now > order.lock_time or now > order.created_at + self.max_lifetime

    def is_expired(self, swap_id: str) -> bool:
        return self._expired(self._require(swap_id))

    def events(self, since: int = 0) -> List[OrderEvent]:
        """Registry events from block `since` onwards."""
        from web3 import Web3

        collected = []
        try:
            for contract_event, name in EVENT_NAMES.items():
                for entry in getattr(self.contract.events, contract_event).get_logs(from_block=since):
                    args = dict(entry["args"])
                    collected.append(OrderEvent(
                        name=name,
                        swap_id=Web3.to_hex(args.pop("swapId")),
                        party=args.pop("user"),
                        index=entry["blockNumber"],
                        timestamp=0,
                        tx_ref=Web3.to_hex(entry["transactionHash"]),
                        data={k: (Web3.to_hex(v) if isinstance(v, bytes) else v)
                              for k, v in args.items()},
                    ))
        except Exception as e:
            raise ChainError(f"Event query failed: {e}")
        return sorted(collected, key=lambda ev: ev.index)

    # =========================================================================
    # Entry points
    # =========================================================================

    def register(self, swap_id: str, counter_asset: str, amount: int,
                 secret_hash: Union[bytes, str], lock_time: int, *,
                 caller: Optional[str] = None, beneficiary: Optional[str] = None) -> str:
        from web3 import Web3

        if amount <= 0:
            raise InvalidParameters(f"Amount must be positive, got {amount}", swap_id=swap_id)
        if lock_time <= self._now():
            raise InvalidParameters(f"lock_time {lock_time} is not in the future", swap_id=swap_id)
        account = self.account
        if beneficiary and beneficiary.lower() != account.address.lower():
            raise InvalidParameters("Contract pays the registering account; beneficiary must match",
                                    swap_id=swap_id)
        if self.get_order(swap_id) is not None:
            raise DuplicateSwap(f"Swap {swap_id} already registered", swap_id=swap_id)

        fn = self.contract.functions.initiateSwap(
            _bytes32(swap_id),
            Web3.to_checksum_address(counter_asset),
            amount,
            _bytes32(secret_hash),
            lock_time,
        )
        log.info(f"Registering order {swap_id[:18]}... amount={amount} lock_time={lock_time}")
        return self._send(fn, swap_id)

    def complete(self, swap_id: str, secret: Union[bytes, str], proof, *,
                 caller: Optional[str] = None) -> str:
        order = self._require(swap_id)
        if order.status != OrderStatus.PENDING:
            raise NotPending(f"Swap {swap_id} is {order.status.name.lower()}", swap_id=swap_id)
        if self._expired(order):
            raise Expired(f"Swap {swap_id} expired at {order.lock_time}", swap_id=swap_id)
        secret = _bytes32(secret)
        if sha256(secret) != order.secret_hash:
            raise InvalidSecret("Secret does not match order hash", swap_id=swap_id)

        blob, path = encode_proof(proof)
        fn = self.contract.functions.completeSwap(_bytes32(swap_id), secret, blob, path)
        log.info(f"Completing order {swap_id[:18]}... deposit={proof.txid[:16]}...")
        return self._send(fn, swap_id)

    def refund(self, swap_id: str, reason: str, *, caller: Optional[str] = None) -> str:
        order = self._require(swap_id)
        if order.status != OrderStatus.PENDING:
            raise NotPending(f"Swap {swap_id} is {order.status.name.lower()}", swap_id=swap_id)
        if not self._expired(order):
            raise LockNotExpired(f"Swap {swap_id} locked until {order.lock_time}", swap_id=swap_id)

        fn = self.contract.functions.refundSwap(_bytes32(swap_id), reason)
        log.info(f"Refunding order {swap_id[:18]}...: {reason}")
        return self._send(fn, swap_id)

    # =========================================================================
    # Transactions
    # =========================================================================

    def _send(self, fn, swap_id: str) -> str:
        """Dry-run, sign, broadcast and wait for the receipt."""
        from web3 import Web3
        from web3.exceptions import ContractLogicError

        account = self.account
        w3 = self.web3

        try:
            fn.call({"from": account.address})
        except ContractLogicError as e:
            raise self._revert_error(str(e), swap_id)
        except Exception as e:
            raise ChainError(f"Dry-run failed: {e}", swap_id=swap_id)

        try:
            nonce = w3.eth.get_transaction_count(account.address, "pending")
            tx = fn.build_transaction({
                "from": account.address,
                "nonce": nonce,
                "gas": self.gas_limit,
                "gasPrice": int(w3.eth.gas_price * 1.1),
                "chainId": self.chain_id,
            })
            signed = account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except Exception as e:
            raise ChainError(f"Registry transaction failed: {e}", swap_id=swap_id)

        tx_ref = Web3.to_hex(tx_hash)
        if receipt["status"] != 1:
            raise ChainError(f"Registry transaction {tx_ref} reverted", swap_id=swap_id)
        log.info(f"Registry tx confirmed: {tx_ref}")
        return tx_ref

    @staticmethod
    def _revert_error(message: str, swap_id: str):
        lowered = message.lower()
        # "not expired" must win over "expired"
        for fragment, error in sorted(REVERT_ERRORS, key=lambda item: -len(item[0])):
            if fragment in lowered:
                return error(message, swap_id=swap_id)
        return ChainError(f"Registry call reverted: {message}", swap_id=swap_id)
