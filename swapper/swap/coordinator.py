"""
Swap coordinator for swapper.

Drives a swap through its lifecycle across the two chains:

1. initiate: generate the secret, build the HTLC the depositor funds on the
   UTXO chain, register the mirrored order (escrowing the counter asset)
   on the account chain, persist the record as initiated.
2. complete_on_deposit: once the deposit is confirmed, obtain the secret
   (claim the HTLC ourselves in claimant mode, or read it from the claim
   transaction in observer mode), prove the deposit's inclusion and
   complete the order, releasing the counter asset.
3. handle_timeout: past expiry, refund the order, or reconcile with what
   the registry already did.

Every state transition of a swap runs under the store's per-swap lock, so
one swap never has two transitions in flight.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..core import (
    DEFAULT_CLAIM_SAFETY_MARGIN, DEFAULT_LOCK_DURATION, DEFAULT_MONITOR_INTERVAL,
    DEFAULT_RETENTION, DEFAULT_TIMELOCK_GAP, HTLCLock, OrderStatus, SwapStatus, Utxo, generate_swap_id,
)
from ..errors import (
    ClaimOutstanding, DepositMismatch, DuplicateSwap, Expired, InsufficientConfirmations,
    InvalidParameters, LockNotExpired, NotPending, SecretNotRevealed, SwapError, UnknownSwap,
)
from ..htlc.btc import HTLCBuilder, load_private_key, privkey_to_pubkey
from ..models import CounterAsset, LockAsset, SwapRecord
from ..registry import ORDER_COMPLETED, ORDER_REFUNDED, OrderEvent
from ..store import PersistentStore
from ..vault import SecretVault
from .oracle import ChainProofOracle

log = logging.getLogger(__name__)


@dataclass
class SwapParams:
    """What a depositor asks for when opening a swap."""
    lock_amount: int                # sats the depositor locks in the HTLC
    counter_asset: str              # token reference on the account chain
    counter_amount: int             # base units released on completion
    depositor: str                  # depositor identity
    beneficiary: str                # account-chain address receiving the counter asset
    refund_pubkey: str              # depositor's key for the refund branch
    claim_pubkey: Optional[str] = None
    lock_duration: Optional[int] = None
    swap_id: Optional[str] = None


@dataclass
class InitiateResult:
    swap_id: str
    deposit_address: str
    lock: HTLCLock
    expires_at: int
    register_tx_ref: str
    record: SwapRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swapId": self.swap_id,
            "depositAddress": self.deposit_address,
            "htlc": self.lock.to_dict(),
            "expiresAt": self.expires_at,
            "registerTxRef": self.register_tx_ref,
        }


class SwapCoordinator:
    """
    Cross-chain swap lifecycle manager.

    Claimant mode is on when a claim key is configured: the coordinator
    claims the HTLC itself before completing the order. Without one it
    waits for someone else's claim transaction to reveal the secret.
    """

    def __init__(
        self,
        builder: HTLCBuilder,
        oracle: ChainProofOracle,
        registry,
        store: PersistentStore,
        vault: SecretVault,
        identity: str = "coordinator",
        claim_key: Optional[str] = None,
        claim_destination: Optional[str] = None,
        required_confirmations: Optional[int] = None,
        default_lock_duration: int = DEFAULT_LOCK_DURATION,
        timelock_gap: int = DEFAULT_TIMELOCK_GAP,
        claim_safety_margin: int = DEFAULT_CLAIM_SAFETY_MARGIN,
        min_lock_duration: int = DEFAULT_MONITOR_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            builder: HTLC script/transaction builder
            oracle: confirmation and inclusion-proof oracle over the UTXO chain
            registry: OrderRegistry or EVMOrderRegistry
            store: persistent swap-state store
            vault: secret storage
            identity: account the coordinator registers orders from
            claim_key: WIF/hex key for the HTLC claim branch (enables claimant mode)
            claim_destination: address receiving claimed funds
            required_confirmations: deposit depth before completion
            default_lock_duration: order lifetime in seconds
            timelock_gap: extra seconds the HTLC refund waits beyond order expiry
            claim_safety_margin: refuse to claim this close to order expiry
            min_lock_duration: shortest lock duration accepted (one monitor interval)
            clock: time source, injectable for tests
        """
        self.builder = builder
        self.oracle = oracle
        self.registry = registry
        self.store = store
        self.vault = vault
        self.identity = identity
        self.claim_key = claim_key or None
        self.claim_destination = claim_destination or None
        self.required_confirmations = (
            oracle.required_confirmations if required_confirmations is None
            else required_confirmations
        )
        self.default_lock_duration = default_lock_duration
        self.timelock_gap = timelock_gap
        self.claim_safety_margin = claim_safety_margin
        self.min_lock_duration = min_lock_duration
        self.clock = clock

        self.claim_pubkey: Optional[bytes] = None
        if self.claim_key:
            if not self.claim_destination:
                raise InvalidParameters("claim_destination is required with a claim key")
            privkey, compressed = load_private_key(self.claim_key)
            self.claim_pubkey = privkey_to_pubkey(privkey, compressed)

        self._event_cursor = 0

    @property
    def claimant(self) -> bool:
        return self.claim_key is not None

    def _now(self) -> int:
        return int(self.clock())

    # =========================================================================
    # Initiate
    # =========================================================================

    def initiate(self, params: SwapParams) -> InitiateResult:
        """
        Open a swap: secret, HTLC, registry order, persisted record.

        Raises:
            InvalidParameters: bad amounts, identities, keys or duration
            DuplicateSwap: swap id already known locally or to the registry
        """
        self._validate(params)
        claim_pubkey = params.claim_pubkey or self.claim_pubkey
        if claim_pubkey is None:
            raise InvalidParameters("No claim pubkey given and no claim key configured")

        now = self._now()
        duration = params.lock_duration or self.default_lock_duration
        expires_at = now + duration
        htlc_lock_time = expires_at + self.timelock_gap

        swap_id = params.swap_id or generate_swap_id(params.depositor, now_ms=int(self.clock() * 1000))

        with self.store.lock(swap_id):
            if self.store.get(swap_id) is not None:
                raise DuplicateSwap(f"Swap {swap_id} already exists", swap_id=swap_id)

            _, secret_hash = self.vault.create(swap_id)
            try:
                lock = self.builder.build_lock(
                    secret_hash, claim_pubkey, params.refund_pubkey,
                    htlc_lock_time, params.lock_amount,
                )
                register_tx = self.registry.register(
                    swap_id, params.counter_asset, params.counter_amount,
                    secret_hash, expires_at,
                    caller=self.identity, beneficiary=params.beneficiary,
                )
            except SwapError:
                self.vault.discard(swap_id)
                raise

            record = SwapRecord(
                swap_id=swap_id,
                status=SwapStatus.INITIATED,
                depositor=params.depositor,
                counterparty=self.identity,
                lock_asset=LockAsset(
                    amount=params.lock_amount,
                    address=lock.address,
                    script_hex=lock.script_hex,
                    secret_hash_hex=lock.secret_hash_hex,
                    lock_time=htlc_lock_time,
                ),
                counter_asset=CounterAsset(
                    token_ref=params.counter_asset,
                    amount=params.counter_amount,
                    party_address=params.beneficiary,
                ),
                created_at=now,
                expires_at=expires_at,
                register_tx_ref=register_tx,
            )
            try:
                record = self.store.save(record)
            except OSError as e:
                log.error(f"Swap {swap_id} registered ({register_tx}) but not persisted: {e}")
                raise

        log.info(f"Initiated swap {swap_id[:18]}: {params.lock_amount} sats -> "
                 f"{params.counter_amount} {params.counter_asset}, deposit to {lock.address}")
        return InitiateResult(
            swap_id=swap_id,
            deposit_address=lock.address,
            lock=lock,
            expires_at=expires_at,
            register_tx_ref=register_tx,
            record=record,
        )

    def _validate(self, params: SwapParams):
        if not isinstance(params.lock_amount, int) or params.lock_amount <= 0:
            raise InvalidParameters(f"lock_amount must be a positive integer, got {params.lock_amount}")
        if not isinstance(params.counter_amount, int) or params.counter_amount <= 0:
            raise InvalidParameters(f"counter_amount must be a positive integer, got {params.counter_amount}")
        if not params.counter_asset:
            raise InvalidParameters("counter_asset is required")
        if not params.depositor or not params.beneficiary:
            raise InvalidParameters("depositor and beneficiary are required")
        if not params.refund_pubkey:
            raise InvalidParameters("refund_pubkey is required")
        if params.lock_duration is not None and params.lock_duration < self.min_lock_duration:
            raise InvalidParameters(
                f"lock_duration must be at least {self.min_lock_duration}s, got {params.lock_duration}"
            )

    # =========================================================================
    # Complete
    # =========================================================================

    def complete_on_deposit(self, swap_id: str, deposit_txid: str) -> SwapRecord:
        """
        Finish a swap once its HTLC deposit is confirmed.

        Raises:
            SwapNotFound: unknown swap id
            NotPending: swap already terminal
            InsufficientConfirmations: deposit not deep enough yet (retry later)
            DepositMismatch: deposit does not pay the HTLC the agreed amount
            SecretNotRevealed: observer mode and nobody has claimed yet
            Expired: order expired, or too close to expiry to claim safely
        """
        record = self.store.require(swap_id)
        if record.terminal:
            raise NotPending(f"Swap {swap_id} is {record.status.value}", swap_id=swap_id)

        confirmed, confirmations = self.oracle.is_confirmed(deposit_txid, self.required_confirmations)
        if not confirmed:
            raise InsufficientConfirmations(
                f"Deposit {deposit_txid[:16]}... has {confirmations}/{self.required_confirmations} confirmations",
                swap_id=swap_id, confirmations=confirmations, required=self.required_confirmations,
            )

        lock = self.builder.lock_from_script(record.lock_asset.script_hex, record.lock_asset.amount)
        utxos = self.builder.lock_outputs(lock, self.oracle.chain.get_transaction_hex(deposit_txid))
        funded = sum(u.value for u in utxos)
        if not utxos or funded < lock.amount:
            raise DepositMismatch(
                f"Deposit {deposit_txid[:16]}... pays {funded} sats to the HTLC, expected {lock.amount}",
                swap_id=swap_id, funded=funded, expected=lock.amount,
            )

        if self.claimant:
            return self._complete_as_claimant(swap_id, deposit_txid, lock, utxos)
        return self._complete_as_observer(swap_id, deposit_txid, lock, utxos)

    def _complete_as_claimant(self, swap_id: str, deposit_txid: str,
                              lock: HTLCLock, utxos: List[Utxo]) -> SwapRecord:
        proof = self.oracle.fetch_proof(deposit_txid)

        with self.store.lock(swap_id):
            record = self._require_active(swap_id)

            order = self.registry.get_order(swap_id)
            if order is None:
                raise UnknownSwap(f"No registry order for swap {swap_id}", swap_id=swap_id)
            if order.status != OrderStatus.PENDING:
                raise NotPending(f"Registry order for {swap_id} is {order.status.name.lower()}",
                                 swap_id=swap_id)

            secret = self.vault.load(swap_id)
            if record.claim_tx_ref is None:
                # Once claimed the secret is public, so the margin only gates new claims
                now = self._now()
                if now + self.claim_safety_margin >= record.expires_at:
                    raise Expired(
                        f"Swap {swap_id} expires at {record.expires_at}, too close to claim safely",
                        swap_id=swap_id,
                    )
                signed = self.builder.build_claim_transaction(
                    lock, secret, self.claim_key, self.claim_destination, utxos,
                )
                record.claim_tx_ref = self.oracle.chain.send_raw_transaction(signed.hex)
                record.deposit_tx_ref = deposit_txid
                record = self.store.save(record)
                log.info(f"Claimed HTLC for swap {swap_id[:18]} in {record.claim_tx_ref}")

            return self._finish(record, secret, deposit_txid, proof)

    def _complete_as_observer(self, swap_id: str, deposit_txid: str,
                              lock: HTLCLock, utxos: List[Utxo]) -> SwapRecord:
        secret = None
        for utxo in utxos:
            secret = self.oracle.find_revealed_secret(utxo.txid, utxo.vout, lock.secret_hash)
            if secret is not None:
                break
        if secret is None:
            raise SecretNotRevealed(f"No claim of swap {swap_id} seen on chain yet", swap_id=swap_id)

        proof = self.oracle.fetch_proof(deposit_txid)
        with self.store.lock(swap_id):
            record = self._require_active(swap_id)
            return self._finish(record, secret, deposit_txid, proof)

    def _require_active(self, swap_id: str) -> SwapRecord:
        record = self.store.require(swap_id)
        if record.terminal:
            raise NotPending(f"Swap {swap_id} is {record.status.value}", swap_id=swap_id)
        return record

    def _finish(self, record: SwapRecord, secret: bytes, deposit_txid: str, proof) -> SwapRecord:
        swap_id = record.swap_id
        try:
            counter_tx = self.registry.complete(swap_id, secret, proof, caller=self.identity)
        except SwapError as e:
            record.last_error = f"{e.kind}: {e}"
            self.store.save(record)
            raise

        record.status = SwapStatus.COMPLETED
        record.completed_at = self._now()
        record.deposit_tx_ref = deposit_txid
        record.counter_tx_ref = counter_tx
        record.secret_hex = secret.hex()
        record.last_error = None
        record = self.store.save(record)
        self.vault.discard(swap_id)

        log.info(f"Completed swap {swap_id[:18]}: deposit {deposit_txid[:16]}..., "
                 f"counter tx {counter_tx}")
        return record

    # =========================================================================
    # Timeout
    # =========================================================================

    def handle_timeout(self, swap_id: str) -> SwapRecord:
        """
        Refund an expired swap's order, or adopt the outcome the registry
        already reached.

        Raises:
            SwapNotFound: unknown swap id
            NotPending: swap already terminal locally
            LockNotExpired: swap has not expired yet
            ClaimOutstanding: we claimed the HTLC but the order is still pending
        """
        with self.store.lock(swap_id):
            record = self._require_active(swap_id)
            now = self._now()
            if now <= record.expires_at:
                raise LockNotExpired(f"Swap {swap_id} expires at {record.expires_at}", swap_id=swap_id)

            if record.claim_tx_ref is not None:
                order = self.registry.get_order(swap_id)
                if order is not None and order.status != OrderStatus.PENDING:
                    return self._reconcile(record, order)
                # The depositor's BTC is already ours; refunding the order would keep both sides
                log.error(f"Swap {swap_id[:18]} expired after claim {record.claim_tx_ref} "
                          f"without completing the order; refusing to refund")
                raise ClaimOutstanding(
                    f"Swap {swap_id} was claimed in {record.claim_tx_ref} but its order is still pending",
                    swap_id=swap_id, claim_tx_ref=record.claim_tx_ref,
                )

            try:
                refund_tx = self.registry.refund(swap_id, "Swap timeout", caller=self.identity)
            except NotPending:
                return self._reconcile(record, self.registry.get_order(swap_id))
            except UnknownSwap:
                log.warning(f"Swap {swap_id[:18]} has no registry order, marking expired")
                record.status = SwapStatus.EXPIRED
                record.last_error = "no registry order"
                self.vault.discard(swap_id)
                return self.store.save(record)

            record.status = SwapStatus.REFUNDED
            record.refunded_at = now
            record.refund_tx_ref = refund_tx
            record = self.store.save(record)
            self.vault.discard(swap_id)

        log.info(f"Refunded swap {swap_id[:18]} in {refund_tx}")
        return record

    def _reconcile(self, record: SwapRecord, order) -> SwapRecord:
        """Adopt a terminal registry outcome this coordinator did not submit."""
        swap_id = record.swap_id
        if order is not None and order.status == OrderStatus.COMPLETED:
            record.status = SwapStatus.COMPLETED
            record.completed_at = self._now()
            record.deposit_tx_ref = record.deposit_tx_ref or order.deposit_tx_ref
            if order.secret:
                record.secret_hex = order.secret.hex()
            log.info(f"Swap {swap_id[:18]} was completed on the registry by another party")
        else:
            record.status = SwapStatus.EXPIRED
            record.last_error = "refunded by another party"
            log.info(f"Swap {swap_id[:18]} was refunded on the registry by another party")
        record = self.store.save(record)
        self.vault.discard(swap_id)
        return record

    def sync(self, swap_id: str) -> SwapRecord:
        """Bring a local record in line with a terminal registry order."""
        with self.store.lock(swap_id):
            record = self.store.require(swap_id)
            if record.terminal:
                return record
            order = self.registry.get_order(swap_id)
            if order is None or order.status == OrderStatus.PENDING:
                return record
            return self._reconcile(record, order)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_status(self, swap_id: str) -> Dict[str, Any]:
        """Local record plus the registry's view of the order."""
        record = self.store.require(swap_id)
        status = {
            "swapId": swap_id,
            "status": record.status.value,
            "record": record.model_dump(by_alias=True, mode="json"),
            "expired": self._now() > record.expires_at,
            "order": None,
        }
        try:
            order = self.registry.get_order(swap_id)
            if order is not None:
                status["order"] = order.to_dict()
        except SwapError as e:
            status["orderError"] = str(e)
        return status

    def poll_events(self) -> List[OrderEvent]:
        """
        Fetch registry events since the last poll and reconcile local swaps
        that another party finished.
        """
        events = self.registry.events(self._event_cursor)
        if events:
            self._event_cursor = max(ev.index for ev in events) + 1

        for event in events:
            log.debug(f"Registry event {event.name} swap={event.swap_id[:18]}")
            if event.name not in (ORDER_COMPLETED, ORDER_REFUNDED):
                continue
            record = self.store.get(event.swap_id)
            if record is None or record.terminal:
                continue
            try:
                self.sync(event.swap_id)
            except SwapError as e:
                log.warning(f"Could not reconcile swap {event.swap_id[:18]}: {e}")
        return events

    def outstanding_claims(self) -> List[SwapRecord]:
        """Active swaps whose HTLC we claimed but whose order is not completed yet."""
        return [r for r in self.store.list_active() if r.claim_tx_ref and r.deposit_tx_ref]

    def history(self, identity: str) -> List[SwapRecord]:
        return self.store.list_by_party(identity)

    def stats(self) -> Dict[str, Any]:
        return self.store.stats()

    def cleanup(self, retention: int = DEFAULT_RETENTION) -> int:
        return self.store.purge_older_than(retention)


def build_coordinator(config, registry=None, chain=None) -> SwapCoordinator:
    """
    Wire a coordinator from a SwapperConfig.

    Args:
        config: SwapperConfig
        registry: override the contract-backed registry (e.g. an OrderRegistry)
        chain: override the UTXO chain reader
    """
    if chain is None:
        if config.btc_backend == "cli":
            from ..chains.btc import BTCClient, BTCConfig
            chain = BTCClient(BTCConfig(
                network=config.btc_network,
                rpc_host=config.btc_rpc_host,
                rpc_port=config.btc_rpc_port,
                rpc_user=config.btc_rpc_user,
                rpc_password=config.btc_rpc_password,
                cli_path=config.btc_cli_path,
                datadir=config.btc_datadir,
            ))
        elif config.btc_backend == "esplora":
            from ..chains.esplora import EsploraClient
            chain = EsploraClient(base_url=config.esplora_url, network=config.btc_network)
        else:
            raise InvalidParameters(f"Unknown btc_backend: {config.btc_backend}")

    builder = HTLCBuilder(config.btc_network, config.address_type, config.fee_policy)
    oracle = ChainProofOracle(chain, config.required_confirmations, builder=builder)

    identity = "coordinator"
    if registry is None:
        from ..htlc.evm import EVMOrderRegistry
        registry = EVMOrderRegistry(
            config.registry_address, config.evm_rpc_url, config.evm_chain_id,
            private_key=config.evm_private_key or None,
            max_lifetime=config.max_order_lifetime,
        )
        if config.evm_private_key:
            identity = registry.account.address

    store = PersistentStore(config.data_dir, config.backup_dir, config.max_backups)
    vault = SecretVault(config.secrets_dir)

    return SwapCoordinator(
        builder, oracle, registry, store, vault,
        identity=identity,
        claim_key=config.claim_key,
        claim_destination=config.claim_destination,
        required_confirmations=config.required_confirmations,
        default_lock_duration=config.default_lock_duration,
        timelock_gap=config.timelock_gap,
        claim_safety_margin=config.claim_safety_margin,
        min_lock_duration=config.monitor_interval,
    )
