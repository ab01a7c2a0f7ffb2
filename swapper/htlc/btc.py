"""
Bitcoin HTLC builder for swapper.

Creates P2WSH (default) or P2SH HTLCs compatible with BIP-199.

HTLC Script Structure:
    OP_IF
        OP_SHA256 <secret_hash> OP_EQUALVERIFY
        <claim_pubkey> OP_CHECKSIG
    OP_ELSE
        <lock_time> OP_CHECKLOCKTIMEVERIFY OP_DROP
        <refund_pubkey> OP_CHECKSIG
    OP_ENDIF

To claim (with secret):
    <signature> <secret> OP_TRUE

To refund (after lock_time):
    <signature> OP_FALSE
"""

import hashlib
import logging
from typing import List, Optional, Sequence, Tuple, Union

import base58
from ecdsa import SECP256k1, SigningKey
from ecdsa.util import sigencode_der_canonize

from ..core import (
    FeePolicy, HTLCLock, SignedTransaction, Utxo, sha256, to_bytes, verify_preimage,
)
from ..errors import InsufficientFunds, InvalidParameters, InvalidSecret
from .script import (
    OP_0, OP_1, OP_CHECKLOCKTIMEVERIFY, OP_CHECKSIG, OP_DROP, OP_ELSE, OP_ENDIF,
    OP_EQUALVERIFY, OP_IF, OP_SHA256, address_to_script_pubkey, iter_pushes,
    p2sh_script_pubkey, p2wsh_script_pubkey, push_data, push_int, script_to_address,
)
from .tx import SEQUENCE_FINAL, SEQUENCE_LOCKTIME, SIGHASH_ALL, Transaction, TxIn, TxOut

log = logging.getLogger(__name__)

# DER signature upper bound + sighash byte, used for size estimates
DUMMY_SIGNATURE = b"\x30" + b"\x00" * 71 + bytes([SIGHASH_ALL])


# =============================================================================
# Keys
# =============================================================================

def decode_wif(wif: str) -> Tuple[bytes, bool]:
    """Decode WIF to (private key bytes, compressed)."""
    decoded = base58.b58decode_check(wif)

    if decoded[0] in (0x80, 0xef):  # Mainnet or Testnet
        if len(decoded) == 34 and decoded[-1] == 0x01:
            return decoded[1:33], True
        if len(decoded) == 33:
            return decoded[1:33], False
    raise ValueError(f"Invalid WIF prefix or length: {decoded[0]}")


def load_private_key(key: Union[str, bytes]) -> Tuple[bytes, bool]:
    """Accept a WIF string, 64-char hex or raw 32 bytes."""
    if isinstance(key, (bytes, bytearray)):
        if len(key) != 32:
            raise InvalidParameters("Private key must be 32 bytes")
        return bytes(key), True
    try:
        if len(key.removeprefix("0x")) == 64:
            return to_bytes(key), True
        return decode_wif(key)
    except ValueError as e:
        raise InvalidParameters(f"Invalid private key: {e}")


def privkey_to_pubkey(privkey: bytes, compressed: bool = True) -> bytes:
    """Derive SEC-encoded public key from private key."""
    vk = SigningKey.from_string(privkey, curve=SECP256k1).get_verifying_key()
    return vk.to_string("compressed" if compressed else "uncompressed")


def sign_hash(privkey: bytes, sighash: bytes) -> bytes:
    """Sign a digest (RFC6979 nonce, low-S DER) and append SIGHASH_ALL."""
    sk = SigningKey.from_string(privkey, curve=SECP256k1)
    signature = sk.sign_digest_deterministic(
        sighash, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
    )
    return signature + bytes([SIGHASH_ALL])


def _check_pubkey(name: str, pubkey: bytes):
    if len(pubkey) == 33 and pubkey[0] in (0x02, 0x03):
        return
    if len(pubkey) == 65 and pubkey[0] == 0x04:
        return
    raise InvalidParameters(f"{name} must be a SEC-encoded public key")


class HTLCBuilder:
    """
    Bitcoin HTLC builder.

    Pure with respect to swap state: builds scripts, addresses and signed
    spends. Broadcasting is the chain client's job.
    """

    def __init__(self, network: str = "testnet", address_type: str = "p2wsh",
                 fee_policy: Optional[FeePolicy] = None):
        if address_type not in ("p2wsh", "p2sh"):
            raise InvalidParameters(f"Unsupported address type: {address_type}")
        self.network = network
        self.address_type = address_type
        self.fee_policy = fee_policy or FeePolicy()

    def build_script(self, secret_hash: Union[bytes, str], claim_pubkey: Union[bytes, str],
                     refund_pubkey: Union[bytes, str], lock_time: int) -> bytes:
        """
        Create HTLC redeem script.

        Args:
            secret_hash: SHA256 hash of the secret (32 bytes)
            claim_pubkey: Pubkey for the claim path
            refund_pubkey: Pubkey for the refund path
            lock_time: Absolute block height or unix timestamp

        Returns:
            Redeem script bytes
        """
        try:
            secret_hash = to_bytes(secret_hash)
            claim_pubkey = to_bytes(claim_pubkey)
            refund_pubkey = to_bytes(refund_pubkey)
        except ValueError as e:
            raise InvalidParameters(f"Malformed hex input: {e}")

        if len(secret_hash) != 32:
            raise InvalidParameters("secret_hash must be 32 bytes")
        _check_pubkey("claim_pubkey", claim_pubkey)
        _check_pubkey("refund_pubkey", refund_pubkey)
        if not 0 < lock_time < 2 ** 32:
            raise InvalidParameters(f"lock_time out of range: {lock_time}")

        script = bytes([OP_IF, OP_SHA256])
        script += push_data(secret_hash)
        script += bytes([OP_EQUALVERIFY])
        script += push_data(claim_pubkey)
        script += bytes([OP_CHECKSIG, OP_ELSE])
        script += push_int(lock_time)
        script += bytes([OP_CHECKLOCKTIMEVERIFY, OP_DROP])
        script += push_data(refund_pubkey)
        script += bytes([OP_CHECKSIG, OP_ENDIF])
        return script

    def derive_address(self, script: bytes) -> str:
        """Deposit address for a script (bech32 P2WSH or base58 P2SH)."""
        return script_to_address(script, self.network, self.address_type)

    def script_pubkey(self, script: bytes) -> bytes:
        if self.address_type == "p2wsh":
            return p2wsh_script_pubkey(script)
        return p2sh_script_pubkey(script)

    def build_lock(self, secret_hash: Union[bytes, str], claim_pubkey: Union[bytes, str],
                   refund_pubkey: Union[bytes, str], lock_time: int, amount: int) -> HTLCLock:
        if amount <= 0:
            raise InvalidParameters(f"HTLC amount must be positive, got {amount}")
        script = self.build_script(secret_hash, claim_pubkey, refund_pubkey, lock_time)
        address = self.derive_address(script)
        log.info(f"Built HTLC {address}, lock_time={lock_time}, amount={amount} sats")
        return HTLCLock(
            script=script,
            address=address,
            amount=amount,
            lock_time=lock_time,
            secret_hash=to_bytes(secret_hash),
            claim_pubkey=to_bytes(claim_pubkey),
            refund_pubkey=to_bytes(refund_pubkey),
            address_type=self.address_type,
            network=self.network,
        )

    def lock_from_script(self, script: Union[bytes, str], amount: int) -> HTLCLock:
        """Rebuild an HTLCLock from a persisted script. Rejects anything else."""
        script = to_bytes(script)
        try:
            pushes = iter_pushes(script)
        except ValueError as e:
            raise InvalidParameters(f"Unparseable HTLC script: {e}")
        if len(pushes) != 4:
            raise InvalidParameters("Script is not a single-secret HTLC")
        secret_hash, claim_pubkey, raw_lock_time, refund_pubkey = pushes
        lock_time = int.from_bytes(raw_lock_time, "little")
        if raw_lock_time and raw_lock_time[-1] & 0x80:
            raise InvalidParameters("Negative lock_time in script")
        lock = self.build_lock(secret_hash, claim_pubkey, refund_pubkey, lock_time, amount)
        if lock.script != script:
            raise InvalidParameters("Script does not match the HTLC template")
        return lock

    def lock_outputs(self, lock: HTLCLock, raw_tx: Union[str, bytes, Transaction]) -> List[Utxo]:
        """Outputs of a funding transaction that pay to the lock."""
        tx = raw_tx if isinstance(raw_tx, Transaction) else Transaction.parse(raw_tx)
        spk = self.script_pubkey(lock.script)
        txid = tx.txid
        return [Utxo(txid, n, out.value) for n, out in enumerate(tx.outputs)
                if out.script_pubkey == spk]

    # =========================================================================
    # Spends
    # =========================================================================

    def build_claim_transaction(self, lock: HTLCLock, secret: Union[bytes, str],
                                claim_key: Union[str, bytes], destination: str,
                                inputs: Sequence[Utxo]) -> SignedTransaction:
        """
        Claim HTLC outputs with the secret (branch A).

        Raises:
            InvalidSecret: sha256(secret) does not match the lock
            InsufficientFunds: nothing left after the fee
        """
        secret = to_bytes(secret)
        if not verify_preimage(secret, lock.secret_hash):
            raise InvalidSecret("Secret does not match HTLC hash")

        signed = self._spend(lock, claim_key, lock.claim_pubkey, destination, inputs,
                             branch=[secret, b"\x01"], locktime=0, sequence=SEQUENCE_FINAL)
        log.info(f"Built claim tx {signed.txid} for {lock.address}, fee={signed.fee}")
        return signed

    def build_refund_transaction(self, lock: HTLCLock, refund_key: Union[str, bytes],
                                 destination: str, inputs: Sequence[Utxo]) -> SignedTransaction:
        """
        Refund HTLC outputs after lock_time (branch B).

        nLockTime is set to lock.lock_time so the chain rejects the
        transaction until the lock expires.
        """
        signed = self._spend(lock, refund_key, lock.refund_pubkey, destination, inputs,
                             branch=[b""], locktime=lock.lock_time, sequence=SEQUENCE_LOCKTIME)
        log.info(f"Built refund tx {signed.txid} for {lock.address}, locktime={lock.lock_time}")
        return signed

    def _spend(self, lock: HTLCLock, key: Union[str, bytes], expected_pubkey: bytes,
               destination: str, inputs: Sequence[Utxo], branch: List[bytes],
               locktime: int, sequence: int) -> SignedTransaction:
        if not inputs:
            raise InvalidParameters("No HTLC inputs to spend")

        privkey, compressed = load_private_key(key)
        if privkey_to_pubkey(privkey, compressed) != expected_pubkey:
            raise InvalidParameters("Signing key does not match the HTLC pubkey for this branch")

        tx = Transaction(
            version=2,
            inputs=[TxIn(u.txid, u.vout, sequence=sequence) for u in inputs],
            outputs=[TxOut(0, address_to_script_pubkey(destination, self.network))],
            locktime=locktime,
        )

        # Size with a worst-case signature, then fee
        for txin in tx.inputs:
            self._attach(txin, lock.script, DUMMY_SIGNATURE, branch)
        fee = self.fee_policy.fee_for(tx.vsize)

        total = sum(u.value for u in inputs)
        output_value = total - fee
        if output_value <= 0:
            raise InsufficientFunds(f"Inputs {total} sats do not cover fee {fee} sats")
        if output_value < self.fee_policy.dust_threshold:
            raise InsufficientFunds(f"Output amount {output_value} below dust threshold")
        tx.outputs[0].value = output_value

        for index, utxo in enumerate(inputs):
            if self.address_type == "p2wsh":
                sighash = tx.witness_v0_sighash(index, lock.script, utxo.value)
            else:
                sighash = tx.legacy_sighash(index, lock.script)
            self._attach(tx.inputs[index], lock.script, sign_hash(privkey, sighash), branch)

        return SignedTransaction(
            hex=tx.hex(),
            txid=tx.txid,
            fee=fee,
            output_value=output_value,
            locktime=locktime,
            inputs=tuple(inputs),
        )

    def _attach(self, txin: TxIn, script: bytes, signature: bytes, branch: List[bytes]):
        """Place signature, branch selector and script in witness or scriptSig."""
        if self.address_type == "p2wsh":
            txin.witness = [signature, *branch, script]
            txin.script_sig = b""
            return
        script_sig = push_data(signature)
        for item in branch:
            if item == b"":
                script_sig += bytes([OP_0])
            elif item == b"\x01":
                script_sig += bytes([OP_1])
            else:
                script_sig += push_data(item)
        txin.script_sig = script_sig + push_data(script)

    # =========================================================================
    # Secret discovery
    # =========================================================================

    def extract_revealed_secret(self, spending_tx: Union[str, bytes, Transaction],
                                expected_hash: Union[bytes, str]) -> Optional[bytes]:
        """
        Find the secret in a transaction that spent the claim branch.

        Scans witness items and scriptSig pushes of every input and returns
        the first 32-byte item whose SHA256 equals expected_hash.
        """
        expected_hash = to_bytes(expected_hash)
        tx = spending_tx if isinstance(spending_tx, Transaction) else Transaction.parse(spending_tx)

        for txin in tx.inputs:
            candidates = list(txin.witness)
            try:
                candidates += iter_pushes(txin.script_sig)
            except ValueError:
                log.warning(f"Unparseable scriptSig in {tx.txid}, scanning witness only")
            for item in candidates:
                if len(item) == 32 and sha256(item) == expected_hash:
                    return item
        return None
