"""
Minimal Bitcoin transaction model.

Serialization (legacy and segwit), parsing, BIP143 witness-v0 sighash and
legacy sighash. Enough to build and sign HTLC claim/refund spends and to read
secrets out of someone else's spend.
"""

import struct
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Union

from ..core import double_sha256

SIGHASH_ALL = 0x01

SEQUENCE_FINAL = 0xffffffff
SEQUENCE_LOCKTIME = 0xfffffffe   # enables nLockTime


def var_int(n: int) -> bytes:
    """Encode variable length integer."""
    if n < 0xfd:
        return bytes([n])
    elif n <= 0xffff:
        return bytes([0xfd]) + struct.pack('<H', n)
    elif n <= 0xffffffff:
        return bytes([0xfe]) + struct.pack('<I', n)
    else:
        return bytes([0xff]) + struct.pack('<Q', n)


def read_var_int(stream: BytesIO) -> int:
    prefix = _read(stream, 1)[0]
    if prefix < 0xfd:
        return prefix
    if prefix == 0xfd:
        return struct.unpack('<H', _read(stream, 2))[0]
    if prefix == 0xfe:
        return struct.unpack('<I', _read(stream, 4))[0]
    return struct.unpack('<Q', _read(stream, 8))[0]


def _read(stream: BytesIO, n: int) -> bytes:
    data = stream.read(n)
    if len(data) != n:
        raise ValueError("Unexpected end of transaction data")
    return data


@dataclass
class TxIn:
    txid: str                       # display (big-endian) hex
    vout: int
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: List[bytes] = field(default_factory=list)

    def outpoint(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack('<I', self.vout)


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack('<q', self.value) + var_int(len(self.script_pubkey)) + self.script_pubkey


@dataclass
class Transaction:
    version: int = 2
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        witness = include_witness and self.has_witness
        out = struct.pack('<i', self.version)
        if witness:
            out += b"\x00\x01"
        out += var_int(len(self.inputs))
        for txin in self.inputs:
            out += txin.outpoint()
            out += var_int(len(txin.script_sig)) + txin.script_sig
            out += struct.pack('<I', txin.sequence)
        out += var_int(len(self.outputs))
        for txout in self.outputs:
            out += txout.serialize()
        if witness:
            for txin in self.inputs:
                out += var_int(len(txin.witness))
                for item in txin.witness:
                    out += var_int(len(item)) + item
        out += struct.pack('<I', self.locktime)
        return out

    def hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return double_sha256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def vsize(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize())
        weight = base * 3 + total
        return (weight + 3) // 4

    # -------------------------------------------------------------------------
    # Signature hashes
    # -------------------------------------------------------------------------

    def witness_v0_sighash(self, index: int, script_code: bytes, value: int,
                           hashtype: int = SIGHASH_ALL) -> bytes:
        """
        BIP143 sighash for witness v0 (SIGHASH_ALL).

        https://github.com/bitcoin/bips/blob/master/bip-0143.mediawiki
        """
        if hashtype != SIGHASH_ALL:
            raise ValueError("Only SIGHASH_ALL is supported")
        txin = self.inputs[index]
        hash_prevouts = double_sha256(b"".join(i.outpoint() for i in self.inputs))
        hash_sequence = double_sha256(b"".join(struct.pack('<I', i.sequence) for i in self.inputs))
        hash_outputs = double_sha256(b"".join(o.serialize() for o in self.outputs))

        preimage = struct.pack('<i', self.version)
        preimage += hash_prevouts
        preimage += hash_sequence
        preimage += txin.outpoint()
        preimage += var_int(len(script_code)) + script_code
        preimage += struct.pack('<q', value)
        preimage += struct.pack('<I', txin.sequence)
        preimage += hash_outputs
        preimage += struct.pack('<I', self.locktime)
        preimage += struct.pack('<I', hashtype)
        return double_sha256(preimage)

    def legacy_sighash(self, index: int, script_code: bytes,
                       hashtype: int = SIGHASH_ALL) -> bytes:
        """Pre-segwit sighash (SIGHASH_ALL), used for P2SH spends."""
        if hashtype != SIGHASH_ALL:
            raise ValueError("Only SIGHASH_ALL is supported")
        stripped = Transaction(
            version=self.version,
            inputs=[
                TxIn(i.txid, i.vout, script_code if n == index else b"", i.sequence)
                for n, i in enumerate(self.inputs)
            ],
            outputs=list(self.outputs),
            locktime=self.locktime,
        )
        return double_sha256(stripped.serialize(include_witness=False) + struct.pack('<I', hashtype))

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    @classmethod
    def parse(cls, raw: Union[bytes, str]) -> "Transaction":
        """Deserialize a transaction (with or without witness data)."""
        if isinstance(raw, str):
            raw = bytes.fromhex(raw)
        stream = BytesIO(raw)
        version = struct.unpack('<i', _read(stream, 4))[0]

        segwit = False
        marker = _read(stream, 1)[0]
        if marker == 0x00:
            flag = _read(stream, 1)[0]
            if flag != 0x01:
                raise ValueError("Invalid segwit flag")
            segwit = True
            n_in = read_var_int(stream)
        else:
            stream.seek(stream.tell() - 1)
            n_in = read_var_int(stream)

        inputs = []
        for _ in range(n_in):
            txid = _read(stream, 32)[::-1].hex()
            vout = struct.unpack('<I', _read(stream, 4))[0]
            script_sig = _read(stream, read_var_int(stream))
            sequence = struct.unpack('<I', _read(stream, 4))[0]
            inputs.append(TxIn(txid, vout, script_sig, sequence))

        outputs = []
        for _ in range(read_var_int(stream)):
            value = struct.unpack('<q', _read(stream, 8))[0]
            outputs.append(TxOut(value, _read(stream, read_var_int(stream))))

        if segwit:
            for txin in inputs:
                txin.witness = [_read(stream, read_var_int(stream))
                                for _ in range(read_var_int(stream))]

        locktime = struct.unpack('<I', _read(stream, 4))[0]
        if stream.read(1):
            raise ValueError("Trailing bytes after transaction")
        return cls(version, inputs, outputs, locktime)
