"""
Bitcoin script and address encoding.

Opcodes, minimal pushes, bech32/bech32m segwit addresses and base58check
legacy addresses. Only what the HTLC builder needs.
"""

import struct
from typing import List, Tuple

import base58

from ..core import hash160, sha256
from ..errors import InvalidParameters


# Bitcoin Script opcodes
OP_0 = 0x00
OP_FALSE = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_1NEGATE = 0x4f
OP_TRUE = 0x51
OP_1 = 0x51
OP_16 = 0x60
OP_IF = 0x63
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_DROP = 0x75
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_SHA256 = 0xa8
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac
OP_CHECKLOCKTIMEVERIFY = 0xb1

# Network parameters: bech32 hrp, p2pkh version, p2sh version
NETWORKS = {
    "mainnet": ("bc", 0x00, 0x05),
    "testnet": ("tb", 0x6f, 0xc4),
    "signet": ("tb", 0x6f, 0xc4),
    "regtest": ("bcrt", 0x6f, 0xc4),
}


def network_params(network: str) -> Tuple[str, int, int]:
    try:
        return NETWORKS[network]
    except KeyError:
        raise InvalidParameters(f"Unknown network: {network}")


def push_data(data: bytes) -> bytes:
    """Create push data opcode for Bitcoin script."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    elif length <= 0xff:
        return bytes([OP_PUSHDATA1, length]) + data
    elif length <= 0xffff:
        return bytes([OP_PUSHDATA2]) + struct.pack('<H', length) + data
    else:
        return bytes([OP_PUSHDATA4]) + struct.pack('<I', length) + data


def push_int(n: int) -> bytes:
    """Push integer to script (minimal CScriptNum encoding)."""
    if n == 0:
        return bytes([OP_0])
    elif 1 <= n <= 16:
        return bytes([0x50 + n])  # OP_1 through OP_16
    negative = n < 0
    abs_n = abs(n)
    result = []
    while abs_n:
        result.append(abs_n & 0xff)
        abs_n >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return push_data(bytes(result))


def iter_pushes(script: bytes) -> List[bytes]:
    """
    Return every data push in a script, in order.

    OP_0 yields b"" and OP_1..OP_16 are skipped. Raises ValueError on a
    truncated push.
    """
    items = []
    i = 0
    while i < len(script):
        op = script[i]
        i += 1
        if op == OP_0:
            items.append(b"")
            continue
        if op < OP_PUSHDATA1:
            size = op
        elif op in (OP_PUSHDATA1, OP_PUSHDATA2, OP_PUSHDATA4):
            width = {OP_PUSHDATA1: 1, OP_PUSHDATA2: 2, OP_PUSHDATA4: 4}[op]
            if i + width > len(script):
                raise ValueError("Truncated push length")
            size = int.from_bytes(script[i:i + width], "little")
            i += width
        else:
            continue
        if i + size > len(script):
            raise ValueError("Truncated script push")
        items.append(script[i:i + size])
        i += size
    return items


# =============================================================================
# Bech32 / Bech32m (BIP173, BIP350)
# =============================================================================

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1
BECH32M_CONST = 0x2bc830a3


def _polymod(values) -> int:
    gen = [0x3b6a57b2, 0x26508e6d, 0x1ea119fa, 0x3d4233dd, 0x2a1462b3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = ((chk & 0x1ffffff) << 5) ^ v
        for i in range(5):
            chk ^= gen[i] if ((b >> i) & 1) else 0
    return chk


def _hrp_expand(hrp: str) -> List[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _convertbits(data, frombits: int, tobits: int, pad: bool = True) -> List[int]:
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    for value in data:
        if value < 0 or (value >> frombits):
            raise ValueError("Invalid data for base conversion")
        acc = (acc << frombits) | value
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise ValueError("Invalid padding")
    return ret


def encode_segwit_address(hrp: str, version: int, program: bytes) -> str:
    """Encode a witness program as bech32 (v0) or bech32m (v1+)."""
    const = BECH32_CONST if version == 0 else BECH32M_CONST
    data = [version] + _convertbits(program, 8, 5)
    values = _hrp_expand(hrp) + data
    polymod = _polymod(values + [0] * 6) ^ const
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(CHARSET[d] for d in data + checksum)


def decode_segwit_address(hrp: str, address: str) -> Tuple[int, bytes]:
    """
    Decode a segwit address.

    Returns:
        (witness_version, witness_program)
    """
    if address.lower() != address and address.upper() != address:
        raise ValueError("Mixed case address")
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address) or len(address) > 90:
        raise ValueError("Invalid bech32 layout")
    if address[:pos] != hrp:
        raise ValueError(f"Wrong hrp: expected {hrp}")
    try:
        data = [CHARSET.index(c) for c in address[pos + 1:]]
    except ValueError:
        raise ValueError("Invalid bech32 character")
    const = _polymod(_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        raise ValueError("Invalid bech32 checksum")
    version = data[0]
    program = bytes(_convertbits(data[1:-6], 5, 8, pad=False))
    if version > 16 or not 2 <= len(program) <= 40:
        raise ValueError("Invalid witness program")
    if version == 0 and len(program) not in (20, 32):
        raise ValueError("Invalid v0 witness program length")
    if (version == 0) != (const == BECH32_CONST):
        raise ValueError("Checksum variant does not match witness version")
    return version, program


# =============================================================================
# Addresses <-> scriptPubKey
# =============================================================================

def p2wsh_script_pubkey(script: bytes) -> bytes:
    """OP_0 <SHA256(witnessScript)>."""
    return bytes([OP_0]) + push_data(sha256(script))


def p2sh_script_pubkey(script: bytes) -> bytes:
    """OP_HASH160 <HASH160(redeemScript)> OP_EQUAL."""
    return bytes([OP_HASH160]) + push_data(hash160(script)) + bytes([OP_EQUAL])


def script_to_address(script: bytes, network: str, address_type: str = "p2wsh") -> str:
    """Hash-based address for a redeem/witness script."""
    hrp, _, p2sh_version = network_params(network)
    if address_type == "p2wsh":
        return encode_segwit_address(hrp, 0, sha256(script))
    if address_type == "p2sh":
        return base58.b58encode_check(bytes([p2sh_version]) + hash160(script)).decode()
    raise InvalidParameters(f"Unsupported address type: {address_type}")


def address_to_script_pubkey(address: str, network: str) -> bytes:
    """
    Decode a destination address to its scriptPubKey.

    Supports P2PKH, P2SH, P2WPKH, P2WSH and v1+ segwit outputs.
    """
    hrp, p2pkh_version, p2sh_version = network_params(network)

    if address.lower().startswith(hrp + "1"):
        try:
            version, program = decode_segwit_address(hrp, address)
        except ValueError as e:
            raise InvalidParameters(f"Malformed address {address}: {e}")
        opcode = OP_0 if version == 0 else OP_1 + version - 1
        return bytes([opcode]) + push_data(program)

    try:
        payload = base58.b58decode_check(address)
    except ValueError as e:
        raise InvalidParameters(f"Malformed address {address}: {e}")
    if len(payload) != 21:
        raise InvalidParameters(f"Malformed address {address}: bad payload length")

    version, digest = payload[0], payload[1:]
    if version == p2pkh_version:
        return (bytes([OP_DUP, OP_HASH160]) + push_data(digest)
                + bytes([OP_EQUALVERIFY, OP_CHECKSIG]))
    if version == p2sh_version:
        return bytes([OP_HASH160]) + push_data(digest) + bytes([OP_EQUAL])
    raise InvalidParameters(f"Address {address} is not valid on {network}")
