"""
BSV transaction primitives and the BIP-143 / FORKID signature hash.
Reference: https://github.com/bitcoin/bips/blob/master/bip-0143.mediawiki
           (BSV signs every input with SIGHASH_FORKID, fork id 0)
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import base58
from Crypto.Hash import RIPEMD160

from vault_errors import ValidationError


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    """Double SHA-256 (txids, sighash digests, base58 checksums)."""
    return sha256(sha256(data))


def hash160(data: bytes) -> bytes:
    """RIPEMD-160(SHA-256(data)).

    RIPEMD-160 comes from pycryptodome; OpenSSL 3 builds of ``hashlib``
    no longer ship it.
    """
    return RIPEMD160.new(sha256(data)).digest()


def iterated_sha256(data: bytes, iterations: int) -> bytes:
    """Apply SHA-256 ``iterations`` times (0 returns ``data`` unchanged)."""
    result = bytes(data)
    for _ in range(iterations):
        result = sha256(result)
    return result


# ---------------------------------------------------------------------------
# Wire encodings
# ---------------------------------------------------------------------------

def compact_size(n: int) -> bytes:
    """Bitcoin CompactSize encoding."""
    if n < 0xfd:
        return struct.pack("<B", n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack("<H", n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack("<I", n)
    else:
        return b'\xff' + struct.pack("<Q", n)


def encode_script_num(n: int) -> bytes:
    """Minimal little-endian sign-magnitude encoding (CScriptNum)."""
    if n == 0:
        return b""
    negative = n < 0
    magnitude = abs(n)
    out = bytearray()
    while magnitude:
        out.append(magnitude & 0xff)
        magnitude >>= 8
    if out[-1] & 0x80:
        out.append(0x80 if negative else 0x00)
    elif negative:
        out[-1] |= 0x80
    return bytes(out)


def decode_script_num(data: bytes) -> int:
    """Inverse of :func:`encode_script_num` (accepts non-minimal input)."""
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def push_data(data: bytes) -> bytes:
    """Minimal data push: OP_0 / OP_1..OP_16 / OP_1NEGATE / direct / PUSHDATA1,2,4."""
    n = len(data)
    if n == 0:
        return b'\x00'
    if n == 1 and 1 <= data[0] <= 16:
        return bytes([0x50 + data[0]])
    if n == 1 and data[0] == 0x81:
        return b'\x4f'
    if n <= 75:
        return bytes([n]) + data
    elif n <= 0xff:
        return bytes([0x4c, n]) + data
    elif n <= 0xffff:
        return b'\x4d' + struct.pack("<H", n) + data
    else:
        return b'\x4e' + struct.pack("<I", n) + data


def push_int(n: int) -> bytes:
    """Push a script number using the small-integer opcodes where possible."""
    if n == 0:
        return b'\x00'
    if 1 <= n <= 16:
        return bytes([0x50 + n])
    if n == -1:
        return b'\x4f'
    return push_data(encode_script_num(n))


# ---------------------------------------------------------------------------
# Addresses (base58check P2PKH only; bare scripts need no address form)
# ---------------------------------------------------------------------------

P2PKH_VERSIONS = {"mainnet": 0x00, "testnet": 0x6f}


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20> OP_EQUALVERIFY OP_CHECKSIG."""
    if len(pubkey_hash) != 20:
        raise ValidationError(
            f"P2PKH needs a 20-byte key hash, got {len(pubkey_hash)} bytes"
        )
    return b'\x76\xa9\x14' + pubkey_hash + b'\x88\xac'


def p2pkh_address(pubkey_hash: bytes, network: str = "mainnet") -> str:
    version = P2PKH_VERSIONS.get(network)
    if version is None:
        raise ValidationError(f"Unknown network: {network}")
    return base58.b58encode_check(bytes([version]) + pubkey_hash).decode()


def decode_p2pkh_address(address: str) -> Dict[str, Any]:
    """Decode and checksum-verify a P2PKH address.

    Returns ``{"network", "pubkey_hash"}``; raises ``ValidationError`` on a
    bad character, bad checksum, wrong length or non-P2PKH version byte.
    """
    try:
        payload = base58.b58decode_check(address)
    except ValueError as exc:
        raise ValidationError(f"Invalid address {address!r}: {exc}") from exc
    if len(payload) != 21:
        raise ValidationError(
            f"Invalid address {address!r}: payload is {len(payload)} bytes"
        )
    for network, version in P2PKH_VERSIONS.items():
        if payload[0] == version:
            return {"network": network, "pubkey_hash": payload[1:]}
    raise ValidationError(
        f"Destination must be a P2PKH address, got version 0x{payload[0]:02x}"
    )


def address_to_script(address: str) -> bytes:
    return p2pkh_script(decode_p2pkh_address(address)["pubkey_hash"])


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_LOCKTIME = 0xFFFFFFFE   # any non-final value enables nLockTime


@dataclass(frozen=True)
class Utxo:
    """An unspent output as reported by an indexer.

    ``tx_hash`` is the 32-byte txid in display (big-endian) order.
    """
    tx_hash: bytes
    tx_pos: int
    value: int
    height: int = 0

    def __post_init__(self) -> None:
        if len(self.tx_hash) != 32:
            raise ValidationError("tx_hash must be exactly 32 bytes")
        if self.value < 0:
            raise ValidationError("value cannot be negative")
        if self.tx_pos < 0:
            raise ValidationError("tx_pos cannot be negative")

    @property
    def confirmed(self) -> bool:
        return self.height > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash.hex(),
            "tx_pos": self.tx_pos,
            "value": self.value,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Utxo":
        """Accept indexer keys (tx_hash/tx_pos/height) or txHash/outputIndex/confirmationHeight."""
        try:
            tx_hash = d["tx_hash"] if "tx_hash" in d else d["txHash"]
            tx_pos = d["tx_pos"] if "tx_pos" in d else d["outputIndex"]
            height = d.get("height", d.get("confirmationHeight", 0)) or 0
            return cls(
                tx_hash=bytes.fromhex(tx_hash),
                tx_pos=int(tx_pos),
                value=int(d["value"]),
                height=int(height),
            )
        except ValidationError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed UTXO {d!r}: {exc}") from exc


@dataclass
class TxInput:
    txid: bytes                  # display order, reversed on the wire
    vout: int
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL

    @property
    def outpoint(self) -> bytes:
        return self.txid[::-1] + struct.pack("<I", self.vout)

    def serialize(self) -> bytes:
        return (
            self.outpoint
            + compact_size(len(self.script_sig)) + self.script_sig
            + struct.pack("<I", self.sequence)
        )


@dataclass
class TxOutput:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (
            struct.pack("<Q", self.value)
            + compact_size(len(self.script_pubkey)) + self.script_pubkey
        )


@dataclass
class RawTransaction:
    """Legacy (non-segwit) transaction as relayed on BSV."""
    version: int = 1
    locktime: int = 0
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)

    def serialize(self) -> bytes:
        raw = struct.pack("<I", self.version)
        raw += compact_size(len(self.inputs))
        raw += b"".join(inp.serialize() for inp in self.inputs)
        raw += compact_size(len(self.outputs))
        raw += b"".join(out.serialize() for out in self.outputs)
        raw += struct.pack("<I", self.locktime)
        return raw

    @property
    def txid(self) -> str:
        return hash256(self.serialize())[::-1].hex()


def serialize_outputs(outputs: Sequence[TxOutput]) -> bytes:
    return b"".join(out.serialize() for out in outputs)


def hash_outputs(outputs: Sequence[TxOutput]) -> bytes:
    """HASH256 of the serialized output list (BIP-143 ``hashOutputs``)."""
    return hash256(serialize_outputs(outputs))


# ---------------------------------------------------------------------------
# BIP-143 / FORKID sighash
# ---------------------------------------------------------------------------

class ForkIdSighash:
    """BIP-143 style signature hash with the BSV FORKID flag."""

    SIGHASH_ALL = 0x01
    SIGHASH_NONE = 0x02
    SIGHASH_SINGLE = 0x03
    SIGHASH_FORKID = 0x40
    SIGHASH_ANYONECANPAY = 0x80
    FORK_ID = 0

    DEFAULT = SIGHASH_ALL | SIGHASH_FORKID   # 0x41

    def __init__(self, tx: RawTransaction, input_index: int):
        if not 0 <= input_index < len(tx.inputs):
            raise ValidationError(
                f"input_index {input_index} out of range "
                f"({len(tx.inputs)} inputs)"
            )
        self.tx = tx
        self.input_index = input_index

    def preimage(
        self,
        script_code: bytes,
        value: int,
        hash_type: int = DEFAULT,
    ) -> bytes:
        """
        Build the signature-hash preimage for the input being signed.

        Args:
            script_code: locking script of the output being spent
            value: satoshi value of the output being spent
            hash_type: SIGHASH flags (FORKID is always set)

        Returns:
            The raw preimage; :meth:`compute` hashes it.
        """
        hash_type |= self.SIGHASH_FORKID
        base_type = hash_type & 0x1f
        anyone_can_pay = bool(hash_type & self.SIGHASH_ANYONECANPAY)
        inp = self.tx.inputs[self.input_index]

        msg = bytearray()

        # 1. nVersion
        msg += struct.pack("<I", self.tx.version)

        # 2. hashPrevouts
        if not anyone_can_pay:
            msg += self._hash_prevouts()
        else:
            msg += b"\x00" * 32

        # 3. hashSequence
        if (not anyone_can_pay
                and base_type not in (self.SIGHASH_NONE, self.SIGHASH_SINGLE)):
            msg += self._hash_sequence()
        else:
            msg += b"\x00" * 32

        # 4. outpoint
        msg += inp.outpoint

        # 5. scriptCode
        msg += compact_size(len(script_code)) + script_code

        # 6. value of the spent output
        msg += struct.pack("<Q", value)

        # 7. nSequence
        msg += struct.pack("<I", inp.sequence)

        # 8. hashOutputs
        if base_type not in (self.SIGHASH_NONE, self.SIGHASH_SINGLE):
            msg += hash_outputs(self.tx.outputs)
        elif (base_type == self.SIGHASH_SINGLE
                and self.input_index < len(self.tx.outputs)):
            msg += hash256(self.tx.outputs[self.input_index].serialize())
        else:
            msg += b"\x00" * 32

        # 9. nLockTime
        msg += struct.pack("<I", self.tx.locktime)

        # 10. sighash type with fork id in the upper bytes
        msg += struct.pack("<I", (self.FORK_ID << 8) | hash_type)

        return bytes(msg)

    def compute(
        self,
        script_code: bytes,
        value: int,
        hash_type: int = DEFAULT,
    ) -> bytes:
        """HASH256 of :meth:`preimage` -- the digest ECDSA signs."""
        return hash256(self.preimage(script_code, value, hash_type))

    def _hash_prevouts(self) -> bytes:
        return hash256(b"".join(inp.outpoint for inp in self.tx.inputs))

    def _hash_sequence(self) -> bytes:
        return hash256(b"".join(
            struct.pack("<I", inp.sequence) for inp in self.tx.inputs
        ))
