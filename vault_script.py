"""
Locking / unlocking script synthesis for quantum vaults.

Scripts are assembled from typed instructions (``Op``, ``PushData``,
``PushInt``) by a ``ScriptBuilder`` and serialized once at the end, so a
raw push opcode or an unbalanced IF/ELSE/ENDIF is rejected while building
instead of producing an output nobody can ever spend.

Locking scripts (all bare scripts, used directly as the output script):

    standard   OP_SHA256 <pkh> OP_EQUAL
    timelock   <t> OP_CHECKLOCKTIMEVERIFY OP_DROP  + standard
    covenant   [timelock guard] <pubkey> OP_CHECKSIGVERIFY
               OP_SIZE <1024> OP_EQUALVERIFY OP_SHA256 <pkh> OP_EQUAL
    wots16     [timelock guard] [<pubkey> OP_CHECKSIGVERIFY OP_DROP]
               68 x chunk verifier

Chunk verifier, stack ``[... rem_i sig_i]`` with sig_i on top::

    OP_SWAP                                   sig rem
    OP_DUP OP_0 OP_16 OP_WITHIN OP_VERIFY     0 <= rem < 16
    OP_DUP OP_2 OP_MOD       OP_IF SWAP SHA256 x1 SWAP OP_ENDIF
    OP_DUP OP_2 OP_DIV OP_2 OP_MOD OP_IF ... x2 ... OP_ENDIF
    OP_DUP OP_4 OP_DIV OP_2 OP_MOD OP_IF ... x4 ... OP_ENDIF
    OP_DUP OP_8 OP_DIV OP_2 OP_MOD OP_IF ... x8 ... OP_ENDIF
    OP_DROP <commitment_i> OP_EQUALVERIFY     (OP_EQUAL on the last chunk)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import List, Mapping, Optional, Sequence, Union

from bitcoin_protocol import push_data, push_int
from vault_errors import ValidationError
from wots import WOTS16_CHUNKS, WOTS16Signature


# ============================================================
# OPCODE TABLE
# ============================================================

class Opcode(IntEnum):
    OP_0 = 0x00
    OP_PUSHDATA1 = 0x4c
    OP_PUSHDATA2 = 0x4d
    OP_PUSHDATA4 = 0x4e
    OP_1NEGATE = 0x4f
    OP_1 = 0x51
    OP_2 = 0x52
    OP_3 = 0x53
    OP_4 = 0x54
    OP_5 = 0x55
    OP_6 = 0x56
    OP_7 = 0x57
    OP_8 = 0x58
    OP_9 = 0x59
    OP_10 = 0x5a
    OP_11 = 0x5b
    OP_12 = 0x5c
    OP_13 = 0x5d
    OP_14 = 0x5e
    OP_15 = 0x5f
    OP_16 = 0x60

    OP_NOP = 0x61
    OP_IF = 0x63
    OP_NOTIF = 0x64
    OP_ELSE = 0x67
    OP_ENDIF = 0x68
    OP_VERIFY = 0x69
    OP_RETURN = 0x6a

    OP_TOALTSTACK = 0x6b
    OP_FROMALTSTACK = 0x6c
    OP_2DROP = 0x6d
    OP_2DUP = 0x6e
    OP_3DUP = 0x6f
    OP_2OVER = 0x70
    OP_2ROT = 0x71
    OP_2SWAP = 0x72
    OP_DEPTH = 0x74
    OP_DROP = 0x75
    OP_DUP = 0x76
    OP_NIP = 0x77
    OP_OVER = 0x78
    OP_PICK = 0x79
    OP_ROLL = 0x7a
    OP_ROT = 0x7b
    OP_SWAP = 0x7c
    OP_TUCK = 0x7d

    OP_CAT = 0x7e
    OP_SPLIT = 0x7f
    OP_SIZE = 0x82

    OP_AND = 0x84
    OP_OR = 0x85
    OP_XOR = 0x86
    OP_EQUAL = 0x87
    OP_EQUALVERIFY = 0x88

    OP_1ADD = 0x8b
    OP_1SUB = 0x8c
    OP_NEGATE = 0x8f
    OP_ABS = 0x90
    OP_NOT = 0x91
    OP_0NOTEQUAL = 0x92
    OP_ADD = 0x93
    OP_SUB = 0x94
    OP_MUL = 0x95
    OP_DIV = 0x96
    OP_MOD = 0x97
    OP_NUMEQUAL = 0x9c
    OP_NUMEQUALVERIFY = 0x9d
    OP_NUMNOTEQUAL = 0x9e
    OP_LESSTHAN = 0x9f
    OP_GREATERTHAN = 0xa0
    OP_LESSTHANOREQUAL = 0xa1
    OP_GREATERTHANOREQUAL = 0xa2
    OP_MIN = 0xa3
    OP_MAX = 0xa4
    OP_WITHIN = 0xa5

    OP_RIPEMD160 = 0xa6
    OP_SHA1 = 0xa7
    OP_SHA256 = 0xa8
    OP_HASH160 = 0xa9
    OP_HASH256 = 0xaa
    OP_CODESEPARATOR = 0xab
    OP_CHECKSIG = 0xac
    OP_CHECKSIGVERIFY = 0xad
    OP_CHECKMULTISIG = 0xae
    OP_CHECKMULTISIGVERIFY = 0xaf

    OP_CHECKLOCKTIMEVERIFY = 0xb1
    OP_CHECKSEQUENCEVERIFY = 0xb2


class OpCategory(Enum):
    PUSH = "push"
    CONTROL = "control"
    STACK = "stack"
    SPLICE = "splice"
    BITWISE = "bitwise"
    EQUALITY = "equality"
    ARITHMETIC = "arithmetic"
    HASH = "hash"
    CRYPTO = "crypto"
    LOCKTIME = "locktime"


def _categorise(op: Opcode) -> OpCategory:
    if op <= Opcode.OP_16:
        return OpCategory.PUSH
    if op <= Opcode.OP_RETURN:
        return OpCategory.CONTROL
    if op <= Opcode.OP_TUCK:
        return OpCategory.STACK
    if op <= Opcode.OP_SIZE:
        return OpCategory.SPLICE
    if op <= Opcode.OP_XOR:
        return OpCategory.BITWISE
    if op <= Opcode.OP_EQUALVERIFY:
        return OpCategory.EQUALITY
    if op <= Opcode.OP_WITHIN:
        return OpCategory.ARITHMETIC
    if op <= Opcode.OP_HASH256:
        return OpCategory.HASH
    if op <= Opcode.OP_CHECKMULTISIGVERIFY:
        return OpCategory.CRYPTO
    return OpCategory.LOCKTIME


OPCODE_CATEGORIES: Mapping[Opcode, OpCategory] = MappingProxyType(
    {op: _categorise(op) for op in Opcode}
)

_RAW_PUSH_OPCODES = frozenset({
    Opcode.OP_PUSHDATA1, Opcode.OP_PUSHDATA2, Opcode.OP_PUSHDATA4,
})

COVENANT_SIGHASH_BYTE = 0x41      # SIGHASH_ALL | SIGHASH_FORKID
PREIMAGE_SIZE = 1024              # 32 commitments x 32 bytes


# ============================================================
# INSTRUCTIONS
# ============================================================

@dataclass(frozen=True)
class Op:
    opcode: Opcode

    @property
    def category(self) -> OpCategory:
        return OPCODE_CATEGORIES[self.opcode]

    def encode(self) -> bytes:
        return bytes([self.opcode])

    def asm(self) -> str:
        return self.opcode.name


@dataclass(frozen=True)
class PushData:
    data: bytes

    def encode(self) -> bytes:
        return push_data(self.data)

    def asm(self) -> str:
        return self.data.hex() if self.data else "OP_0"


@dataclass(frozen=True)
class PushInt:
    value: int

    def encode(self) -> bytes:
        return push_int(self.value)

    def asm(self) -> str:
        if self.value == -1:
            return "OP_1NEGATE"
        if 0 <= self.value <= 16:
            return f"OP_{self.value}"
        return str(self.value)


Instruction = Union[Op, PushData, PushInt]


class ScriptBuilder:
    """
    Accumulates instructions and serializes them once in :meth:`build`.

    >>> ScriptBuilder().op(Opcode.OP_SHA256).push(b"\\x00" * 32).op(Opcode.OP_EQUAL).build()[:2]
    b'\\xa8 '
    """

    def __init__(self) -> None:
        self._instructions: List[Instruction] = []
        self._open_ifs = 0

    def op(self, *opcodes: Opcode) -> "ScriptBuilder":
        for opcode in opcodes:
            opcode = Opcode(opcode)
            if opcode in _RAW_PUSH_OPCODES:
                raise ValidationError(
                    f"{opcode.name} must be emitted through push()"
                )
            if opcode in (Opcode.OP_IF, Opcode.OP_NOTIF):
                self._open_ifs += 1
            elif opcode in (Opcode.OP_ELSE, Opcode.OP_ENDIF):
                if self._open_ifs == 0:
                    raise ValidationError(f"{opcode.name} without a matching OP_IF")
                if opcode == Opcode.OP_ENDIF:
                    self._open_ifs -= 1
            self._instructions.append(Op(opcode))
        return self

    def push(self, data: bytes) -> "ScriptBuilder":
        self._instructions.append(PushData(bytes(data)))
        return self

    def push_int(self, value: int) -> "ScriptBuilder":
        self._instructions.append(PushInt(value))
        return self

    def extend(self, other: "ScriptBuilder") -> "ScriptBuilder":
        for ins in other.instructions:
            if isinstance(ins, Op):
                self.op(ins.opcode)
            else:
                self._instructions.append(ins)
        return self

    @property
    def instructions(self) -> List[Instruction]:
        return list(self._instructions)

    def build(self) -> bytes:
        if self._open_ifs:
            raise ValidationError(f"{self._open_ifs} unterminated OP_IF block(s)")
        return b"".join(ins.encode() for ins in self._instructions)


# ============================================================
# DISASSEMBLY
# ============================================================

def parse_script(script: bytes) -> List[Instruction]:
    """Split raw script bytes back into instructions."""
    out: List[Instruction] = []
    i = 0
    n = len(script)
    while i < n:
        byte = script[i]
        if 0x01 <= byte <= 0x4b:
            size, start = byte, i + 1
        elif byte == Opcode.OP_PUSHDATA1:
            size, start = script[i + 1], i + 2
        elif byte == Opcode.OP_PUSHDATA2:
            size, start = int.from_bytes(script[i + 1:i + 3], "little"), i + 3
        elif byte == Opcode.OP_PUSHDATA4:
            size, start = int.from_bytes(script[i + 1:i + 5], "little"), i + 5
        else:
            try:
                out.append(Op(Opcode(byte)))
            except ValueError as exc:
                raise ValidationError(f"Unknown opcode 0x{byte:02x} at {i}") from exc
            i += 1
            continue
        if start + size > n:
            raise ValidationError(f"Push at offset {i} runs past end of script")
        out.append(PushData(script[start:start + size]))
        i = start + size
    return out


def script_to_asm(script: bytes) -> str:
    return " ".join(ins.asm() for ins in parse_script(script))


# ============================================================
# LOCKING SCRIPTS
# ============================================================

def _require_hash(public_key_hash: bytes) -> bytes:
    if len(public_key_hash) != 32:
        raise ValidationError(
            f"public key hash must be 32 bytes, got {len(public_key_hash)}"
        )
    return bytes(public_key_hash)


def timelock_guard(lock_time: int) -> ScriptBuilder:
    """``<lock_time> OP_CHECKLOCKTIMEVERIFY OP_DROP``, empty when unlocked."""
    builder = ScriptBuilder()
    if lock_time and lock_time > 0:
        builder.push_int(lock_time).op(
            Opcode.OP_CHECKLOCKTIMEVERIFY, Opcode.OP_DROP,
        )
    return builder


def _preimage_check(public_key_hash: bytes) -> ScriptBuilder:
    return (ScriptBuilder()
            .op(Opcode.OP_SHA256)
            .push(_require_hash(public_key_hash))
            .op(Opcode.OP_EQUAL))


def standard_locking_script(public_key_hash: bytes) -> bytes:
    """OP_SHA256 <32-byte hash> OP_EQUAL (35 bytes)."""
    return _preimage_check(public_key_hash).build()


def timelock_locking_script(public_key_hash: bytes, lock_time: int) -> bytes:
    return (timelock_guard(lock_time)
            .extend(_preimage_check(public_key_hash))
            .build())


def covenant_locking_script(
    public_key_hash: bytes,
    covenant_pubkey: bytes,
    lock_time: int = 0,
) -> bytes:
    """Preimage reveal guarded by a signature from a fixed covenant key.

    The ECDSA check binds the reveal to one set of outputs, so a copied
    preimage cannot be replayed into a different transaction.
    """
    builder = timelock_guard(lock_time)
    builder.push(covenant_pubkey).op(Opcode.OP_CHECKSIGVERIFY)
    builder.op(Opcode.OP_SIZE).push_int(PREIMAGE_SIZE).op(Opcode.OP_EQUALVERIFY)
    return builder.extend(_preimage_check(public_key_hash)).build()


_HASH_BLOCKS = ((1, 1), (2, 2), (4, 4), (8, 8))   # (divisor, hashes)


def _chunk_verifier(
    builder: ScriptBuilder,
    commitment: bytes,
    last: bool,
    range_guard: bool = True,
) -> None:
    if len(commitment) != 32:
        raise ValidationError(f"commitment must be 32 bytes, got {len(commitment)}")
    builder.op(Opcode.OP_SWAP)
    if range_guard:
        builder.op(Opcode.OP_DUP).push_int(0).push_int(16).op(
            Opcode.OP_WITHIN, Opcode.OP_VERIFY,
        )
    for divisor, hashes in _HASH_BLOCKS:
        builder.op(Opcode.OP_DUP)
        if divisor > 1:
            builder.push_int(divisor).op(Opcode.OP_DIV)
        builder.push_int(2).op(Opcode.OP_MOD)
        builder.op(Opcode.OP_IF, Opcode.OP_SWAP)
        builder.op(*([Opcode.OP_SHA256] * hashes))
        builder.op(Opcode.OP_SWAP, Opcode.OP_ENDIF)
    builder.op(Opcode.OP_DROP)
    builder.push(commitment)
    builder.op(Opcode.OP_EQUAL if last else Opcode.OP_EQUALVERIFY)


def wots16_locking_script(
    public_commitments: Sequence[bytes],
    lock_time: int = 0,
    covenant_pubkey: Optional[bytes] = None,
    range_guard: bool = True,
) -> bytes:
    """Full on-chain WOTS-16 verifier over all 68 commitments.

    ``range_guard=False`` emits the older verifier without the
    ``0 <= remaining < 16`` check; it is only rebuilt to restore vaults
    already funded under that format.
    """
    if len(public_commitments) != WOTS16_CHUNKS:
        raise ValidationError(
            f"WOTS-16 needs {WOTS16_CHUNKS} commitments, "
            f"got {len(public_commitments)}"
        )
    builder = timelock_guard(lock_time)
    if covenant_pubkey is not None:
        # the sighash preimage under the signature is carried for auditors
        builder.push(covenant_pubkey).op(Opcode.OP_CHECKSIGVERIFY, Opcode.OP_DROP)
    last = len(public_commitments) - 1
    for i, commitment in enumerate(public_commitments):
        _chunk_verifier(builder, bytes(commitment), i == last, range_guard)
    return builder.build()


# ============================================================
# UNLOCKING SCRIPTS
# ============================================================

def preimage_unlocking_script(public_key: bytes) -> bytes:
    """Single push of the 1024-byte commitment concatenation."""
    return ScriptBuilder().push(public_key).build()


def covenant_unlocking_script(public_key: bytes, covenant_signature: bytes) -> bytes:
    """Preimage first, covenant signature on top (consumed by CHECKSIGVERIFY)."""
    return ScriptBuilder().push(public_key).push(covenant_signature).build()


def wots16_unlocking_script(
    signature: WOTS16Signature,
    sighash_preimage: Optional[bytes] = None,
    covenant_signature: Optional[bytes] = None,
) -> bytes:
    """
    Push ``(remaining, value)`` for every chunk in reverse order so chunk 0
    ends on top of the stack.  The covenant form then pushes the sighash
    preimage and finally the covenant signature.
    """
    if (sighash_preimage is None) != (covenant_signature is None):
        raise ValidationError(
            "covenant unlocking needs both the sighash preimage and the signature"
        )
    builder = ScriptBuilder()
    for chunk in reversed(signature.chunks):
        builder.push_int(chunk.remaining)
        builder.push(chunk.value)
    if covenant_signature is not None:
        builder.push(sighash_preimage).push(covenant_signature)
    return builder.build()
