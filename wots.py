"""
Winternitz hash-chain keypairs and the WOTS-16 one-time signer.

Two key shapes are used by the vault:

    WinternitzKeypair   32 chunks, commitment_i = SHA256^256(scalar_i).
                        Spent by revealing all 32 commitments (the 1024-byte
                        "preimage" of the public key hash).
    WOTS16Keypair       68 chunks (64 message nibbles + 4 checksum nibbles),
                        commitment_i = SHA256^15(scalar_i).  Spent with a real
                        one-time signature checked chunk by chunk on-chain.

Signing a digit d reveals SHA256^d(scalar); the verifier hashes the revealed
value (15 - d) more times and compares with the commitment.  The checksum
sum(15 - d) over the message nibbles stops an attacker from raising digits,
since any raised message digit lowers the checksum, which would need a
reverse hash.

A WOTS16Keypair must sign at most ONE distinct message.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Sequence, Tuple

from bitcoin_protocol import iterated_sha256, sha256
from vault_errors import EntropyError, ValidationError

log = logging.getLogger("quantum_vault.wots")
log.addHandler(logging.NullHandler())


SCALAR_SIZE = 32

WINTERNITZ_CHUNKS = 32
WINTERNITZ_ITERATIONS = 256

WOTS16_W = 16
WOTS16_MESSAGE_CHUNKS = 64           # 256 bits / 4 bits
WOTS16_CHECKSUM_CHUNKS = 4
WOTS16_CHUNKS = WOTS16_MESSAGE_CHUNKS + WOTS16_CHECKSUM_CHUNKS
WOTS16_CHAIN_LENGTH = WOTS16_W - 1   # commitments sit 15 hashes from the scalar

WOTS16_PARAMS: Dict[str, int] = {
    "W": WOTS16_W,
    "CHUNKS": WOTS16_MESSAGE_CHUNKS,
    "SCALAR_SIZE": SCALAR_SIZE,
    "MAX_ITERATIONS": WOTS16_W,
    "CHECKSUM_CHUNKS": WOTS16_CHECKSUM_CHUNKS,
}


def _random_scalars(count: int) -> Tuple[bytes, ...]:
    try:
        return tuple(secrets.token_bytes(SCALAR_SIZE) for _ in range(count))
    except (OSError, NotImplementedError) as exc:
        log.critical("Entropy source unavailable: %s", exc)
        raise EntropyError(f"Entropy source unavailable: {exc}") from exc


def _decode_hex(value: str, what: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {what}: not a hex string") from exc


# ============================================================
# KEYPAIRS
# ============================================================

@dataclass(frozen=True)
class _HashChainKeypair:
    """
    Ordered private scalars plus everything derived from them.

    Commitments and the public key hash are always recomputed from the
    scalars; there is no constructor that accepts them.
    """
    CHUNKS: ClassVar[int]
    ITERATIONS: ClassVar[int]

    private_scalars: Tuple[bytes, ...] = field(repr=False)
    public_commitments: Tuple[bytes, ...] = field(init=False, repr=False)
    public_key_hash: bytes = field(init=False)

    def __post_init__(self) -> None:
        scalars = tuple(bytes(s) for s in self.private_scalars)
        if len(scalars) != self.CHUNKS:
            raise ValidationError(
                f"{type(self).__name__} needs {self.CHUNKS} scalars, "
                f"got {len(scalars)}"
            )
        for i, scalar in enumerate(scalars):
            if len(scalar) != SCALAR_SIZE:
                raise ValidationError(
                    f"scalar {i} must be {SCALAR_SIZE} bytes, got {len(scalar)}"
                )
        commitments = tuple(
            iterated_sha256(s, self.ITERATIONS) for s in scalars
        )
        object.__setattr__(self, "private_scalars", scalars)
        object.__setattr__(self, "public_commitments", commitments)
        object.__setattr__(self, "public_key_hash", sha256(b"".join(commitments)))

    @classmethod
    def generate(cls):
        """Fresh keypair from OS entropy, one independent draw per scalar."""
        return cls(private_scalars=_random_scalars(cls.CHUNKS))

    @classmethod
    def from_private_hex(cls, private_key_hex: str):
        """Rebuild from concatenated scalars (hex)."""
        raw = _decode_hex(private_key_hex, "private key")
        expected = cls.CHUNKS * SCALAR_SIZE
        if len(raw) != expected:
            raise ValidationError(
                f"Private key length mismatch: expected {expected} bytes, "
                f"got {len(raw)}"
            )
        return cls(private_scalars=tuple(
            raw[i:i + SCALAR_SIZE] for i in range(0, expected, SCALAR_SIZE)
        ))

    @property
    def private_key_hex(self) -> str:
        return b"".join(self.private_scalars).hex()

    @property
    def public_key(self) -> bytes:
        """Concatenated commitments; SHA-256 of this is ``public_key_hash``."""
        return b"".join(self.public_commitments)

    @property
    def public_key_hash_hex(self) -> str:
        return self.public_key_hash.hex()


class WinternitzKeypair(_HashChainKeypair):
    """32-chunk keypair spent by preimage reveal."""

    CHUNKS = WINTERNITZ_CHUNKS
    ITERATIONS = WINTERNITZ_ITERATIONS


class WOTS16Keypair(_HashChainKeypair):
    """68-chunk WOTS-16 keypair (w=16, 4-bit digits)."""

    CHUNKS = WOTS16_CHUNKS
    ITERATIONS = WOTS16_CHAIN_LENGTH

    def sign(self, message: bytes) -> "WOTS16Signature":
        return sign(self, message)

    def verify(self, message: bytes, signature: "WOTS16Signature") -> bool:
        return verify(self.public_commitments, message, signature)

    # ---- serialisation -------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "privateScalars": [s.hex() for s in self.private_scalars],
            "publicCommitments": [c.hex() for c in self.public_commitments],
            "publicKeyHash": self.public_key_hash_hex,
            "params": dict(WOTS16_PARAMS),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WOTS16Keypair":
        """Rebuild from ``privateScalars``; stored public values are ignored."""
        scalars = d.get("privateScalars")
        if not isinstance(scalars, list):
            raise ValidationError("Invalid WOTS-16 key: privateScalars missing")
        return cls(private_scalars=tuple(
            _decode_hex(s, f"WOTS-16 scalar {i}") for i, s in enumerate(scalars)
        ))


# ============================================================
# SIGNER
# ============================================================

@dataclass(frozen=True)
class SignatureChunk:
    value: bytes          # SHA256^iterations(scalar)
    iterations: int       # the signed digit, 0..15

    @property
    def remaining(self) -> int:
        """Hashes the verifier still has to apply to reach the commitment."""
        return WOTS16_CHAIN_LENGTH - self.iterations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value.hex(),
            "iterations": self.iterations,
            "remaining": self.remaining,
        }


@dataclass(frozen=True)
class WOTS16Signature:
    chunks: Tuple[SignatureChunk, ...]
    message: bytes

    @property
    def digits(self) -> List[int]:
        return [c.iterations for c in self.chunks]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message.hex(),
            "chunks": [c.to_dict() for c in self.chunks],
        }


def checksum_digits(total: int) -> List[int]:
    """Four checksum nibbles, least significant first.

    Only the low 16 bits survive; anything above is dropped, not saturated.
    """
    return [(total >> (4 * i)) & 0x0F for i in range(WOTS16_CHECKSUM_CHUNKS)]


def message_digits(message: bytes) -> List[int]:
    """64 message nibbles (high nibble first per byte) + 4 checksum nibbles."""
    if len(message) != 32:
        raise ValidationError(
            f"Invalid message length: WOTS-16 signs a 32-byte digest, "
            f"got {len(message)} bytes"
        )
    nibbles: List[int] = []
    for byte in message:
        nibbles.append((byte >> 4) & 0x0F)
        nibbles.append(byte & 0x0F)
    checksum = sum(WOTS16_CHAIN_LENGTH - n for n in nibbles)
    return nibbles + checksum_digits(checksum)


def sign(keypair: WOTS16Keypair, message: bytes) -> WOTS16Signature:
    """Deterministic WOTS-16 signature over a 32-byte digest."""
    digits = message_digits(message)
    chunks = tuple(
        SignatureChunk(value=iterated_sha256(scalar, digit), iterations=digit)
        for scalar, digit in zip(keypair.private_scalars, digits)
    )
    log.debug("WOTS-16 signed digest %s", message.hex()[:16])
    return WOTS16Signature(chunks=chunks, message=bytes(message))


def verify(
    public_commitments: Sequence[bytes],
    message: bytes,
    signature: WOTS16Signature,
) -> bool:
    """Complete every chain from the signature and compare with the commitments."""
    if len(signature.chunks) != WOTS16_CHUNKS:
        return False
    if len(public_commitments) != WOTS16_CHUNKS:
        return False
    try:
        digits = message_digits(message)
    except ValidationError:
        return False
    for commitment, digit, chunk in zip(public_commitments, digits, signature.chunks):
        if chunk.iterations != digit:
            return False
        if iterated_sha256(chunk.value, WOTS16_CHAIN_LENGTH - digit) != commitment:
            return False
    return True
