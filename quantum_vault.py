"""
Quantum Vault -- Hash-Based Value Locking for BSV
================================================
- Bare locking scripts spent by revealing Winternitz hash-chain material
- Full on-chain WOTS-16 signature verification (68 chunks, w=16)
- Optional ECDSA covenant binding a spend to its outputs (front-run guard)
- OP_CHECKLOCKTIMEVERIFY time-locks by block height or timestamp
- BIP-143 / SIGHASH_FORKID digests for covenant signatures
- Self-contained base64 vault secret; AES-256-GCM encrypted persistence

Dependencies:
    pip install coincurve pycryptodome base58 requests

Security levels:
    standard   OP_SHA256 <hash> OP_EQUAL; spent by the 1024-byte preimage
    enhanced   standard + CLTV time-lock (standard when no lock time given)
    maximum    preimage reveal behind an ephemeral-key covenant signature
    ultimate   covenant + full WOTS-16 verifier (quantum-safe spend)

The levels are presets over two independent toggles: the spend scheme
(preimage reveal or WOTS-16) and the covenant (present or absent).

Security Model:
    - A preimage reveal is visible in the mempool.  Without a covenant,
      anyone who sees it can build a competing spend to another address.
    - The covenant key is an ordinary secp256k1 key.  It guards against
      front-running today; only the WOTS-16 scheme is hash-based end to end.
    - Every key here is ONE-TIME.  A vault is swept in one transaction;
      the WOTS-16 key signs exactly one output set.
    - The vault secret is the sole credential.  Losing it loses the funds.

Status: Experimental -- not audited.
"""

from __future__ import annotations

import json
import logging
import math
import secrets
import time
from base64 import b64decode, b64encode
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import base58

# Symmetric encryption for secrets-at-rest
from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt

# Covenant signatures: coincurve (libsecp256k1), DER low-S
from coincurve import PrivateKey as _Secp256k1PrivateKey
from coincurve import PublicKey as _Secp256k1PublicKey

from bitcoin_protocol import (
    P2PKH_VERSIONS,
    SEQUENCE_FINAL,
    SEQUENCE_LOCKTIME,
    ForkIdSighash,
    RawTransaction,
    TxInput,
    TxOutput,
    Utxo,
    address_to_script,
    compact_size,
    hash160,
    hash256,
    hash_outputs,
    sha256,
)
from ledger_client import LedgerClient
from vault_errors import (
    EntropyError,
    IntegrityError,
    InsufficientFundsError,
    ProviderError,
    ValidationError,
)
from vault_script import (
    COVENANT_SIGHASH_BYTE,
    covenant_locking_script,
    covenant_unlocking_script,
    preimage_unlocking_script,
    script_to_asm,
    standard_locking_script,
    timelock_locking_script,
    wots16_locking_script,
    wots16_unlocking_script,
)
from wots import WinternitzKeypair, WOTS16Keypair, WOTS16Signature

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
from logging.handlers import RotatingFileHandler

log = logging.getLogger("quantum_vault")
log.addHandler(logging.NullHandler())


def setup_logging(log_file: str = "quantum_vault.log") -> None:
    """
    Configure logging with rotating file + console.

    Call once at startup; safe to call multiple times (idempotent).
    """
    if getattr(setup_logging, "_done", False):
        return

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    file_handler = RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5,
    )
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(fmt)
    console_handler.setLevel(logging.WARNING)

    log.addHandler(file_handler)
    log.addHandler(console_handler)
    log.setLevel(logging.INFO)

    setup_logging._done = True  # type: ignore[attr-defined]


SECRET_VERSION = 5
UNGUARDED_WOTS16_VERSION = 4     # last version whose WOTS-16 scripts lack the range guard
LOCKTIME_THRESHOLD = 500_000_000     # below: block height, above: unix time
VAULT_ID_PREFIX = "qv1Z"


# ============================================================
# POLICY
# ============================================================

class SecurityLevel(Enum):
    STANDARD = "standard"
    ENHANCED = "enhanced"
    MAXIMUM = "maximum"
    ULTIMATE = "ultimate"


class SpendScheme(Enum):
    PREIMAGE = "preimage"    # reveal the 32-chunk commitment concatenation
    WOTS16 = "wots16"        # on-chain WOTS-16 signature verification


class LockType(Enum):
    BLOCKS = "blocks"
    TIMESTAMP = "timestamp"


def _parse_enum(enum_cls, value, what: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Unknown {what} {value!r} (expected {allowed})") from exc


@dataclass(frozen=True)
class VaultPolicy:
    """Spend scheme x covenant x time-lock.

    ``front_run_immune`` and ``quantum_safe_spend`` are independent; the
    named security levels are just presets.
    """
    scheme: SpendScheme = SpendScheme.PREIMAGE
    covenant: bool = False
    lock_time: int = 0
    range_guard: bool = True    # WOTS-16 only; False for v4 and older scripts

    @classmethod
    def from_level(
        cls,
        level: Union[str, SecurityLevel],
        lock_time: int = 0,
        covenant: Optional[bool] = None,
    ) -> "VaultPolicy":
        level = _parse_enum(SecurityLevel, level, "security level")
        if level is SecurityLevel.STANDARD:
            scheme, default_covenant = SpendScheme.PREIMAGE, False
            if lock_time:
                log.warning("standard vaults carry no time-lock; ignoring lock_time=%d", lock_time)
            lock_time = 0
        elif level is SecurityLevel.ENHANCED:
            scheme, default_covenant = SpendScheme.PREIMAGE, False
        elif level is SecurityLevel.MAXIMUM:
            scheme, default_covenant = SpendScheme.PREIMAGE, True
        else:
            scheme, default_covenant = SpendScheme.WOTS16, True
        return cls(
            scheme=scheme,
            covenant=default_covenant if covenant is None else bool(covenant),
            lock_time=lock_time,
        )

    @property
    def front_run_immune(self) -> bool:
        return self.covenant

    @property
    def quantum_safe_spend(self) -> bool:
        return self.scheme is SpendScheme.WOTS16

    @property
    def script_type(self) -> str:
        if self.scheme is SpendScheme.WOTS16:
            return "wots16-covenant" if self.covenant else "wots16-full-verification"
        if self.covenant:
            return "preimage-ecdsa-covenant"
        if self.lock_time > 0:
            return "preimage-timelock"
        return "preimage-based"


def resolve_lock_time(
    lock_time: int,
    lock_type: Union[str, LockType] = LockType.BLOCKS,
    now: Optional[int] = None,
) -> int:
    """
    Effective nLockTime for a requested lock.

    A ``timestamp`` lock below 500 000 000 is read as seconds from now;
    anything else is used as given.  Non-positive means unlocked.
    """
    lock_type = _parse_enum(LockType, lock_type, "lock type")
    if not lock_time or lock_time <= 0:
        return 0
    if lock_type is LockType.TIMESTAMP and lock_time < LOCKTIME_THRESHOLD:
        lock_time += int(time.time() if now is None else now)
    if lock_time > 0xFFFFFFFF:
        raise ValidationError(f"lock_time {lock_time} does not fit in nLockTime")
    return int(lock_time)


def unlock_info(lock_time: int) -> Optional[Dict[str, Any]]:
    if lock_time <= 0:
        return None
    if lock_time < LOCKTIME_THRESHOLD:
        return {"type": "block", "blockHeight": lock_time}
    when = datetime.fromtimestamp(lock_time, tz=timezone.utc)
    return {
        "type": "timestamp",
        "timestamp": lock_time,
        "date": when.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
    }


# ============================================================
# COVENANT KEY (secp256k1 via coincurve)
# ============================================================

class CovenantKey:
    """
    Ephemeral secp256k1 key whose public half is baked into the locking
    script.  Its signature over the FORKID digest pins the outputs.
    """

    def __init__(self, secret: bytes) -> None:
        if len(secret) != 32:
            raise ValidationError(f"covenant key must be 32 bytes, got {len(secret)}")
        try:
            self._sk = _Secp256k1PrivateKey(secret)
        except ValueError as exc:
            raise ValidationError(f"Invalid covenant key: {exc}") from exc

    @classmethod
    def generate(cls) -> "CovenantKey":
        try:
            return cls(secrets.token_bytes(32))
        except (OSError, NotImplementedError) as exc:
            log.critical("Entropy source unavailable: %s", exc)
            raise EntropyError(f"Entropy source unavailable: {exc}") from exc

    @classmethod
    def from_secret(cls, value: Union[str, bytes, "CovenantKey"]) -> "CovenantKey":
        """Accepts a key, 32 raw bytes or 64 hex characters."""
        if isinstance(value, CovenantKey):
            return value
        if isinstance(value, str):
            try:
                value = bytes.fromhex(value)
            except ValueError as exc:
                raise ValidationError("Invalid covenant key: not a hex string") from exc
        return cls(bytes(value))

    @property
    def private_key(self) -> bytes:
        return self._sk.secret

    @property
    def public_key(self) -> bytes:
        """33-byte compressed SEC1 point."""
        return self._sk.public_key.format(compressed=True)

    def sign(self, digest: bytes) -> bytes:
        """DER (low-S) signature over a 32-byte digest + sighash byte."""
        if len(digest) != 32:
            raise ValidationError(f"digest must be 32 bytes, got {len(digest)}")
        der = self._sk.sign(digest, hasher=None)
        return der + bytes([COVENANT_SIGHASH_BYTE])

    def verify(self, digest: bytes, signature: bytes) -> bool:
        if len(signature) < 2:
            return False
        try:
            return _Secp256k1PublicKey(self.public_key).verify(
                signature[:-1], digest, hasher=None,
            )
        except (ValueError, TypeError):
            return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CovenantKey):
            return NotImplemented
        return self.private_key == other.private_key

    def __repr__(self) -> str:
        return f"CovenantKey(public_key={self.public_key.hex()})"


# ============================================================
# VAULT SECRET
# ============================================================

@dataclass
class VaultSecret:
    """The caller-held credential, serialised as base64(compact JSON)."""
    private_key: str = field(repr=False)
    public_key_hash: str
    locking_script: Optional[str] = None
    script_type: str = "preimage-based"
    security_level: str = "standard"
    lock_time: int = 0
    unlock_info: Optional[Dict[str, Any]] = None
    network: str = "mainnet"
    version: int = SECRET_VERSION
    ephemeral_private_key: Optional[str] = field(default=None, repr=False)
    covenant: Optional[bool] = None
    wots16: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "version": self.version,
            "privateKey": self.private_key,
            "publicKeyHash": self.public_key_hash,
            "lockingScript": self.locking_script,
            "scriptType": self.script_type,
            "securityLevel": self.security_level,
            "lockTime": self.lock_time,
            "unlockInfo": self.unlock_info,
            "network": self.network,
        }
        if self.ephemeral_private_key is not None:
            d["ephemeralPrivateKey"] = self.ephemeral_private_key
        if self.covenant is not None:
            d["covenant"] = self.covenant
        if self.wots16 is not None:
            d["wots16"] = self.wots16
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "VaultSecret":
        if not isinstance(d, dict):
            raise ValidationError("Invalid secret format: expected a JSON object")
        for key in ("privateKey", "publicKeyHash"):
            if not isinstance(d.get(key), str):
                raise ValidationError(f"Invalid secret format: missing {key}")
        version = d.get("version", 3)
        if not isinstance(version, int) or not 1 <= version <= SECRET_VERSION:
            raise ValidationError(f"Unsupported secret version: {version!r}")
        wots16 = d.get("wots16")
        if wots16 is not None and not isinstance(wots16, dict):
            raise ValidationError("Invalid secret format: wots16 must be an object")
        try:
            lock_time = int(d.get("lockTime") or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Invalid secret format: bad lockTime") from exc
        if not 0 <= lock_time <= 0xFFFFFFFF:
            raise ValidationError("Invalid secret format: bad lockTime")
        return cls(
            private_key=d["privateKey"],
            public_key_hash=d["publicKeyHash"],
            locking_script=d.get("lockingScript"),
            script_type=d.get("scriptType") or "preimage-based",
            security_level=d.get("securityLevel") or "standard",
            lock_time=lock_time,
            unlock_info=d.get("unlockInfo"),
            network=d.get("network") or "mainnet",
            version=version,
            ephemeral_private_key=d.get("ephemeralPrivateKey"),
            covenant=d.get("covenant"),
            wots16=wots16,
        )

    def to_base64(self) -> str:
        return b64encode(
            json.dumps(self.to_dict(), separators=(",", ":")).encode()
        ).decode()

    @classmethod
    def from_base64(cls, blob: str) -> "VaultSecret":
        try:
            data = json.loads(b64decode(blob.strip(), validate=True))
        except (AttributeError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid secret format: {exc}") from exc
        return cls.from_dict(data)


# ============================================================
# VAULT IDENTIFIERS
# ============================================================

def create_vault_id(script_hash: bytes) -> str:
    """``qv1Z`` + base58(hash160[:16] || SHA256(hash160)[:4])."""
    if len(script_hash) != 20:
        raise ValidationError(f"script hash must be 20 bytes, got {len(script_hash)}")
    checksum = sha256(script_hash)[:4]
    return VAULT_ID_PREFIX + base58.b58encode(script_hash[:16] + checksum).decode()


def decode_vault_id(vault_id: str) -> bytes:
    """Return the 16-byte truncated script hash after checking the checksum.

    The checksum covers the full 20-byte hash, which the ID does not carry,
    so a decoded ID can only be matched against a known script hash with
    :func:`vault_id_matches`.
    """
    if not vault_id.startswith(VAULT_ID_PREFIX):
        raise ValidationError(f"Vault ID must start with {VAULT_ID_PREFIX!r}")
    try:
        payload = base58.b58decode(vault_id[len(VAULT_ID_PREFIX):])
    except ValueError as exc:
        raise ValidationError(f"Invalid vault ID {vault_id!r}: {exc}") from exc
    if len(payload) != 20:
        raise ValidationError(
            f"Invalid vault ID {vault_id!r}: payload is {len(payload)} bytes"
        )
    return payload[:16]


def vault_id_matches(vault_id: str, script_hash: bytes) -> bool:
    try:
        truncated = decode_vault_id(vault_id)
    except ValidationError:
        return False
    return truncated == script_hash[:16] and vault_id == create_vault_id(script_hash)


# ============================================================
# VAULT RECORD
# ============================================================

def build_locking_script(
    policy: VaultPolicy,
    keypair: WinternitzKeypair,
    wots16_keypair: Optional[WOTS16Keypair] = None,
    covenant_key: Optional[CovenantKey] = None,
) -> bytes:
    """Dispatch a policy to the matching script builder."""
    covenant_pubkey = covenant_key.public_key if covenant_key is not None else None
    if policy.covenant and covenant_pubkey is None:
        raise ValidationError("covenant policy needs a covenant key")
    if policy.scheme is SpendScheme.WOTS16:
        if wots16_keypair is None:
            raise ValidationError("WOTS-16 policy needs a WOTS-16 keypair")
        return wots16_locking_script(
            wots16_keypair.public_commitments,
            lock_time=policy.lock_time,
            covenant_pubkey=covenant_pubkey if policy.covenant else None,
            range_guard=policy.range_guard,
        )
    if policy.covenant:
        return covenant_locking_script(
            keypair.public_key_hash, covenant_pubkey, lock_time=policy.lock_time,
        )
    if policy.lock_time > 0:
        return timelock_locking_script(keypair.public_key_hash, policy.lock_time)
    return standard_locking_script(keypair.public_key_hash)


def _sighash_preimage_size(script_size: int) -> int:
    # version, hashPrevouts, hashSequence, outpoint, value, nSequence,
    # hashOutputs, nLockTime, sighash type + varint(scriptCode) scriptCode
    return 4 + 32 + 32 + 36 + 8 + 4 + 32 + 4 + 4 + len(compact_size(script_size)) + script_size


def _push_size(n: int) -> int:
    if n <= 75:
        return 1 + n
    if n <= 0xff:
        return 2 + n
    if n <= 0xffff:
        return 3 + n
    return 5 + n


MAX_COVENANT_SIG_SIZE = 73     # 72-byte DER + sighash byte


@dataclass
class VaultRecord:
    """A vault in memory: keys, policy and the derived locking script."""
    keypair: WinternitzKeypair
    policy: VaultPolicy
    security_level: SecurityLevel
    locking_script: bytes
    network: str = "mainnet"
    wots16_keypair: Optional[WOTS16Keypair] = None
    covenant_key: Optional[CovenantKey] = None
    version: int = SECRET_VERSION

    # ---- derived identifiers ------------------------------------------
    @property
    def lock_time(self) -> int:
        return self.policy.lock_time

    @property
    def script_type(self) -> str:
        return self.policy.script_type

    @property
    def script_size(self) -> int:
        return len(self.locking_script)

    @property
    def script_hash(self) -> str:
        """HASH160 of the locking script (display and vault ID)."""
        return hash160(self.locking_script).hex()

    @property
    def woc_script_hash(self) -> str:
        """Byte-reversed SHA-256 of the locking script (indexer lookups)."""
        return sha256(self.locking_script)[::-1].hex()

    @property
    def vault_id(self) -> str:
        return create_vault_id(hash160(self.locking_script))

    @property
    def locking_script_asm(self) -> str:
        return script_to_asm(self.locking_script)

    @property
    def public_key_hash(self) -> str:
        """Hash the script commits to (the WOTS-16 key's for WOTS-16 vaults)."""
        if self.wots16_keypair is not None:
            return self.wots16_keypair.public_key_hash_hex
        return self.keypair.public_key_hash_hex

    @property
    def unlock_info(self) -> Optional[Dict[str, Any]]:
        return unlock_info(self.lock_time)

    # ---- secret ---------------------------------------------------------
    @property
    def secret(self) -> VaultSecret:
        return VaultSecret(
            private_key=self.keypair.private_key_hex,
            public_key_hash=self.keypair.public_key_hash_hex,
            locking_script=self.locking_script.hex(),
            script_type=self.script_type,
            security_level=self.security_level.value,
            lock_time=self.lock_time,
            unlock_info=self.unlock_info,
            network=self.network,
            version=(
                SECRET_VERSION if self.policy.range_guard
                else UNGUARDED_WOTS16_VERSION
            ),
            ephemeral_private_key=(
                self.covenant_key.private_key.hex()
                if self.covenant_key is not None else None
            ),
            covenant=True if self.policy.covenant else None,
            wots16=(
                self.wots16_keypair.to_dict()
                if self.wots16_keypair is not None else None
            ),
        )

    # ---- sizing ---------------------------------------------------------
    def unlocking_script_size(self) -> int:
        """Worst-case scriptSig size for one input."""
        if self.policy.scheme is SpendScheme.WOTS16:
            # remaining <= 15 is a one-byte opcode, value a 33-byte push
            size = 68 * (1 + 33)
            if self.policy.covenant:
                size += _push_size(_sighash_preimage_size(self.script_size))
                size += _push_size(MAX_COVENANT_SIG_SIZE)
            return size
        size = _push_size(len(self.keypair.public_key))
        if self.policy.covenant:
            size += _push_size(MAX_COVENANT_SIG_SIZE)
        return size

    def estimate_spend_size(self, n_inputs: int = 1) -> int:
        """Bytes of a sweep with ``n_inputs`` inputs and one P2PKH output."""
        script_sig = self.unlocking_script_size()
        per_input = 36 + len(compact_size(script_sig)) + script_sig + 4
        p2pkh_output = 8 + 1 + 25
        return (4 + len(compact_size(n_inputs)) + n_inputs * per_input
                + 1 + p2pkh_output + 4)

    def deposit_info(self) -> Dict[str, Any]:
        return {
            "method": "bare-script",
            "note": "Fund with a transaction whose output script is scriptHex; "
                    "the vault has no address form.",
            "scriptHex": self.locking_script.hex(),
            "scriptHash": self.woc_script_hash,
            "estimatedFee": self.script_size + 148,
        }

    def sweep_info(self) -> Dict[str, Any]:
        return {
            "unlockingScriptSize": self.unlocking_script_size(),
            "estimatedTxSize": self.estimate_spend_size(1),
            "estimatedFee": math.ceil(self.estimate_spend_size(1) * QuantumVault.DEFAULT_FEE_RATE),
        }

    def to_dict(self, include_secret: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "vaultId": self.vault_id,
            "scriptHash": self.script_hash,
            "wocScriptHash": self.woc_script_hash,
            "lockingScript": self.locking_script.hex(),
            "lockingScriptASM": self.locking_script_asm,
            "scriptSize": self.script_size,
            "scriptType": self.script_type,
            "securityLevel": self.security_level.value,
            "publicKeyHash": self.public_key_hash,
            "lockTime": self.lock_time,
            "unlockInfo": self.unlock_info,
            "frontRunImmune": self.policy.front_run_immune,
            "quantumSafeSpend": self.policy.quantum_safe_spend,
            "network": self.network,
            "depositInfo": self.deposit_info(),
            "sweepInfo": self.sweep_info(),
        }
        if include_secret:
            d["secret"] = self.secret.to_base64()
        return d


# ============================================================
# LIFECYCLE
# ============================================================

def create_vault(
    security_level: Union[str, SecurityLevel] = SecurityLevel.STANDARD,
    lock_time: int = 0,
    lock_type: Union[str, LockType] = LockType.BLOCKS,
    network: str = "mainnet",
    covenant: Optional[bool] = None,
    now: Optional[int] = None,
) -> VaultRecord:
    """Generate fresh keys and the locking script for a new vault."""
    level = _parse_enum(SecurityLevel, security_level, "security level")
    if network not in P2PKH_VERSIONS:
        raise ValidationError(f"Unknown network: {network}")
    effective_lock = resolve_lock_time(lock_time, lock_type, now)
    policy = VaultPolicy.from_level(level, effective_lock, covenant)

    keypair = WinternitzKeypair.generate()
    wots16_keypair = (
        WOTS16Keypair.generate() if policy.scheme is SpendScheme.WOTS16 else None
    )
    covenant_key = CovenantKey.generate() if policy.covenant else None

    vault = VaultRecord(
        keypair=keypair,
        policy=policy,
        security_level=level,
        locking_script=build_locking_script(policy, keypair, wots16_keypair, covenant_key),
        network=network,
        wots16_keypair=wots16_keypair,
        covenant_key=covenant_key,
    )
    log.info(
        "Vault created %s level=%s type=%s script=%d B lock=%d",
        vault.vault_id, level.value, vault.script_type, vault.script_size,
        vault.lock_time,
    )
    return vault


def restore_vault(secret: Union[str, VaultSecret]) -> VaultRecord:
    """
    Rebuild a vault from its secret, recomputing everything from the
    private scalars.

    Raises:
        ValidationError if the secret cannot be decoded.
        IntegrityError if stored hashes or the script disagree with the keys.
    """
    if not isinstance(secret, VaultSecret):
        secret = VaultSecret.from_base64(secret)

    keypair = WinternitzKeypair.from_private_hex(secret.private_key)
    if keypair.public_key_hash_hex != secret.public_key_hash.lower():
        log.error("Corrupted secret: public key hash mismatch")
        raise IntegrityError("Corrupted secret: public key hash mismatch")

    wots16_keypair = None
    if secret.wots16 is not None:
        wots16_keypair = WOTS16Keypair.from_dict(secret.wots16)
        stored_hash = secret.wots16.get("publicKeyHash")
        if stored_hash is not None and str(stored_hash).lower() != wots16_keypair.public_key_hash_hex:
            log.error("Corrupted secret: WOTS-16 public key hash mismatch")
            raise IntegrityError("Corrupted secret: WOTS-16 public key hash mismatch")
        stored_commitments = secret.wots16.get("publicCommitments")
        if stored_commitments is not None and [str(c).lower() for c in stored_commitments] != [
            c.hex() for c in wots16_keypair.public_commitments
        ]:
            log.error("Corrupted secret: WOTS-16 commitments mismatch")
            raise IntegrityError("Corrupted secret: WOTS-16 commitments mismatch")

    covenant_key = None
    if secret.ephemeral_private_key:
        covenant_key = CovenantKey.from_secret(secret.ephemeral_private_key)

    level = _parse_enum(SecurityLevel, secret.security_level, "security level")
    if secret.network not in P2PKH_VERSIONS:
        raise ValidationError(f"Unknown network: {secret.network}")
    policy = VaultPolicy.from_level(
        level, secret.lock_time, covenant=covenant_key is not None,
    )
    if (policy.scheme is SpendScheme.WOTS16) != (wots16_keypair is not None):
        log.error("Corrupted secret: WOTS-16 key does not match level %s", level.value)
        raise IntegrityError(
            f"Corrupted secret: WOTS-16 key does not match level {level.value}"
        )

    stored_script = None
    if secret.locking_script is not None:
        try:
            stored_script = bytes.fromhex(secret.locking_script)
        except ValueError as exc:
            raise ValidationError("Invalid secret format: lockingScript is not hex") from exc

    # v4 and older WOTS-16 vaults without a covenant were funded under the
    # unguarded verifier; that script is what the coins are locked to
    candidates = [policy]
    if (policy.scheme is SpendScheme.WOTS16 and not policy.covenant
            and secret.version <= UNGUARDED_WOTS16_VERSION):
        candidates.insert(0, replace(policy, range_guard=False))

    for candidate in candidates:
        locking_script = build_locking_script(
            candidate, keypair, wots16_keypair, covenant_key,
        )
        if stored_script is None or stored_script == locking_script:
            policy = candidate
            break
    else:
        log.error("Corrupted secret: locking script does not match keys")
        raise IntegrityError("Corrupted secret: locking script does not match keys")

    vault = VaultRecord(
        keypair=keypair,
        policy=policy,
        security_level=level,
        locking_script=locking_script,
        network=secret.network,
        wots16_keypair=wots16_keypair,
        covenant_key=covenant_key,
        version=secret.version,
    )
    log.info("Vault restored %s (secret v%d)", vault.vault_id, secret.version)
    return vault


def verify_secret(
    secret: Union[str, VaultSecret],
    script_hash: Optional[str] = None,
    vault_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Restore a secret and report whether it matches a script hash / vault ID."""
    vault = restore_vault(secret)
    expected_hashes = {vault.script_hash, vault.woc_script_hash}
    report: Dict[str, Any] = {
        "valid": True,
        "vaultId": vault.vault_id,
        "scriptHash": vault.script_hash,
        "wocScriptHash": vault.woc_script_hash,
        "securityLevel": vault.security_level.value,
        "scriptType": vault.script_type,
        "lockTime": vault.lock_time,
    }
    if script_hash is not None:
        report["scriptHashMatch"] = script_hash.lower() in expected_hashes
        report["valid"] = report["valid"] and report["scriptHashMatch"]
    if vault_id is not None:
        report["vaultIdMatch"] = vault_id == vault.vault_id
        report["valid"] = report["valid"] and report["vaultIdMatch"]
    return report


# ============================================================
# SPENDING
# ============================================================

@dataclass
class SweepTransaction:
    raw: bytes
    fee: int
    input_value: int
    output_value: int
    n_inputs: int
    destination: str
    fee_rate: float
    wots16_signature: Optional[WOTS16Signature] = field(default=None, repr=False)

    @property
    def raw_hex(self) -> str:
        return self.raw.hex()

    @property
    def size(self) -> int:
        return len(self.raw)

    @property
    def txid(self) -> str:
        return hash256(self.raw)[::-1].hex()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "rawTx": self.raw_hex,
            "size": self.size,
            "fee": self.fee,
            "inputValue": self.input_value,
            "outputValue": self.output_value,
            "inputs": self.n_inputs,
            "destination": self.destination,
            "feeRate": self.fee_rate,
        }


def build_spend(
    vault: VaultRecord,
    utxos: Sequence[Union[Utxo, Dict[str, Any]]],
    destination: str,
    fee_rate: float = 1.0,
) -> SweepTransaction:
    """
    Sweep every UTXO to one P2PKH output of ``total - fee``.

    Raises:
        ValidationError on empty input, bad destination or fee rate.
        InsufficientFundsError if the output would be below the dust limit;
        nothing has been signed at that point.
    """
    utxos = [u if isinstance(u, Utxo) else Utxo.from_dict(u) for u in utxos]
    if not utxos:
        raise ValidationError("No funds found in vault")
    if fee_rate <= 0:
        raise ValidationError(f"fee_rate must be positive, got {fee_rate}")
    output_script = address_to_script(destination)

    total = sum(u.value for u in utxos)
    fee = math.ceil(vault.estimate_spend_size(len(utxos)) * fee_rate)
    output_value = total - fee
    if output_value < QuantumVault.DUST_LIMIT_SATS:
        log.warning(
            "Sweep refused for %s: %d sats - %d fee below dust",
            vault.vault_id, total, fee,
        )
        raise InsufficientFundsError(total, fee, QuantumVault.DUST_LIMIT_SATS)

    sequence = SEQUENCE_LOCKTIME if vault.lock_time > 0 else SEQUENCE_FINAL
    tx = RawTransaction(
        version=1,
        locktime=vault.lock_time,
        inputs=[TxInput(txid=u.tx_hash, vout=u.tx_pos, sequence=sequence) for u in utxos],
        outputs=[TxOutput(value=output_value, script_pubkey=output_script)],
    )

    wots16_signature = None
    if vault.policy.scheme is SpendScheme.WOTS16:
        # one output set, one message: the same signature serves every input
        message = hash_outputs(tx.outputs)
        wots16_signature = vault.wots16_keypair.sign(message)
        if not vault.wots16_keypair.verify(message, wots16_signature):
            raise IntegrityError("WOTS-16 self-verification failed")

    for index, utxo in enumerate(utxos):
        tx.inputs[index].script_sig = _unlocking_script(
            vault, tx, index, utxo, wots16_signature,
        )

    raw = tx.serialize()
    sweep = SweepTransaction(
        raw=raw,
        fee=fee,
        input_value=total,
        output_value=output_value,
        n_inputs=len(utxos),
        destination=destination,
        fee_rate=fee_rate,
        wots16_signature=wots16_signature,
    )
    log.info(
        "Sweep built for %s: %d inputs, %d sats -> %s (fee %d, %d B)",
        vault.vault_id, len(utxos), output_value, destination, fee, sweep.size,
    )
    return sweep


def _unlocking_script(
    vault: VaultRecord,
    tx: RawTransaction,
    index: int,
    utxo: Utxo,
    wots16_signature: Optional[WOTS16Signature],
) -> bytes:
    policy = vault.policy
    covenant_signature = sighash_preimage = None
    if policy.covenant:
        sighash_preimage = ForkIdSighash(tx, index).preimage(
            vault.locking_script, utxo.value,
        )
        digest = hash256(sighash_preimage)
        covenant_signature = vault.covenant_key.sign(digest)
        if not vault.covenant_key.verify(digest, covenant_signature):
            raise IntegrityError(f"Covenant signature self-check failed (input {index})")

    if policy.scheme is SpendScheme.WOTS16:
        return wots16_unlocking_script(
            wots16_signature, sighash_preimage, covenant_signature,
        )
    if policy.covenant:
        return covenant_unlocking_script(vault.keypair.public_key, covenant_signature)
    return preimage_unlocking_script(vault.keypair.public_key)


# ============================================================
# ENCRYPTED PERSISTENCE
# ============================================================

SCRYPT_N = 2 ** 20


def save_secret_encrypted(
    filepath: Union[str, Path],
    secret: Union[str, VaultSecret],
    password: str,
    *,
    scrypt_n: int = SCRYPT_N,
) -> None:
    """
    Write a vault secret to disk encrypted with AES-256-GCM.

    KDF: scrypt(N=2^20, r=8, p=1) -> 32-byte key
    """
    if isinstance(secret, VaultSecret):
        secret = secret.to_base64()
    plaintext = secret.encode()

    kdf_salt = secrets.token_bytes(16)
    key = scrypt(password.encode(), kdf_salt, 32, N=scrypt_n, r=8, p=1)
    cipher = AES.new(key, AES.MODE_GCM)
    ct, tag = cipher.encrypt_and_digest(plaintext)

    blob = {
        "v": 1,
        "kdf": f"scrypt-N{scrypt_n.bit_length() - 1}-r8-p1",
        "n": scrypt_n,
        "salt": kdf_salt.hex(),
        "nonce": cipher.nonce.hex(),
        "tag": tag.hex(),
        "ct": b64encode(ct).decode(),
    }
    Path(filepath).write_text(json.dumps(blob, indent=2))
    log.info("Vault secret saved -> %s", filepath)


def load_secret_encrypted(filepath: Union[str, Path], password: str) -> str:
    """Decrypt a file written by :func:`save_secret_encrypted`; returns the base64 secret."""
    try:
        blob = json.loads(Path(filepath).read_text())
        kdf_salt = bytes.fromhex(blob["salt"])
        nonce = bytes.fromhex(blob["nonce"])
        tag = bytes.fromhex(blob["tag"])
        ct = b64decode(blob["ct"])
        scrypt_n = int(blob.get("n", SCRYPT_N))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid encrypted secret file: {exc}") from exc

    key = scrypt(password.encode(), kdf_salt, 32, N=scrypt_n, r=8, p=1)
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    try:
        plaintext = cipher.decrypt_and_verify(ct, tag)
    except ValueError as exc:
        log.warning("Decryption failed for %s", filepath)
        raise ValidationError("Wrong password or corrupted secret file") from exc
    log.info("Vault secret loaded <- %s", filepath)
    return plaintext.decode()


# ============================================================
# USER-FACING API
# ============================================================

class QuantumVault:
    """
    High-level vault API: create, check balance, sweep, verify.

    Key generation and signing are local; only ``balance``,
    ``prepare_sweep`` and ``sweep`` go through the ledger client.
    """

    DUST_LIMIT_SATS = 546
    MIN_SWEEP_SATS = 2000
    DEFAULT_FEE_RATE = 1        # sat/byte

    def __init__(
        self,
        network: str = "mainnet",
        client: Optional[LedgerClient] = None,
    ) -> None:
        self.network = network
        self.client = client or LedgerClient()

    def create(
        self,
        security_level: Union[str, SecurityLevel] = SecurityLevel.STANDARD,
        lock_time: int = 0,
        lock_type: Union[str, LockType] = LockType.BLOCKS,
        covenant: Optional[bool] = None,
    ) -> Dict[str, Any]:
        vault = create_vault(
            security_level, lock_time, lock_type, self.network, covenant,
        )
        return vault.to_dict()

    def balance(self, secret: Union[str, VaultSecret]) -> Dict[str, Any]:
        vault = restore_vault(secret)
        utxos = self.client.get_utxos_by_script_hash(vault.woc_script_hash)
        confirmed = sum(u.value for u in utxos if u.confirmed)
        unconfirmed = sum(u.value for u in utxos if not u.confirmed)
        total = confirmed + unconfirmed

        result: Dict[str, Any] = {
            "vaultId": vault.vault_id,
            "confirmed": confirmed,
            "unconfirmed": unconfirmed,
            "total": total,
            "bsv": total / 1e8,
            "utxoCount": len(utxos),
            "canSweep": total >= self.MIN_SWEEP_SATS,
        }
        try:
            price = self.client.get_price()
        except ProviderError as exc:
            log.warning("Price lookup failed: %s", exc)
            result["priceError"] = str(exc)
            price = 0.0
        result["price"] = price
        result["usd"] = round(total / 1e8 * price, 2)
        return result

    def prepare_sweep(
        self,
        secret: Union[str, VaultSecret],
        to_address: str,
        fee_rate: float = DEFAULT_FEE_RATE,
    ) -> SweepTransaction:
        """Restore, look up the vault's UTXOs and build the signed sweep."""
        vault = restore_vault(secret)
        utxos = self.client.get_utxos_by_script_hash(vault.woc_script_hash)
        if not utxos:
            raise ValidationError("No funds found in vault")
        return build_spend(vault, utxos, to_address, fee_rate)

    def sweep(
        self,
        secret: Union[str, VaultSecret],
        to_address: str,
        fee_rate: float = DEFAULT_FEE_RATE,
    ) -> Dict[str, Any]:
        """Build and broadcast in one call."""
        tx = self.prepare_sweep(secret, to_address, fee_rate)
        result = self.client.broadcast(tx.raw_hex)
        d = tx.to_dict()
        d.update(result.to_dict())
        return d

    def verify(
        self,
        secret: Union[str, VaultSecret],
        script_hash: Optional[str] = None,
        vault_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return verify_secret(secret, script_hash=script_hash, vault_id=vault_id)


# ============================================================
# SELF-TEST / DEMO
# ============================================================

def _run_demo() -> None:
    """Offline demo: every level, a signed sweep of a made-up UTXO."""
    setup_logging()
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    separator = "=" * 60
    destination = "1BoatSLRHtKNngkdXEeobR76b53LETtpyT"
    fake_utxo = Utxo(tx_hash=bytes(range(32)), tx_pos=0, value=100_000, height=1)

    for level in SecurityLevel:
        print(f"\n{separator}")
        print(f"  {level.value}")
        print(separator)

        t0 = time.perf_counter()
        vault = create_vault(level, lock_time=850_000 if level is SecurityLevel.ENHANCED else 0)
        keygen_ms = (time.perf_counter() - t0) * 1000
        print(f"  Create:  {keygen_ms:.1f} ms  ({vault.script_type}, {vault.script_size} B)")
        print(f"  VaultId: {vault.vault_id}")

        restored = restore_vault(vault.secret.to_base64())
        if restored.locking_script != vault.locking_script:
            raise SystemExit(f"FATAL: {level.value} restore mismatch")

        t0 = time.perf_counter()
        tx = build_spend(vault, [fake_utxo], destination)
        sign_ms = (time.perf_counter() - t0) * 1000
        print(f"  Sweep:   {sign_ms:.1f} ms  ({tx.size} B, fee {tx.fee}, out {tx.output_value})")
        print(f"  Txid:    {tx.txid}")


if __name__ == "__main__":
    _run_demo()
