"""
Error taxonomy for the quantum vault.

Every error carries a machine-readable ``kind`` and a human-readable
message.  Validation-type errors also derive from ``ValueError`` and
collaborator failures from ``RuntimeError`` so callers that only know the
built-in types keep working.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(Enum):
    VALIDATION = "validation"
    INTEGRITY = "integrity"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    PROVIDER = "provider"
    ENTROPY = "entropy"


class VaultError(Exception):
    """Base class for every error raised by the vault modules."""

    kind: ErrorKind = ErrorKind.VALIDATION
    fatal: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "error": self.message}


class ValidationError(VaultError, ValueError):
    """Malformed caller input: bad secret, wrong length, bad address."""

    kind = ErrorKind.VALIDATION


class IntegrityError(VaultError):
    """Recomputed key material disagrees with what a secret claims."""

    kind = ErrorKind.INTEGRITY


class InsufficientFundsError(VaultError, ValueError):
    """Inputs cannot cover the fee plus a spendable output."""

    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(
        self, total: int, fee: int, minimum: int,
    ) -> None:
        self.total = total
        self.fee = fee
        self.minimum = minimum
        self.output = total - fee
        super().__init__(
            f"Insufficient funds: {total} sats - {fee} fee = "
            f"{self.output} (minimum {minimum})"
        )

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update(total=self.total, fee=self.fee,
                 output=self.output, minimum=self.minimum)
        return d


class EntropyError(VaultError, RuntimeError):
    """The OS randomness source is unavailable.  Not retryable."""

    kind = ErrorKind.ENTROPY
    fatal = True


class ProviderError(VaultError, RuntimeError):
    """An external ledger service failed or rejected a request."""

    kind = ErrorKind.PROVIDER

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["provider"] = self.provider
        return d


class BroadcastError(ProviderError):
    """Every broadcast endpoint failed; ``failures`` keeps each reason."""

    def __init__(self, failures: Optional[List[str]] = None) -> None:
        self.failures = list(failures or [])
        detail = "; ".join(self.failures) or "no broadcast endpoints configured"
        super().__init__("broadcast", f"All broadcast attempts failed: {detail}")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["failures"] = self.failures
        return d
