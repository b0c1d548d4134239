"""Vault error taxonomy and result values.

Inside the engine, failures are raised as ``VaultError`` subclasses. At the
``VaultManager`` boundary they are converted into ``VaultResult`` values so
callers (and batch reads) never have to catch exceptions.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional


class ErrorKind(str, Enum):
    WEAK_PASSWORD = "weak_password"
    AUTHENTICATION_FAILURE = "authentication_failure"
    VAULT_LOCKED = "vault_locked"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    STORAGE_ERROR = "storage_error"
    DECRYPTION_FAILURE = "decryption_failure"
    ALREADY_INITIALIZED = "already_initialized"
    NOT_INITIALIZED = "not_initialized"


# ── Exceptions ──────────────────────────────────────────────────────


class VaultError(Exception):
    """Base class for vault engine failures."""

    kind: ErrorKind = ErrorKind.STORAGE_ERROR


class WeakPasswordError(VaultError):
    kind = ErrorKind.WEAK_PASSWORD


class AuthenticationFailure(VaultError):
    """Unlock rejected. Deliberately says nothing about the cause."""

    kind = ErrorKind.AUTHENTICATION_FAILURE

    def __init__(self, message: str = "Incorrect master password"):
        super().__init__(message)


class VaultLockedError(VaultError):
    kind = ErrorKind.VAULT_LOCKED

    def __init__(self, message: str = "Vault is locked. Unlock vault first."):
        super().__init__(message)


class NotFoundError(VaultError):
    kind = ErrorKind.NOT_FOUND


class ValidationError(VaultError):
    kind = ErrorKind.VALIDATION_ERROR


class StorageError(VaultError):
    kind = ErrorKind.STORAGE_ERROR


class DecryptionFailure(VaultError):
    """Ciphertext failed authentication: tampered, truncated, or wrong key."""

    kind = ErrorKind.DECRYPTION_FAILURE

    def __init__(self, message: str = "Ciphertext failed authentication"):
        super().__init__(message)


class AlreadyInitializedError(VaultError):
    kind = ErrorKind.ALREADY_INITIALIZED

    def __init__(self, message: str = "Vault already exists. Use unlock() instead."):
        super().__init__(message)


class NotInitializedError(VaultError):
    kind = ErrorKind.NOT_INITIALIZED

    def __init__(self, message: str = "No master password set. Set up the vault first."):
        super().__init__(message)


class KeyMaterialError(VaultError):
    """Resident key is in an impossible state; the session must lock."""

    kind = ErrorKind.VAULT_LOCKED


# ── Results ─────────────────────────────────────────────────────────


@dataclass
class VaultResult:
    """Outcome of a VaultManager operation.

    ``flagged`` lists ids of entries a batch read skipped because their
    ciphertext could not be decrypted.
    """

    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    message: str = ""
    flagged: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, value: Any = None, message: str = "", flagged: Optional[List[str]] = None) -> "VaultResult":
        return cls(ok=True, value=value, message=message, flagged=list(flagged or []))

    @classmethod
    def failure(cls, error: ErrorKind, message: str, value: Any = None) -> "VaultResult":
        return cls(ok=False, value=value, error=error, message=message)

    @classmethod
    def from_error(cls, exc: VaultError) -> "VaultResult":
        return cls.failure(exc.kind, str(exc))

    def to_dict(self) -> dict:
        result = {"success": self.ok, "message": self.message}
        if self.ok:
            result["value"] = self.value
            if self.flagged:
                result["flagged"] = self.flagged
        else:
            result["error"] = self.error.value if self.error else None
            if self.value is not None:
                result["value"] = self.value
        return result
