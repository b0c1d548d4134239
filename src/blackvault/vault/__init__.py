# Vault Module - encrypted credential storage
#
# Per-entry AES-256-GCM encryption under a PBKDF2-derived master key,
# lock/unlock session with idle auto-lock, SQLite persistence.

from .encryption import EncryptionService
from .errors import (
    AuthenticationFailure,
    DecryptionFailure,
    ErrorKind,
    NotFoundError,
    StorageError,
    ValidationError,
    VaultError,
    VaultLockedError,
    VaultResult,
)
from .passwords import PasswordOptions, StrengthReport, check_strength, generate_password
from .scheduler import ManualScheduler, Scheduler, ThreadingScheduler
from .session import SessionState, VaultSession
from .store import EncryptedStore
from .vault_manager import VaultManager

__all__ = [
    "VaultManager",
    "VaultSession",
    "SessionState",
    "EncryptedStore",
    "EncryptionService",
    "Scheduler",
    "ThreadingScheduler",
    "ManualScheduler",
    "PasswordOptions",
    "StrengthReport",
    "check_strength",
    "generate_password",
    "VaultResult",
    "ErrorKind",
    "VaultError",
    "AuthenticationFailure",
    "DecryptionFailure",
    "NotFoundError",
    "StorageError",
    "ValidationError",
    "VaultLockedError",
]
