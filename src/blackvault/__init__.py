# BlackVault - local master-password credential vault
#
# Credentials, password history and secure notes live in one SQLite file,
# each secret field sealed with AES-256-GCM under a key derived from the
# master password. The key is only ever held in memory while unlocked.

__version__ = "0.4.0"
__author__ = "BlackVault Team"
__description__ = "Local encrypted credential vault"

from .core import (
    EventType,
    EventSeverity,
    get_audit_logger,
    VaultConfig,
    load_config,
)
from .vault import VaultManager, VaultResult, ErrorKind

__all__ = [
    "__version__",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "VaultConfig",
    "load_config",
    "VaultManager",
    "VaultResult",
    "ErrorKind",
]
