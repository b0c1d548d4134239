# Core Module - Shared Utilities
#
# Shared functionality across blackvault modules:
# - Audit logging
# - Configuration
# - SQLite connection helpers

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    log_security_event,
)
from .config import VaultConfig, load_config

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "log_security_event",
    # Configuration
    "VaultConfig",
    "load_config",
]
