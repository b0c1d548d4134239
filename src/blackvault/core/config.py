"""Vault configuration: typed, defaulted settings loaded from the environment.

Values come from ``BLACKVAULT_*`` environment variables; a ``.env`` file in
the working directory is loaded first (python-dotenv) without overriding
variables already set in the process environment.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)


# ── Defaults ────────────────────────────────────────────────────────

DEFAULT_VAULT_PATH = Path("data") / "vault.db"
DEFAULT_ITERATIONS = 100_000        # PBKDF2-HMAC-SHA256 work factor
DEFAULT_IDLE_TIMEOUT = 15 * 60      # seconds of inactivity before auto-lock
DEFAULT_HISTORY_LIMIT = 5           # old passwords retained per credential
DEFAULT_MIN_MASTER_STRENGTH = 3     # strength score required at setup ("Fair")
DEFAULT_AUDIT_DIR = Path("./audit_logs")

MIN_ITERATIONS = 1_000


@dataclass
class VaultConfig:
    """Runtime settings for a vault instance."""

    vault_path: Path = field(default_factory=lambda: DEFAULT_VAULT_PATH)
    pbkdf2_iterations: int = DEFAULT_ITERATIONS
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT
    history_limit: int = DEFAULT_HISTORY_LIMIT
    min_master_strength: int = DEFAULT_MIN_MASTER_STRENGTH
    audit_log_dir: Path = field(default_factory=lambda: DEFAULT_AUDIT_DIR)

    def __post_init__(self):
        self.vault_path = Path(self.vault_path)
        self.audit_log_dir = Path(self.audit_log_dir)
        if self.pbkdf2_iterations < MIN_ITERATIONS:
            raise ValueError(
                f"pbkdf2_iterations must be at least {MIN_ITERATIONS}"
            )
        if self.idle_timeout_seconds <= 0:
            raise ValueError("idle_timeout_seconds must be positive")
        if self.history_limit < 1:
            raise ValueError("history_limit must be at least 1")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


def load_config(dotenv: bool = True) -> VaultConfig:
    """Build a VaultConfig from the environment (and ``.env`` when present)."""
    if dotenv:
        load_dotenv(find_dotenv(usecwd=True), override=False)

    return VaultConfig(
        vault_path=Path(os.environ.get("BLACKVAULT_VAULT_PATH") or DEFAULT_VAULT_PATH),
        pbkdf2_iterations=_env_int("BLACKVAULT_ITERATIONS", DEFAULT_ITERATIONS),
        idle_timeout_seconds=_env_int("BLACKVAULT_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT),
        audit_log_dir=Path(os.environ.get("BLACKVAULT_AUDIT_DIR") or DEFAULT_AUDIT_DIR),
    )
