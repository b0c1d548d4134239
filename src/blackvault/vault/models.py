"""Stored vault records.

Secret fields hold AES-256-GCM blobs (``nonce ‖ tag ‖ ciphertext``) as raw
bytes; only ``domain``, ``username``, ``title``, ``favicon`` and ``tags`` are
plaintext.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class MasterSettings:
    """Singleton row describing how to derive and verify the vault key."""

    salt: bytes
    iterations: int
    verification_ciphertext: bytes
    created_at: str = ""
    last_accessed_at: Optional[str] = None

    def __post_init__(self):
        if not self.created_at:
            self.created_at = utc_now()


@dataclass
class CredentialEntry:
    """A stored website credential."""

    domain: str
    encrypted_password: bytes
    id: str = field(default_factory=new_id)
    username: str = ""
    encrypted_notes: Optional[bytes] = None
    favicon: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    password_digest: Optional[str] = None   # keyed HMAC, duplicate detection only
    created_at: str = ""
    modified_at: str = ""
    last_used_at: Optional[str] = None
    use_count: int = 0

    def __post_init__(self):
        if not self.created_at:
            self.created_at = utc_now()
        if not self.modified_at:
            self.modified_at = self.created_at
        self.tags = sorted({t.strip() for t in self.tags if t and t.strip()})


@dataclass
class CredentialHistoryRecord:
    """A previous password of a credential, kept for recovery."""

    credential_id: str
    encrypted_old_password: bytes
    changed_at: str = ""
    id: Optional[int] = None

    def __post_init__(self):
        if not self.changed_at:
            self.changed_at = utc_now()


@dataclass
class SecureNote:
    """Free-form encrypted note."""

    title: str
    encrypted_content: bytes
    id: str = field(default_factory=new_id)
    created_at: str = ""
    modified_at: str = ""

    def __post_init__(self):
        if not self.created_at:
            self.created_at = utc_now()
        if not self.modified_at:
            self.modified_at = self.created_at
