# Vault Manager - Encrypted Credential Vault
#
# Composes VaultSession (key + lock state) and EncryptedStore (SQLite rows)
# into the operation set the application shell calls.
#
# Every operation returns a VaultResult; nothing raises past this class.
# Per-entry AES-256-GCM encryption; master password verified via an
# encrypted marker; failed unlocks rate-limited with exponential backoff.

import hmac
import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..core import EventSeverity, EventType, VaultConfig, get_audit_logger, load_config
from ..core.audit_log import AuditLogger
from .encryption import EncryptionService
from .errors import (
    AuthenticationFailure,
    DecryptionFailure,
    ErrorKind,
    NotFoundError,
    NotInitializedError,
    StorageError,
    ValidationError,
    VaultError,
    VaultResult,
)
from .models import CredentialEntry, CredentialHistoryRecord, MasterSettings, SecureNote
from .passwords import PasswordOptions, check_strength, generate_password
from .scheduler import Scheduler
from .session import LOCK_IDLE, LOCK_KEY_ERROR, LOCK_MANUAL, VaultSession
from .store import EncryptedStore

logger = logging.getLogger(__name__)

EXPORT_FORMAT = "blackvault-export"
EXPORT_VERSION = 1

DUPLICATE_INDEX_PURPOSE = b"duplicate-index"

CREDENTIAL_FIELDS = {"domain", "username", "password", "notes", "tags", "favicon"}

MAX_UNLOCK_BACKOFF = 16  # seconds


class VaultManager:
    """
    Manages the encrypted credential vault.

    Security:
    - Each secret field encrypted with AES-256-GCM (per-entry encryption)
    - Master password verified via encrypted marker, never stored
    - Key wiped from memory on lock / idle timeout / shutdown
    - Audit logging for all vault access (never secret values)

    Args:
        vault_path: Database file; overrides ``config.vault_path``.
        config: Settings (default: load_config() from the environment).
        scheduler: Idle-lock scheduler (default: ThreadingScheduler).
        now: Wall clock for stored timestamps (injectable for tests).
        audit_logger: Audit sink (default: the global AuditLogger).
    """

    def __init__(
        self,
        vault_path: Optional[Union[str, Path]] = None,
        config: Optional[VaultConfig] = None,
        scheduler: Optional[Scheduler] = None,
        now: Optional[Callable[[], datetime]] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        config = config or load_config()
        if vault_path is not None:
            config = replace(config, vault_path=Path(vault_path))
        self.config = config

        self.store = EncryptedStore(
            self.config.vault_path,
            history_limit=self.config.history_limit,
            now=now,
        )
        self.session = VaultSession(
            self.store,
            scheduler=scheduler,
            idle_timeout=self.config.idle_timeout_seconds,
            iterations=self.config.pbkdf2_iterations,
            on_lock=self._on_session_locked,
        )
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.logger = audit_logger or get_audit_logger()

        # Rate limiting for unlock attempts (prevent brute force)
        self.failed_attempts = 0
        self.lockout_until: Optional[float] = None

    @property
    def vault_path(self) -> Path:
        return self.config.vault_path

    # ── Internal helpers ────────────────────────────────────────────

    def _on_session_locked(self, reason: str):
        if reason == LOCK_IDLE:
            self.logger.log_event(
                event_type=EventType.VAULT_AUTO_LOCKED,
                severity=EventSeverity.INFO,
                message="Vault auto-locked after inactivity",
            )
        elif reason == LOCK_KEY_ERROR:
            self.logger.log_event(
                event_type=EventType.VAULT_ERROR,
                severity=EventSeverity.CRITICAL,
                message="Vault locked: resident key material was invalid",
            )
        else:
            self.logger.log_event(
                event_type=EventType.VAULT_LOCKED,
                severity=EventSeverity.INFO,
                message="Vault locked",
                details={"reason": reason},
            )

    def _log_error(self, action: str, exc: Exception):
        self.logger.log_event(
            event_type=EventType.VAULT_ERROR,
            severity=EventSeverity.CRITICAL,
            message=f"Failed to {action}: {exc}",
        )

    def _unlocked(self, action: str, operation: Callable[[bytes], VaultResult]) -> VaultResult:
        """Run ``operation`` with a by-value copy of the vault key.

        Fails with VAULT_LOCKED before touching storage when the session is
        not unlocked. Every call made while unlocked restarts the idle timer.
        A master password change waits until the operation returns.
        """
        try:
            with self.session.keyed_operation() as key:
                self.session.touch()
                return operation(key)
        except StorageError as e:
            self._log_error(action, e)
            return VaultResult.from_error(e)
        except VaultError as e:
            return VaultResult.from_error(e)

    def _digest(self, key: bytes, password: str) -> str:
        subkey = EncryptionService.derive_subkey(key, DUPLICATE_INDEX_PURPOSE)
        return EncryptionService.keyed_digest(subkey, password)

    @staticmethod
    def _credential_summary(entry: CredentialEntry) -> Dict[str, Any]:
        """Plaintext fields of a credential (no secrets)."""
        return {
            "id": entry.id,
            "domain": entry.domain,
            "username": entry.username,
            "favicon": entry.favicon,
            "tags": list(entry.tags),
            "created_at": entry.created_at,
            "modified_at": entry.modified_at,
            "last_used_at": entry.last_used_at,
            "use_count": entry.use_count,
        }

    def _decrypt_credential(self, key: bytes, entry: CredentialEntry) -> Dict[str, Any]:
        result = self._credential_summary(entry)
        result["password"] = EncryptionService.decrypt_text(key, entry.encrypted_password)
        result["notes"] = (
            EncryptionService.decrypt_text(key, entry.encrypted_notes)
            if entry.encrypted_notes is not None else None
        )
        return result

    def _decrypt_note(self, key: bytes, note: SecureNote) -> Dict[str, Any]:
        return {
            "id": note.id,
            "title": note.title,
            "content": EncryptionService.decrypt_text(key, note.encrypted_content),
            "created_at": note.created_at,
            "modified_at": note.modified_at,
        }

    def _decrypt_batch(self, items: List[Any], decrypt_one: Callable[[Any], Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[str]]:
        """Decrypt a batch; entries that fail are skipped and their ids flagged."""
        decrypted, flagged = [], []
        for item in items:
            try:
                decrypted.append(decrypt_one(item))
            except DecryptionFailure:
                flagged.append(str(item.id))
        if flagged:
            logger.warning("Skipped %d entries that failed to decrypt", len(flagged))
            self.logger.log_event(
                event_type=EventType.ENTRY_DECRYPT_FAILED,
                severity=EventSeverity.ALERT,
                message=f"{len(flagged)} vault entries failed authentication",
                details={"entry_ids": flagged},
            )
        return decrypted, flagged

    # ── Master password / session ───────────────────────────────────

    def has_master_password(self) -> bool:
        return self.session.is_initialized

    def is_locked(self) -> bool:
        return not self.session.is_unlocked

    def setup_master_password(self, master_password: str) -> VaultResult:
        """
        Create the vault with a master password and leave it unlocked.

        Rejected with WEAK_PASSWORD when the strength score is below
        ``config.min_master_strength``.
        """
        report = check_strength(master_password)
        if report.score < self.config.min_master_strength:
            return VaultResult.failure(
                ErrorKind.WEAK_PASSWORD,
                "Password is too weak. Please use a stronger password.",
                value=report.to_dict(),
            )

        try:
            self.session.setup(master_password)
        except VaultError as e:
            if isinstance(e, StorageError):
                self._log_error("initialize vault", e)
            return VaultResult.from_error(e)

        self.logger.log_event(
            event_type=EventType.VAULT_CREATED,
            severity=EventSeverity.INFO,
            message="Vault initialized with master password",
            details={"iterations": self.session.iterations},
        )
        return VaultResult.success(message="Master password set successfully")

    def unlock(self, master_password: str) -> VaultResult:
        """
        Unlock the vault with the master password.

        Failed attempts back off exponentially:
        - 1st failed attempt: no delay
        - 2nd failed attempt: 2 second delay
        - 3rd failed attempt: 4 second delay
        - 4th failed attempt: 8 second delay
        - 5th+ failed attempt: 16 second delay
        """
        now = self.session.scheduler.now()
        if self.lockout_until is not None and now < self.lockout_until:
            remaining = int(self.lockout_until - now) + 1
            self.logger.log_event(
                event_type=EventType.VAULT_UNLOCK_FAILED,
                severity=EventSeverity.ALERT,
                message=f"Unlock attempt during lockout period ({remaining}s remaining)",
            )
            return VaultResult.failure(
                ErrorKind.AUTHENTICATION_FAILURE,
                f"Too many failed attempts. Please wait {remaining} seconds.",
            )

        try:
            self.session.unlock(master_password)
        except NotInitializedError as e:
            return VaultResult.from_error(e)
        except AuthenticationFailure:
            return self._handle_failed_unlock()
        except StorageError as e:
            # Unreadable settings look exactly like a wrong password
            logger.error("Unlock failed on storage error: %s", e)
            return self._handle_failed_unlock()

        self.failed_attempts = 0
        self.lockout_until = None
        self.logger.log_event(
            event_type=EventType.VAULT_UNLOCKED,
            severity=EventSeverity.INFO,
            message="Vault unlocked successfully",
        )
        return VaultResult.success(message="Vault unlocked")

    def _handle_failed_unlock(self) -> VaultResult:
        """Rate-limited failure response for wrong password attempts."""
        self.failed_attempts += 1
        delay_seconds = 0 if self.failed_attempts == 1 else min(2 ** (self.failed_attempts - 1), MAX_UNLOCK_BACKOFF)
        if delay_seconds:
            self.lockout_until = self.session.scheduler.now() + delay_seconds

        self.logger.log_event(
            event_type=EventType.VAULT_UNLOCK_FAILED,
            severity=EventSeverity.ALERT,
            message=f"Vault unlock failed (attempt {self.failed_attempts}, {delay_seconds}s lockout)",
        )
        return VaultResult.failure(ErrorKind.AUTHENTICATION_FAILURE, "Incorrect master password")

    def lock(self) -> VaultResult:
        """Lock vault (wipe the key from memory)."""
        self.session.lock(LOCK_MANUAL)
        return VaultResult.success(message="Vault locked")

    def change_master_password(self, current_password: str, new_password: str) -> VaultResult:
        """Re-derive the key under a new password and re-encrypt every blob.

        All rows and the new master settings are written in one
        transaction; any entry that cannot be decrypted aborts the change.
        """
        report = check_strength(new_password)
        if report.score < self.config.min_master_strength:
            return VaultResult.failure(
                ErrorKind.WEAK_PASSWORD,
                "Password is too weak. Please use a stronger password.",
                value=report.to_dict(),
            )

        def reencrypt_rows(old_key: bytes, new_key: bytes, snapshot: Dict[str, List[Any]]) -> Dict[str, List[Any]]:
            credentials = []
            for entry in snapshot["credentials"]:
                password = EncryptionService.decrypt_text(old_key, entry.encrypted_password)
                entry.encrypted_password = EncryptionService.encrypt_text(new_key, password)
                entry.password_digest = self._digest(new_key, password)
                if entry.encrypted_notes is not None:
                    notes = EncryptionService.decrypt_text(old_key, entry.encrypted_notes)
                    entry.encrypted_notes = EncryptionService.encrypt_text(new_key, notes)
                credentials.append(entry)
            history = []
            for record in snapshot["history"]:
                old_password = EncryptionService.decrypt(old_key, record.encrypted_old_password)
                record.encrypted_old_password = EncryptionService.encrypt(new_key, old_password)
                history.append(record)
            notes_out = []
            for note in snapshot["notes"]:
                content = EncryptionService.decrypt(old_key, note.encrypted_content)
                note.encrypted_content = EncryptionService.encrypt(new_key, content)
                notes_out.append(note)
            return {"credentials": credentials, "history": history, "notes": notes_out}

        def reencrypt(old_key: bytes, new_key: bytes, settings: MasterSettings):
            self.store.rekey(settings, lambda snapshot: reencrypt_rows(old_key, new_key, snapshot))

        try:
            self.session.change_password(current_password, new_password, reencrypt)
        except AuthenticationFailure as e:
            self.logger.log_event(
                event_type=EventType.VAULT_UNLOCK_FAILED,
                severity=EventSeverity.ALERT,
                message="Master password change rejected: incorrect current password",
            )
            return VaultResult.from_error(e)
        except (DecryptionFailure, StorageError) as e:
            self._log_error("change master password", e)
            return VaultResult.from_error(e)
        except VaultError as e:
            return VaultResult.from_error(e)

        self.logger.log_event(
            event_type=EventType.VAULT_PASSWORD_CHANGED,
            severity=EventSeverity.INFO,
            message="Master password changed",
        )
        return VaultResult.success(message="Master password changed")

    def reset_vault(self, master_password: str) -> VaultResult:
        """Delete everything, including master settings. Requires the password."""
        try:
            self.session.verify_password(master_password)
            self.session.reset()
        except VaultError as e:
            return VaultResult.from_error(e)

        self.failed_attempts = 0
        self.lockout_until = None
        self.logger.log_event(
            event_type=EventType.VAULT_RESET,
            severity=EventSeverity.ALERT,
            message="Vault reset: all entries and master settings deleted",
        )
        return VaultResult.success(message="Vault reset")

    def shutdown(self):
        """Lock and stop the idle timer (process teardown)."""
        self.session.shutdown()

    # ── Credentials ─────────────────────────────────────────────────

    def add_credential(
        self,
        domain: str,
        username: Optional[str] = None,
        password: str = "",
        notes: Optional[str] = None,
        tags: Optional[List[str]] = None,
        favicon: Optional[str] = None,
    ) -> VaultResult:
        """
        Add a new credential.

        Returns:
            VaultResult with the new credential id as value.
        """
        def operation(key: bytes) -> VaultResult:
            if not domain or not domain.strip():
                raise ValidationError("Domain is required")
            if not password:
                raise ValidationError("Password is required")

            entry = CredentialEntry(
                domain=domain.strip(),
                username=(username or "").strip(),
                encrypted_password=EncryptionService.encrypt_text(key, password),
                encrypted_notes=EncryptionService.encrypt_text(key, notes) if notes else None,
                favicon=favicon,
                tags=list(tags or []),
                password_digest=self._digest(key, password),
            )
            self.store.save_credential(entry)

            self.logger.log_event(
                event_type=EventType.CREDENTIAL_ADDED,
                severity=EventSeverity.INFO,
                message=f"Credential added to vault: {entry.domain}",
                details={"credential_id": entry.id},
            )
            return VaultResult.success(entry.id, message="Credential saved successfully")

        return self._unlocked("add credential", operation)

    def get_credentials(self, domain_filter: Optional[str] = None) -> VaultResult:
        """All credentials (decrypted), most recently used first."""
        def operation(key: bytes) -> VaultResult:
            entries = self.store.list_credentials(domain_filter)
            decrypted, flagged = self._decrypt_batch(entries, lambda e: self._decrypt_credential(key, e))
            return VaultResult.success(decrypted, flagged=flagged)

        return self._unlocked("list credentials", operation)

    def get_credential(self, credential_id: str) -> VaultResult:
        """One credential (decrypted). Counts as a use of the credential."""
        def operation(key: bytes) -> VaultResult:
            entry = self.store.get_credential(credential_id)
            if entry is None:
                raise NotFoundError("Credential not found")
            decrypted = self._decrypt_credential(key, entry)
            self.store.record_usage(credential_id)

            self.logger.log_event(
                event_type=EventType.CREDENTIAL_ACCESSED,
                severity=EventSeverity.INFO,
                message=f"Credential accessed: {entry.domain}",
                details={"credential_id": credential_id},
            )
            return VaultResult.success(decrypted)

        return self._unlocked("get credential", operation)

    def update_credential(self, credential_id: str, fields: Optional[Dict[str, Any]] = None, **kwargs) -> VaultResult:
        """
        Update fields of a credential.

        Accepted fields: domain, username, password, notes, tags, favicon.
        Omitted fields keep their stored value; ``notes=""`` clears notes.
        A new password pushes the previous one into history.
        """
        changes = dict(fields or {})
        changes.update(kwargs)

        def operation(key: bytes) -> VaultResult:
            unknown = set(changes) - CREDENTIAL_FIELDS
            if unknown:
                raise ValidationError(f"Unknown credential fields: {', '.join(sorted(unknown))}")

            entry = self.store.get_credential(credential_id)
            if entry is None:
                raise NotFoundError("Credential not found")

            if "domain" in changes:
                domain = (changes["domain"] or "").strip()
                if not domain:
                    raise ValidationError("Domain is required")
                entry.domain = domain
            if "username" in changes:
                entry.username = (changes["username"] or "").strip()
            if "password" in changes:
                password = changes["password"]
                if not password:
                    raise ValidationError("Password is required")
                entry.encrypted_password = EncryptionService.encrypt_text(key, password)
                entry.password_digest = self._digest(key, password)
            if "notes" in changes and changes["notes"] is not None:
                notes = changes["notes"]
                entry.encrypted_notes = EncryptionService.encrypt_text(key, notes) if notes else None
            if "tags" in changes:
                entry.tags = sorted({t.strip() for t in (changes["tags"] or []) if t and t.strip()})
            if "favicon" in changes:
                entry.favicon = changes["favicon"]

            self.store.save_credential(entry)
            self.logger.log_event(
                event_type=EventType.CREDENTIAL_UPDATED,
                severity=EventSeverity.INFO,
                message=f"Credential updated: {entry.domain}",
                details={"credential_id": credential_id, "fields": sorted(changes)},
            )
            return VaultResult.success(message="Credential updated successfully")

        return self._unlocked("update credential", operation)

    def delete_credential(self, credential_id: str) -> VaultResult:
        """Delete a credential and its password history."""
        def operation(key: bytes) -> VaultResult:
            deleted = self.store.delete_credential(credential_id)
            if deleted:
                self.logger.log_event(
                    event_type=EventType.CREDENTIAL_DELETED,
                    severity=EventSeverity.INFO,
                    message="Credential deleted from vault",
                    details={"credential_id": credential_id},
                )
            return VaultResult.success(deleted, message="Credential deleted successfully")

        return self._unlocked("delete credential", operation)

    def search_credentials(self, query: str) -> VaultResult:
        """Credentials whose domain or username contains ``query``."""
        def operation(key: bytes) -> VaultResult:
            entries = self.store.search_credentials(query or "")
            decrypted, flagged = self._decrypt_batch(entries, lambda e: self._decrypt_credential(key, e))
            return VaultResult.success(decrypted, flagged=flagged)

        return self._unlocked("search credentials", operation)

    def get_credentials_by_tag(self, tag: str) -> VaultResult:
        def operation(key: bytes) -> VaultResult:
            entries = self.store.list_credentials_by_tag(tag)
            decrypted, flagged = self._decrypt_batch(entries, lambda e: self._decrypt_credential(key, e))
            return VaultResult.success(decrypted, flagged=flagged)

        return self._unlocked("list credentials by tag", operation)

    def get_password_history(self, credential_id: str) -> VaultResult:
        """Previous passwords of a credential, newest first."""
        def operation(key: bytes) -> VaultResult:
            if self.store.get_credential(credential_id) is None:
                raise NotFoundError("Credential not found")
            records = self.store.get_history(credential_id)
            decrypted, flagged = self._decrypt_batch(
                records,
                lambda r: {
                    "id": r.id,
                    "changed_at": r.changed_at,
                    "password": EncryptionService.decrypt_text(key, r.encrypted_old_password),
                },
            )
            return VaultResult.success(decrypted, flagged=flagged)

        return self._unlocked("get password history", operation)

    def find_duplicates(self) -> VaultResult:
        """Groups of credentials that share the same password (no secrets returned)."""
        def operation(key: bytes) -> VaultResult:
            groups = self.store.find_duplicate_credential_groups()
            return VaultResult.success(
                [[self._credential_summary(e) for e in group] for group in groups]
            )

        return self._unlocked("find duplicates", operation)

    def get_all_tags(self) -> VaultResult:
        return self._unlocked("list tags", lambda key: VaultResult.success(self.store.list_tags()))

    # ── Password tools ──────────────────────────────────────────────

    def generate_password(self, options: Optional[Union[PasswordOptions, Dict[str, Any]]] = None, **kwargs) -> VaultResult:
        """Generate a password; works while locked (touches no stored data)."""
        try:
            if options is None:
                options = PasswordOptions(**kwargs)
            elif isinstance(options, dict):
                options = PasswordOptions(**{**options, **kwargs})
            password = generate_password(options)
        except (TypeError, ValueError) as e:
            return VaultResult.failure(ErrorKind.VALIDATION_ERROR, str(e))

        return VaultResult.success({
            "password": password,
            "strength": check_strength(password).to_dict(),
        })

    def check_strength(self, password: str) -> VaultResult:
        return VaultResult.success(check_strength(password).to_dict())

    # ── Secure notes ────────────────────────────────────────────────

    def add_note(self, title: str, content: str) -> VaultResult:
        def operation(key: bytes) -> VaultResult:
            if not title or not title.strip():
                raise ValidationError("Title is required")
            note = SecureNote(
                title=title.strip(),
                encrypted_content=EncryptionService.encrypt_text(key, content or ""),
            )
            self.store.save_note(note)
            self.logger.log_event(
                event_type=EventType.NOTE_ADDED,
                severity=EventSeverity.INFO,
                message="Secure note added",
                details={"note_id": note.id},
            )
            return VaultResult.success(note.id, message="Note saved successfully")

        return self._unlocked("add note", operation)

    def get_notes(self) -> VaultResult:
        def operation(key: bytes) -> VaultResult:
            notes = self.store.list_notes()
            decrypted, flagged = self._decrypt_batch(notes, lambda n: self._decrypt_note(key, n))
            return VaultResult.success(decrypted, flagged=flagged)

        return self._unlocked("list notes", operation)

    def get_note(self, note_id: str) -> VaultResult:
        def operation(key: bytes) -> VaultResult:
            note = self.store.get_note(note_id)
            if note is None:
                raise NotFoundError("Note not found")
            return VaultResult.success(self._decrypt_note(key, note))

        return self._unlocked("get note", operation)

    def update_note(self, note_id: str, title: Optional[str] = None, content: Optional[str] = None) -> VaultResult:
        def operation(key: bytes) -> VaultResult:
            note = self.store.get_note(note_id)
            if note is None:
                raise NotFoundError("Note not found")
            if title is not None:
                if not title.strip():
                    raise ValidationError("Title is required")
                note.title = title.strip()
            if content is not None:
                note.encrypted_content = EncryptionService.encrypt_text(key, content)
            self.store.save_note(note)
            self.logger.log_event(
                event_type=EventType.NOTE_UPDATED,
                severity=EventSeverity.INFO,
                message="Secure note updated",
                details={"note_id": note_id},
            )
            return VaultResult.success(message="Note updated successfully")

        return self._unlocked("update note", operation)

    def delete_note(self, note_id: str) -> VaultResult:
        def operation(key: bytes) -> VaultResult:
            deleted = self.store.delete_note(note_id)
            if deleted:
                self.logger.log_event(
                    event_type=EventType.NOTE_DELETED,
                    severity=EventSeverity.INFO,
                    message="Secure note deleted",
                    details={"note_id": note_id},
                )
            return VaultResult.success(deleted, message="Note deleted successfully")

        return self._unlocked("delete note", operation)

    # ── Statistics ──────────────────────────────────────────────────

    def get_statistics(self) -> VaultResult:
        return self._unlocked("get statistics", lambda key: VaultResult.success(self.store.get_statistics()))

    # ── Backup ──────────────────────────────────────────────────────

    def export_data(self) -> VaultResult:
        """
        Export every row as an encrypted bundle.

        The bundle carries the vault salt and iteration count in the clear
        so that, given the master password, another vault can import it.
        Everything else is inside ``payload``, encrypted with the vault key.
        """
        def operation(key: bytes) -> VaultResult:
            snapshot = self.store.export_all()
            settings = snapshot["settings"]
            if settings is None:
                raise NotInitializedError()

            b64 = EncryptionService.encode_for_storage
            rows = {
                "credentials": [
                    {
                        "id": e.id,
                        "domain": e.domain,
                        "username": e.username,
                        "encrypted_password": b64(e.encrypted_password),
                        "encrypted_notes": b64(e.encrypted_notes) if e.encrypted_notes is not None else None,
                        "favicon": e.favicon,
                        "tags": e.tags,
                        "password_digest": e.password_digest,
                        "created_at": e.created_at,
                        "modified_at": e.modified_at,
                        "last_used_at": e.last_used_at,
                        "use_count": e.use_count,
                    }
                    for e in snapshot["credentials"]
                ],
                "history": [
                    {
                        "credential_id": r.credential_id,
                        "encrypted_old_password": b64(r.encrypted_old_password),
                        "changed_at": r.changed_at,
                    }
                    for r in snapshot["history"]
                ],
                "notes": [
                    {
                        "id": n.id,
                        "title": n.title,
                        "encrypted_content": b64(n.encrypted_content),
                        "created_at": n.created_at,
                        "modified_at": n.modified_at,
                    }
                    for n in snapshot["notes"]
                ],
            }
            payload = EncryptionService.encrypt(key, json.dumps(rows).encode("utf-8"))
            bundle = {
                "format": EXPORT_FORMAT,
                "version": EXPORT_VERSION,
                "exported_at": self._now().isoformat(),
                "salt": b64(settings.salt),
                "iterations": settings.iterations,
                "payload": b64(payload),
            }

            self.logger.log_event(
                event_type=EventType.VAULT_EXPORTED,
                severity=EventSeverity.ALERT,
                message="Vault exported",
                details={
                    "credentials": len(rows["credentials"]),
                    "notes": len(rows["notes"]),
                },
            )
            return VaultResult.success(bundle)

        return self._unlocked("export vault", operation)

    def import_data(self, bundle: Dict[str, Any], password: Optional[str] = None) -> VaultResult:
        """
        Import an export_data() bundle.

        Without ``password`` the bundle must come from this vault (same
        key). With ``password`` the source key is re-derived from the
        bundle's salt/iterations and every blob is re-encrypted under this
        vault's key. Entries that fail to decrypt are skipped.

        Returns:
            VaultResult with counts: credentials, history, notes, skipped.
        """
        def operation(key: bytes) -> VaultResult:
            source_key, rows = self._open_bundle(key, bundle, password)
            same_key = hmac.compare_digest(source_key, key)
            parsed, skipped = self._parse_bundle_rows(rows, source_key, key, same_key)

            counts = self.store.import_all(parsed)
            counts["skipped"] = len(skipped)

            self.logger.log_event(
                event_type=EventType.VAULT_IMPORTED,
                severity=EventSeverity.ALERT,
                message="Vault data imported",
                details=counts,
            )
            return VaultResult.success(counts, flagged=skipped)

        return self._unlocked("import vault", operation)

    @staticmethod
    def _open_bundle(key: bytes, bundle: Dict[str, Any], password: Optional[str]) -> Tuple[bytes, Dict[str, Any]]:
        if not isinstance(bundle, dict) or bundle.get("format") != EXPORT_FORMAT:
            raise ValidationError("Not a blackvault export bundle")
        if bundle.get("version") != EXPORT_VERSION:
            raise ValidationError(f"Unsupported bundle version: {bundle.get('version')}")

        try:
            payload = EncryptionService.decode_from_storage(bundle["payload"])
            source_key = key
            if password is not None:
                salt = EncryptionService.decode_from_storage(bundle["salt"])
                iterations = int(bundle["iterations"])
                if iterations < 1:
                    raise ValueError(f"iterations must be positive, got {iterations}")
                source_key = EncryptionService.derive_key(password, salt, iterations)
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise ValidationError(f"Malformed export bundle: {e}") from None

        try:
            plaintext = EncryptionService.decrypt(source_key, payload)
        except DecryptionFailure:
            raise DecryptionFailure("Bundle could not be decrypted with this key") from None

        try:
            rows = json.loads(plaintext.decode("utf-8"))
        except ValueError as e:
            raise ValidationError(f"Malformed export payload: {e}") from None
        if not isinstance(rows, dict):
            raise ValidationError("Malformed export payload")
        for section in ("credentials", "history", "notes"):
            if not isinstance(rows.get(section) or [], list):
                raise ValidationError(f"Malformed export payload: {section} is not a list")
        return source_key, rows

    def _parse_bundle_rows(
        self,
        rows: Dict[str, Any],
        source_key: bytes,
        key: bytes,
        same_key: bool,
    ) -> Tuple[Dict[str, list], List[str]]:
        """Turn payload rows into models, re-encrypting when keys differ."""
        decode = EncryptionService.decode_from_storage
        skipped: List[str] = []

        def reseal(blob: bytes) -> bytes:
            if same_key:
                # Still authenticate, so a corrupt blob is never imported
                EncryptionService.decrypt(key, blob)
                return blob
            return EncryptionService.encrypt(key, EncryptionService.decrypt(source_key, blob))

        credentials = []
        for row in rows.get("credentials") or []:
            try:
                password_blob = decode(row["encrypted_password"])
                password = EncryptionService.decrypt_text(source_key, password_blob)
                notes_blob = decode(row["encrypted_notes"]) if row.get("encrypted_notes") else None
                credentials.append(CredentialEntry(
                    id=row["id"],
                    domain=row["domain"],
                    username=row.get("username") or "",
                    encrypted_password=password_blob if same_key else EncryptionService.encrypt_text(key, password),
                    encrypted_notes=reseal(notes_blob) if notes_blob is not None else None,
                    favicon=row.get("favicon"),
                    tags=row.get("tags") or [],
                    password_digest=self._digest(key, password),
                    created_at=row.get("created_at") or "",
                    modified_at=row.get("modified_at") or "",
                    last_used_at=row.get("last_used_at"),
                    use_count=int(row.get("use_count") or 0),
                ))
            except (DecryptionFailure, KeyError, TypeError, ValueError):
                skipped.append(str(row.get("id") if isinstance(row, dict) else row))

        history = []
        for row in rows.get("history") or []:
            try:
                history.append(CredentialHistoryRecord(
                    credential_id=row["credential_id"],
                    encrypted_old_password=reseal(decode(row["encrypted_old_password"])),
                    changed_at=row.get("changed_at") or "",
                ))
            except (DecryptionFailure, KeyError, TypeError, ValueError):
                skipped.append(f"history:{row.get('credential_id') if isinstance(row, dict) else row}")

        notes = []
        for row in rows.get("notes") or []:
            try:
                notes.append(SecureNote(
                    id=row["id"],
                    title=row["title"],
                    encrypted_content=reseal(decode(row["encrypted_content"])),
                    created_at=row.get("created_at") or "",
                    modified_at=row.get("modified_at") or "",
                ))
            except (DecryptionFailure, KeyError, TypeError, ValueError):
                skipped.append(str(row.get("id") if isinstance(row, dict) else row))

        if skipped:
            logger.warning("Import skipped %d unreadable rows", len(skipped))
        return {"credentials": credentials, "history": history, "notes": notes}, skipped
