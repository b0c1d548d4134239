"""Encrypted vault storage: SQLite persistence for vault records.

Four tables:
    master_settings     one row once the vault is set up
    credentials         plaintext domain/username, encrypted password/notes
    credential_history  old encrypted passwords, at most ``history_limit``
                        per credential, cascades on credential delete
    secure_notes        plaintext title, encrypted content

The store never sees plaintext secrets or keys; it only moves blobs.
Every multi-statement write (upsert + history push + prune, rekey, import)
runs inside one ``BEGIN IMMEDIATE`` transaction, and writers are also
serialized in-process by a lock.
"""

import json
import logging
import sqlite3
import threading
from contextlib import closing, contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from ..core.db import connect as db_connect, transaction
from .errors import AlreadyInitializedError, StorageError
from .models import CredentialEntry, CredentialHistoryRecord, MasterSettings, SecureNote

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
RECENT_USE_WINDOW = timedelta(days=7)

_CREDENTIAL_ORDER = (
    "ORDER BY last_used_at DESC, modified_at DESC, created_at DESC"
)


class EncryptedStore:
    """SQLite persistence for the vault.

    Args:
        db_path: Path to SQLite database file.
        history_limit: Old passwords retained per credential.
        now: Clock returning an aware datetime (injectable for tests).
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        history_limit: int = 5,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.history_limit = history_limit
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._write_lock = threading.Lock()
        self._init_database()

    # ── Connection plumbing ─────────────────────────────────────────

    def _timestamp(self) -> str:
        return self._now().isoformat(timespec="microseconds")

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(db_connect(self.db_path, row_factory=True)) as conn:
                yield conn
        except sqlite3.Error as e:
            logger.error("Vault read failed: %s", e)
            raise StorageError(f"Vault storage read failed: {e}") from e

    @contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            try:
                with closing(db_connect(self.db_path, row_factory=True)) as conn:
                    with transaction(conn):
                        yield conn
            except sqlite3.Error as e:
                logger.error("Vault write failed: %s", e)
                raise StorageError(f"Vault storage write failed: {e}") from e

    def _init_database(self):
        """Create tables and indexes if they do not exist."""
        with self._writer() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS master_settings (
                    id                      INTEGER PRIMARY KEY CHECK (id = 1),
                    salt                    BLOB NOT NULL,
                    iterations              INTEGER NOT NULL,
                    verification_ciphertext BLOB NOT NULL,
                    created_at              TEXT NOT NULL,
                    last_accessed_at        TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS credentials (
                    id                  TEXT PRIMARY KEY,
                    domain              TEXT NOT NULL,
                    username            TEXT NOT NULL DEFAULT '',
                    encrypted_password  BLOB NOT NULL,
                    encrypted_notes     BLOB,
                    favicon             TEXT,
                    tags                TEXT NOT NULL DEFAULT '[]',
                    password_digest     TEXT,
                    created_at          TEXT NOT NULL,
                    modified_at         TEXT NOT NULL,
                    last_used_at        TEXT,
                    use_count           INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS credential_history (
                    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
                    credential_id           TEXT NOT NULL
                        REFERENCES credentials(id) ON DELETE CASCADE,
                    encrypted_old_password  BLOB NOT NULL,
                    changed_at              TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS secure_notes (
                    id                  TEXT PRIMARY KEY,
                    title               TEXT NOT NULL,
                    encrypted_content   BLOB NOT NULL,
                    created_at          TEXT NOT NULL,
                    modified_at         TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_credentials_domain ON credentials(domain)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_credentials_username ON credentials(username)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_credentials_modified ON credentials(modified_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_credentials_digest ON credentials(password_digest)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_history_credential "
                "ON credential_history(credential_id, changed_at)"
            )
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    # ── Row mapping ─────────────────────────────────────────────────

    @staticmethod
    def _row_to_credential(row: sqlite3.Row) -> CredentialEntry:
        try:
            tags = json.loads(row["tags"] or "[]")
        except (TypeError, ValueError):
            tags = []
        return CredentialEntry(
            id=row["id"],
            domain=row["domain"],
            username=row["username"] or "",
            encrypted_password=bytes(row["encrypted_password"]),
            encrypted_notes=bytes(row["encrypted_notes"]) if row["encrypted_notes"] is not None else None,
            favicon=row["favicon"],
            tags=tags,
            password_digest=row["password_digest"],
            created_at=row["created_at"],
            modified_at=row["modified_at"],
            last_used_at=row["last_used_at"],
            use_count=row["use_count"],
        )

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> CredentialHistoryRecord:
        return CredentialHistoryRecord(
            id=row["id"],
            credential_id=row["credential_id"],
            encrypted_old_password=bytes(row["encrypted_old_password"]),
            changed_at=row["changed_at"],
        )

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> SecureNote:
        return SecureNote(
            id=row["id"],
            title=row["title"],
            encrypted_content=bytes(row["encrypted_content"]),
            created_at=row["created_at"],
            modified_at=row["modified_at"],
        )

    # ── Master settings ─────────────────────────────────────────────

    def has_master_settings(self) -> bool:
        with self._reader() as conn:
            row = conn.execute("SELECT COUNT(*) FROM master_settings").fetchone()
        return row[0] > 0

    def get_master_settings(self) -> Optional[MasterSettings]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM master_settings WHERE id = 1").fetchone()
        if row is None:
            return None
        return MasterSettings(
            salt=bytes(row["salt"]),
            iterations=row["iterations"],
            verification_ciphertext=bytes(row["verification_ciphertext"]),
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
        )

    def create_master_settings(self, settings: MasterSettings):
        """Insert the settings row; a vault is set up exactly once.

        Raises:
            AlreadyInitializedError: the row already exists.
        """
        with self._writer() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO master_settings
                        (id, salt, iterations, verification_ciphertext, created_at, last_accessed_at)
                    VALUES (1, ?, ?, ?, ?, ?)
                    """,
                    (
                        settings.salt,
                        settings.iterations,
                        settings.verification_ciphertext,
                        settings.created_at,
                        settings.last_accessed_at,
                    ),
                )
            except sqlite3.IntegrityError:
                raise AlreadyInitializedError() from None

    def save_master_settings(self, settings: MasterSettings):
        """Write the singleton settings row (insert or replace)."""
        with self._writer() as conn:
            self._write_settings(conn, settings)

    @staticmethod
    def _write_settings(conn: sqlite3.Connection, settings: MasterSettings):
        conn.execute(
            """
            INSERT INTO master_settings
                (id, salt, iterations, verification_ciphertext, created_at, last_accessed_at)
            VALUES (1, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                salt = excluded.salt,
                iterations = excluded.iterations,
                verification_ciphertext = excluded.verification_ciphertext,
                last_accessed_at = excluded.last_accessed_at
            """,
            (
                settings.salt,
                settings.iterations,
                settings.verification_ciphertext,
                settings.created_at,
                settings.last_accessed_at,
            ),
        )

    def touch_last_accessed(self):
        with self._writer() as conn:
            conn.execute(
                "UPDATE master_settings SET last_accessed_at = ? WHERE id = 1",
                (self._timestamp(),),
            )

    # ── Credentials ─────────────────────────────────────────────────

    def save_credential(self, entry: CredentialEntry) -> CredentialEntry:
        """Insert or update a credential by id.

        On update, if the encrypted password changed, the previous blob is
        pushed to history and history is pruned to ``history_limit`` within
        the same transaction. ``modified_at`` is always bumped.
        """
        entry.modified_at = self._timestamp()
        with self._writer() as conn:
            existing = conn.execute(
                "SELECT encrypted_password, created_at, last_used_at, use_count "
                "FROM credentials WHERE id = ?",
                (entry.id,),
            ).fetchone()

            if existing is None:
                conn.execute(
                    """
                    INSERT INTO credentials
                        (id, domain, username, encrypted_password, encrypted_notes,
                         favicon, tags, password_digest, created_at, modified_at,
                         last_used_at, use_count)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id, entry.domain, entry.username or "",
                        entry.encrypted_password, entry.encrypted_notes,
                        entry.favicon, json.dumps(entry.tags), entry.password_digest,
                        entry.created_at, entry.modified_at,
                        entry.last_used_at, entry.use_count,
                    ),
                )
                return entry

            old_blob = bytes(existing["encrypted_password"])
            if old_blob != entry.encrypted_password:
                self._push_history(conn, entry.id, old_blob, entry.modified_at)

            # created_at and usage counters belong to the stored row
            entry.created_at = existing["created_at"]
            entry.last_used_at = existing["last_used_at"]
            entry.use_count = existing["use_count"]
            conn.execute(
                """
                UPDATE credentials SET
                    domain = ?, username = ?, encrypted_password = ?,
                    encrypted_notes = ?, favicon = ?, tags = ?,
                    password_digest = ?, modified_at = ?
                WHERE id = ?
                """,
                (
                    entry.domain, entry.username or "", entry.encrypted_password,
                    entry.encrypted_notes, entry.favicon, json.dumps(entry.tags),
                    entry.password_digest, entry.modified_at, entry.id,
                ),
            )
        return entry

    def _push_history(self, conn: sqlite3.Connection, credential_id: str, blob: bytes, changed_at: str):
        conn.execute(
            "INSERT INTO credential_history (credential_id, encrypted_old_password, changed_at) "
            "VALUES (?, ?, ?)",
            (credential_id, blob, changed_at),
        )
        self._prune_history(conn, credential_id)

    def _prune_history(self, conn: sqlite3.Connection, credential_id: str):
        conn.execute(
            """
            DELETE FROM credential_history
            WHERE credential_id = ?
              AND id NOT IN (
                  SELECT id FROM credential_history
                  WHERE credential_id = ?
                  ORDER BY changed_at DESC, id DESC
                  LIMIT ?
              )
            """,
            (credential_id, credential_id, self.history_limit),
        )

    def get_credential(self, credential_id: str) -> Optional[CredentialEntry]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM credentials WHERE id = ?", (credential_id,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def list_credentials(self, domain_filter: Optional[str] = None) -> List[CredentialEntry]:
        """All credentials, most recently used first.

        ``domain_filter`` is a case-insensitive substring match on domain.
        """
        with self._reader() as conn:
            if domain_filter:
                rows = conn.execute(
                    "SELECT * FROM credentials WHERE instr(lower(domain), lower(?)) > 0 "
                    + _CREDENTIAL_ORDER,
                    (domain_filter,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM credentials " + _CREDENTIAL_ORDER).fetchall()
        return [self._row_to_credential(r) for r in rows]

    def search_credentials(self, query: str) -> List[CredentialEntry]:
        """Case-insensitive substring match on domain OR username."""
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM credentials "
                "WHERE instr(lower(domain), lower(?)) > 0 "
                "   OR instr(lower(username), lower(?)) > 0 "
                + _CREDENTIAL_ORDER,
                (query, query),
            ).fetchall()
        return [self._row_to_credential(r) for r in rows]

    def list_credentials_by_tag(self, tag: str) -> List[CredentialEntry]:
        return [c for c in self.list_credentials() if tag in c.tags]

    def delete_credential(self, credential_id: str) -> bool:
        """Delete a credential; its history goes with it."""
        with self._writer() as conn:
            conn.execute("DELETE FROM credential_history WHERE credential_id = ?", (credential_id,))
            cursor = conn.execute("DELETE FROM credentials WHERE id = ?", (credential_id,))
            return cursor.rowcount > 0

    def record_usage(self, credential_id: str) -> bool:
        with self._writer() as conn:
            cursor = conn.execute(
                "UPDATE credentials SET use_count = use_count + 1, last_used_at = ? WHERE id = ?",
                (self._timestamp(), credential_id),
            )
            return cursor.rowcount > 0

    def get_history(self, credential_id: str) -> List[CredentialHistoryRecord]:
        """Old passwords for a credential, newest first."""
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM credential_history WHERE credential_id = ? "
                "ORDER BY changed_at DESC, id DESC",
                (credential_id,),
            ).fetchall()
        return [self._row_to_history(r) for r in rows]

    def find_duplicate_credential_groups(self) -> List[List[CredentialEntry]]:
        """Groups of credentials whose passwords are identical.

        Grouping is on ``password_digest`` (a keyed hash of the plaintext);
        ciphertexts never match because every blob has its own nonce.
        """
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM credentials
                WHERE password_digest IN (
                    SELECT password_digest FROM credentials
                    WHERE password_digest IS NOT NULL
                    GROUP BY password_digest
                    HAVING COUNT(*) > 1
                )
                ORDER BY password_digest, domain
                """
            ).fetchall()

        groups: Dict[str, List[CredentialEntry]] = {}
        for row in rows:
            groups.setdefault(row["password_digest"], []).append(self._row_to_credential(row))
        return list(groups.values())

    def list_tags(self) -> List[str]:
        tags = set()
        with self._reader() as conn:
            for row in conn.execute("SELECT tags FROM credentials"):
                try:
                    tags.update(json.loads(row["tags"] or "[]"))
                except (TypeError, ValueError):
                    logger.warning("Skipping unparsable tag list")
        return sorted(tags)

    # ── Secure notes ────────────────────────────────────────────────

    def save_note(self, note: SecureNote) -> SecureNote:
        note.modified_at = self._timestamp()
        with self._writer() as conn:
            conn.execute(
                """
                INSERT INTO secure_notes (id, title, encrypted_content, created_at, modified_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    encrypted_content = excluded.encrypted_content,
                    modified_at = excluded.modified_at
                """,
                (note.id, note.title, note.encrypted_content, note.created_at, note.modified_at),
            )
        return note

    def get_note(self, note_id: str) -> Optional[SecureNote]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM secure_notes WHERE id = ?", (note_id,)).fetchone()
        return self._row_to_note(row) if row else None

    def list_notes(self) -> List[SecureNote]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM secure_notes ORDER BY modified_at DESC"
            ).fetchall()
        return [self._row_to_note(r) for r in rows]

    def delete_note(self, note_id: str) -> bool:
        with self._writer() as conn:
            cursor = conn.execute("DELETE FROM secure_notes WHERE id = ?", (note_id,))
            return cursor.rowcount > 0

    # ── Aggregates ──────────────────────────────────────────────────

    def get_statistics(self) -> Dict:
        """Counts for the dashboard: totals, recent use, duplicates, tags."""
        since = (self._now() - RECENT_USE_WINDOW).isoformat(timespec="microseconds")
        with self._reader() as conn:
            total_credentials = conn.execute("SELECT COUNT(*) FROM credentials").fetchone()[0]
            total_notes = conn.execute("SELECT COUNT(*) FROM secure_notes").fetchone()[0]
            recently_used = conn.execute(
                "SELECT COUNT(*) FROM credentials WHERE last_used_at IS NOT NULL AND last_used_at >= ?",
                (since,),
            ).fetchone()[0]

        return {
            "total_credentials": total_credentials,
            "total_notes": total_notes,
            "recently_used": recently_used,
            "duplicate_groups": len(self.find_duplicate_credential_groups()),
            "tags": self.list_tags(),
        }

    # ── Bulk operations ─────────────────────────────────────────────

    def _snapshot(self, conn: sqlite3.Connection) -> Dict[str, List[Any]]:
        return {
            "credentials": [
                self._row_to_credential(r)
                for r in conn.execute("SELECT * FROM credentials " + _CREDENTIAL_ORDER).fetchall()
            ],
            "history": [
                self._row_to_history(r)
                for r in conn.execute("SELECT * FROM credential_history ORDER BY id").fetchall()
            ],
            "notes": [
                self._row_to_note(r)
                for r in conn.execute("SELECT * FROM secure_notes ORDER BY modified_at DESC").fetchall()
            ],
        }

    def export_all(self) -> Dict:
        """Every row in the vault, for backup."""
        with self._reader() as conn:
            conn.execute("BEGIN")
            try:
                snapshot = self._snapshot(conn)
            finally:
                conn.execute("COMMIT")
        snapshot["settings"] = self.get_master_settings()
        return snapshot

    def import_all(self, bundle: Dict) -> Dict[str, int]:
        """Restore rows from an export_all() bundle in one transaction.

        Rows are upserted by id with their original timestamps. Imported
        history is attached to credentials present after the import and
        pruned to ``history_limit``. Master settings are never imported.
        """
        credentials: List[CredentialEntry] = bundle.get("credentials") or []
        history: List[CredentialHistoryRecord] = bundle.get("history") or []
        notes: List[SecureNote] = bundle.get("notes") or []
        imported_history = 0

        with self._writer() as conn:
            for entry in credentials:
                conn.execute(
                    """
                    INSERT INTO credentials
                        (id, domain, username, encrypted_password, encrypted_notes,
                         favicon, tags, password_digest, created_at, modified_at,
                         last_used_at, use_count)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        domain = excluded.domain,
                        username = excluded.username,
                        encrypted_password = excluded.encrypted_password,
                        encrypted_notes = excluded.encrypted_notes,
                        favicon = excluded.favicon,
                        tags = excluded.tags,
                        password_digest = excluded.password_digest,
                        modified_at = excluded.modified_at,
                        last_used_at = excluded.last_used_at,
                        use_count = excluded.use_count
                    """,
                    (
                        entry.id, entry.domain, entry.username or "",
                        entry.encrypted_password, entry.encrypted_notes,
                        entry.favicon, json.dumps(entry.tags), entry.password_digest,
                        entry.created_at, entry.modified_at,
                        entry.last_used_at, entry.use_count,
                    ),
                )

            touched = set()
            for record in history:
                exists = conn.execute(
                    "SELECT 1 FROM credentials WHERE id = ?", (record.credential_id,)
                ).fetchone()
                if not exists:
                    continue
                duplicate = conn.execute(
                    "SELECT 1 FROM credential_history "
                    "WHERE credential_id = ? AND changed_at = ? AND encrypted_old_password = ?",
                    (record.credential_id, record.changed_at, record.encrypted_old_password),
                ).fetchone()
                if duplicate:
                    continue
                conn.execute(
                    "INSERT INTO credential_history (credential_id, encrypted_old_password, changed_at) "
                    "VALUES (?, ?, ?)",
                    (record.credential_id, record.encrypted_old_password, record.changed_at),
                )
                touched.add(record.credential_id)
                imported_history += 1
            for credential_id in touched:
                self._prune_history(conn, credential_id)

            for note in notes:
                conn.execute(
                    """
                    INSERT INTO secure_notes (id, title, encrypted_content, created_at, modified_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        encrypted_content = excluded.encrypted_content,
                        modified_at = excluded.modified_at
                    """,
                    (note.id, note.title, note.encrypted_content, note.created_at, note.modified_at),
                )

        return {
            "credentials": len(credentials),
            "history": imported_history,
            "notes": len(notes),
        }

    def rekey(
        self,
        settings: MasterSettings,
        reencrypt: Callable[[Dict[str, List[Any]]], Dict[str, List[Any]]],
    ):
        """Replace all encrypted material atomically (master password change).

        ``reencrypt`` receives the rows read inside the write transaction
        and returns them re-encrypted, so no row written concurrently can
        be left under the old key. An exception from it rolls back.
        """
        with self._writer() as conn:
            updated = reencrypt(self._snapshot(conn))
            self._write_settings(conn, settings)
            for entry in updated["credentials"]:
                conn.execute(
                    "UPDATE credentials SET encrypted_password = ?, encrypted_notes = ?, "
                    "password_digest = ? WHERE id = ?",
                    (entry.encrypted_password, entry.encrypted_notes, entry.password_digest, entry.id),
                )
            for record in updated["history"]:
                conn.execute(
                    "UPDATE credential_history SET encrypted_old_password = ? WHERE id = ?",
                    (record.encrypted_old_password, record.id),
                )
            for note in updated["notes"]:
                conn.execute(
                    "UPDATE secure_notes SET encrypted_content = ? WHERE id = ?",
                    (note.encrypted_content, note.id),
                )

    def clear_all(self):
        """Full vault reset: every row, including master settings."""
        with self._writer() as conn:
            conn.execute("DELETE FROM credential_history")
            conn.execute("DELETE FROM credentials")
            conn.execute("DELETE FROM secure_notes")
            conn.execute("DELETE FROM master_settings")
