"""Vault session: the lock/unlock state machine.

States:
    UNINITIALIZED  no master settings persisted yet
    LOCKED         settings exist, no key in memory
    UNLOCKED       key resident, idle timer running

    setup(password)   UNINITIALIZED → UNLOCKED
    unlock(password)  LOCKED → UNLOCKED  (AuthenticationFailure otherwise)
    lock()            UNLOCKED → LOCKED  (explicit, idle timeout, shutdown)
    touch()           restarts the idle timer

The derived key lives in a ``KeyMaterial`` buffer that is overwritten with
zeros on lock. Operations never hold a reference to that buffer: they call
``capture_key()`` once at entry and work on the returned ``bytes`` copy, so
a lock (e.g. the idle timer firing on another thread) cannot pull the key
out from under a decrypt that is already running.

Key transitions (setup, unlock, change_password, reset) hold a transition
lock for their whole run, and keyed operations hold it through
``keyed_operation()``. A write can therefore never land under a key that
a concurrent password change is about to retire.
"""

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Iterator, Optional

from .encryption import EncryptionService
from .errors import (
    AlreadyInitializedError,
    AuthenticationFailure,
    DecryptionFailure,
    KeyMaterialError,
    NotInitializedError,
    VaultLockedError,
)
from .models import MasterSettings
from .scheduler import ScheduledTask, Scheduler, ThreadingScheduler
from .store import EncryptedStore

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 15 * 60  # seconds

# Lock reasons passed to the on_lock callback
LOCK_MANUAL = "manual"
LOCK_IDLE = "idle"
LOCK_SHUTDOWN = "shutdown"
LOCK_KEY_ERROR = "key_material_error"
LOCK_RESET = "reset"


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class KeyMaterial:
    """A mutable key buffer that can be wiped in place."""

    def __init__(self, key: bytes):
        self._buffer = bytearray(key)

    def snapshot(self) -> bytes:
        """Immutable copy of the key for one operation."""
        return bytes(self._buffer)

    def wipe(self):
        """Overwrite the buffer with zeros."""
        for i in range(len(self._buffer)):
            self._buffer[i] = 0

    @property
    def wiped(self) -> bool:
        return not any(self._buffer)

    def __len__(self):
        return len(self._buffer)


class VaultSession:
    """
    Holds the vault key while unlocked and enforces the session states.

    Args:
        store: Where master settings are persisted.
        scheduler: Runs the idle auto-lock (default: ThreadingScheduler).
        idle_timeout: Seconds of inactivity before auto-lock.
        iterations: PBKDF2 work factor used by setup() / change_password().
        on_lock: Called with the lock reason after every UNLOCKED → LOCKED.
    """

    VERIFICATION_MARKER = "BLACKVAULT_VAULT_OK"

    def __init__(
        self,
        store: EncryptedStore,
        scheduler: Optional[Scheduler] = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        iterations: int = EncryptionService.PBKDF2_ITERATIONS,
        on_lock: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.scheduler = scheduler or ThreadingScheduler()
        self.idle_timeout = idle_timeout
        self.iterations = iterations
        self.on_lock = on_lock

        self._lock = threading.RLock()
        self._transition_lock = threading.RLock()
        self._key: Optional[KeyMaterial] = None
        self._idle_task: Optional[ScheduledTask] = None
        self._initialized = store.has_master_settings()

    # ── State ───────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        with self._lock:
            if self._key is not None:
                return SessionState.UNLOCKED
            if self._initialized:
                return SessionState.LOCKED
            return SessionState.UNINITIALIZED

    @property
    def is_unlocked(self) -> bool:
        return self.state is SessionState.UNLOCKED

    @property
    def is_initialized(self) -> bool:
        with self._lock:
            return self._initialized

    def seconds_until_lock(self) -> Optional[float]:
        """Remaining idle window, or None when not unlocked."""
        with self._lock:
            if self._key is None or self._idle_task is None:
                return None
            return max(0.0, self._idle_task.due - self.scheduler.now())

    # ── Transitions ─────────────────────────────────────────────────

    def setup(self, master_password: str):
        """Create master settings and unlock (UNINITIALIZED → UNLOCKED).

        Raises:
            AlreadyInitializedError: settings exist, including when another
                setup won the race to create them.
        """
        with self._transition_lock:
            with self._lock:
                if self._initialized or self.store.has_master_settings():
                    self._initialized = True
                    raise AlreadyInitializedError()

            salt = EncryptionService.generate_salt()
            key = EncryptionService.derive_key(master_password, salt, self.iterations)
            settings = MasterSettings(
                salt=salt,
                iterations=self.iterations,
                verification_ciphertext=EncryptionService.encrypt_text(key, self.VERIFICATION_MARKER),
            )

            try:
                self.store.create_master_settings(settings)
            except AlreadyInitializedError:
                with self._lock:
                    self._initialized = True
                raise
            with self._lock:
                self._initialized = True
                self._activate(key)
        logger.info("Vault initialized (iterations=%d)", self.iterations)

    def unlock(self, master_password: str):
        """Verify the password against the stored verifier (LOCKED → UNLOCKED).

        Raises:
            NotInitializedError: setup() has never run.
            AuthenticationFailure: wrong password or unreadable settings;
                the two are indistinguishable to the caller.
        """
        with self._transition_lock:
            key = self.verify_password(master_password)
            with self._lock:
                self._activate(key)
        self.store.touch_last_accessed()
        logger.info("Vault unlocked")

    def verify_password(self, master_password: str) -> bytes:
        """Derive a candidate key and check it against the verifier."""
        settings = self.store.get_master_settings()
        if settings is None:
            raise NotInitializedError()

        try:
            candidate = EncryptionService.derive_key(master_password, settings.salt, settings.iterations)
            marker = EncryptionService.decrypt_text(candidate, settings.verification_ciphertext)
        except (DecryptionFailure, ValueError, TypeError):
            # Wrong key, tampered verifier, or corrupt KDF parameters
            raise AuthenticationFailure() from None
        if marker != self.VERIFICATION_MARKER:
            raise AuthenticationFailure()
        return candidate

    def lock(self, reason: str = LOCK_MANUAL) -> bool:
        """Wipe the key and cancel the idle timer. Safe to call at any time.

        Returns:
            True if the session was unlocked before the call.
        """
        with self._lock:
            self._cancel_idle_timer()
            if self._key is None:
                return False
            self._key.wipe()
            self._key = None
        logger.info("Vault locked (%s)", reason)
        if self.on_lock is not None:
            self.on_lock(reason)
        return True

    def touch(self):
        """Restart the idle window. No-op while locked."""
        with self._lock:
            if self._key is not None:
                self._schedule_idle_lock()

    def capture_key(self) -> bytes:
        """Copy of the resident key, taken once at the start of an operation.

        Raises:
            VaultLockedError: session is not unlocked.
            KeyMaterialError: resident key is corrupt; the session locks.
        """
        with self._lock:
            if self._key is None:
                raise VaultLockedError()
            if len(self._key) == EncryptionService.KEY_LENGTH and not self._key.wiped:
                return self._key.snapshot()
        self.lock(LOCK_KEY_ERROR)
        raise KeyMaterialError("Resident key material is invalid; vault locked")

    @contextmanager
    def keyed_operation(self) -> Iterator[bytes]:
        """Captured key for one operation, with key transitions held off.

        A lock() may still fire meanwhile; the operation keeps its copy.
        """
        with self._transition_lock:
            yield self.capture_key()

    def change_password(
        self,
        current_password: str,
        new_password: str,
        reencrypt: Callable[[bytes, bytes, MasterSettings], None],
    ):
        """Re-derive the vault key under a new password and fresh salt.

        ``reencrypt(old_key, new_key, new_settings)`` must persist the new
        settings together with every re-encrypted blob; the resident key is
        swapped only after it returns. If the session was locked while the
        change ran it stays locked, and the next unlock takes the new password.
        """
        with self._transition_lock:
            with self._lock:
                if self._key is None:
                    raise VaultLockedError()
            old_key = self.verify_password(current_password)

            salt = EncryptionService.generate_salt()
            new_key = EncryptionService.derive_key(new_password, salt, self.iterations)
            settings = self.store.get_master_settings()
            new_settings = MasterSettings(
                salt=salt,
                iterations=self.iterations,
                verification_ciphertext=EncryptionService.encrypt_text(new_key, self.VERIFICATION_MARKER),
                created_at=settings.created_at if settings else "",
                last_accessed_at=settings.last_accessed_at if settings else None,
            )
            reencrypt(old_key, new_key, new_settings)

            with self._lock:
                if self._key is not None:
                    self._activate(new_key)
                else:
                    logger.info("Vault locked during master password change; staying locked")
        logger.info("Master password changed (iterations=%d)", self.iterations)

    def reset(self):
        """Full vault reset: lock and delete every row including settings."""
        with self._transition_lock:
            self.lock(LOCK_RESET)
            with self._lock:
                self.store.clear_all()
                self._initialized = False
        logger.warning("Vault reset: all data deleted")

    def shutdown(self):
        """Process teardown: lock and stop the scheduler."""
        self.lock(LOCK_SHUTDOWN)
        self.scheduler.shutdown()

    # ── Idle timer ──────────────────────────────────────────────────

    def _activate(self, key: bytes):
        if self._key is not None:
            self._key.wipe()
        self._key = KeyMaterial(key)
        self._schedule_idle_lock()

    def _schedule_idle_lock(self):
        self._cancel_idle_timer()
        task_ref = {}

        def _on_idle():
            with self._lock:
                # A touch() may have replaced this task while it was firing
                if self._idle_task is not task_ref.get("task"):
                    return
                self.lock(LOCK_IDLE)

        task_ref["task"] = self._idle_task = self.scheduler.schedule(self.idle_timeout, _on_idle)

    def _cancel_idle_timer(self):
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None
