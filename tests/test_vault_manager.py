"""
Tests for VaultManager: the operation set, lock gating, result values,
corrupted-entry flagging, idle auto-lock, unlock backoff, master password
change, export/import and audit logging.
"""

import json
import sqlite3
import threading
from dataclasses import replace

import pytest

from blackvault.vault import ErrorKind, ManualScheduler, PasswordOptions, VaultManager, VaultResult
from blackvault.vault.encryption import EncryptionService

MASTER_PASSWORD = "Correct-Horse-Battery-9"


def _tamper_credential(vault, credential_id):
    """Flip the last byte of a stored password blob."""
    conn = sqlite3.connect(str(vault.vault_path))
    try:
        blob = bytearray(conn.execute(
            "SELECT encrypted_password FROM credentials WHERE id = ?", (credential_id,)
        ).fetchone()[0])
        blob[-1] ^= 0x01
        conn.execute("UPDATE credentials SET encrypted_password = ? WHERE id = ?", (bytes(blob), credential_id))
        conn.commit()
    finally:
        conn.close()


class TestSetupAndUnlock:
    def test_end_to_end(self, vault):
        assert not vault.has_master_password()
        assert vault.setup_master_password("Tr0ub4dor&3").ok
        assert vault.has_master_password()
        assert not vault.is_locked()

        added = vault.add_credential("example.com", "a@b.com", "hunter2")
        assert added.ok
        listed = vault.get_credentials()
        assert listed.ok
        assert len(listed.value) == 1
        assert listed.value[0]["password"] == "hunter2"
        assert listed.value[0]["username"] == "a@b.com"
        assert listed.value[0]["id"] == added.value

        assert vault.lock().ok
        locked = vault.get_credentials()
        assert not locked.ok
        assert locked.error is ErrorKind.VAULT_LOCKED

        wrong = vault.unlock("wrong")
        assert wrong.error is ErrorKind.AUTHENTICATION_FAILURE
        assert vault.is_locked()

        assert vault.unlock("Tr0ub4dor&3").ok
        assert vault.get_credentials().value[0]["password"] == "hunter2"

    def test_weak_master_rejected(self, vault):
        result = vault.setup_master_password("password")
        assert result.error is ErrorKind.WEAK_PASSWORD
        assert result.value["score"] < 3
        assert not vault.has_master_password()

    def test_setup_twice(self, unlocked_vault):
        result = unlocked_vault.setup_master_password("Another-Master-Pass-1")
        assert result.error is ErrorKind.ALREADY_INITIALIZED

    def test_unlock_uninitialized(self, vault):
        assert vault.unlock(MASTER_PASSWORD).error is ErrorKind.NOT_INITIALIZED

    def test_unlock_persists_across_instances(self, unlocked_vault, vault_config):
        unlocked_vault.add_credential("example.com", password="hunter2")
        unlocked_vault.shutdown()

        reopened = VaultManager(config=vault_config, scheduler=ManualScheduler())
        try:
            assert reopened.has_master_password()
            assert reopened.is_locked()
            assert reopened.unlock(MASTER_PASSWORD).ok
            assert reopened.get_credentials().value[0]["password"] == "hunter2"
        finally:
            reopened.shutdown()

    def test_unlock_backoff(self, unlocked_vault, scheduler):
        unlocked_vault.lock()
        assert unlocked_vault.unlock("wrong-1").error is ErrorKind.AUTHENTICATION_FAILURE
        assert unlocked_vault.unlock("wrong-2").error is ErrorKind.AUTHENTICATION_FAILURE

        # Second failure starts a 2 second lockout, even for the right password
        throttled = unlocked_vault.unlock(MASTER_PASSWORD)
        assert throttled.error is ErrorKind.AUTHENTICATION_FAILURE
        assert "Too many failed attempts" in throttled.message

        scheduler.advance(2)
        assert unlocked_vault.unlock(MASTER_PASSWORD).ok
        assert unlocked_vault.failed_attempts == 0

    def test_single_failure_does_not_throttle(self, unlocked_vault):
        unlocked_vault.lock()
        assert not unlocked_vault.unlock("wrong").ok
        assert unlocked_vault.unlock(MASTER_PASSWORD).ok


class TestLockGating:
    @pytest.mark.parametrize("operation", [
        lambda v: v.add_credential("example.com", password="pw"),
        lambda v: v.get_credentials(),
        lambda v: v.get_credential("some-id"),
        lambda v: v.update_credential("some-id", password="pw"),
        lambda v: v.delete_credential("some-id"),
        lambda v: v.search_credentials("ex"),
        lambda v: v.add_note("title", "content"),
        lambda v: v.get_notes(),
        lambda v: v.get_note("some-id"),
        lambda v: v.update_note("some-id", content="x"),
        lambda v: v.delete_note("some-id"),
        lambda v: v.get_statistics(),
        lambda v: v.export_data(),
        lambda v: v.import_data({}),
        lambda v: v.find_duplicates(),
        lambda v: v.get_all_tags(),
        lambda v: v.get_credentials_by_tag("t"),
        lambda v: v.get_password_history("some-id"),
    ])
    def test_locked_operations_fail(self, unlocked_vault, operation):
        unlocked_vault.lock()
        result = operation(unlocked_vault)
        assert not result.ok
        assert result.error is ErrorKind.VAULT_LOCKED

    def test_locked_add_leaves_storage_unchanged(self, unlocked_vault):
        unlocked_vault.lock()
        assert unlocked_vault.add_credential("example.com", password="pw").error is ErrorKind.VAULT_LOCKED
        unlocked_vault.unlock(MASTER_PASSWORD)
        assert unlocked_vault.get_credentials().value == []

    def test_password_tools_work_while_locked(self, unlocked_vault):
        unlocked_vault.lock()
        assert unlocked_vault.generate_password().ok
        assert unlocked_vault.check_strength("abc").ok

    def test_idle_auto_lock(self, unlocked_vault, scheduler):
        scheduler.advance(299)
        assert not unlocked_vault.is_locked()
        scheduler.advance(1)
        assert unlocked_vault.is_locked()
        assert unlocked_vault.get_credentials().error is ErrorKind.VAULT_LOCKED

    def test_operations_reset_idle_timer(self, unlocked_vault, scheduler):
        scheduler.advance(200)
        assert unlocked_vault.get_credentials().ok
        scheduler.advance(200)
        assert not unlocked_vault.is_locked()
        scheduler.advance(100)
        assert unlocked_vault.is_locked()

    def test_corrupt_key_material_locks(self, unlocked_vault):
        unlocked_vault.session._key.wipe()
        result = unlocked_vault.get_credentials()
        assert result.error is ErrorKind.VAULT_LOCKED
        assert unlocked_vault.is_locked()


class TestCredentials:
    def test_validation(self, unlocked_vault):
        assert unlocked_vault.add_credential("", password="pw").error is ErrorKind.VALIDATION_ERROR
        assert unlocked_vault.add_credential("   ", password="pw").error is ErrorKind.VALIDATION_ERROR
        assert unlocked_vault.add_credential("example.com", password="").error is ErrorKind.VALIDATION_ERROR

    def test_get_credential_records_usage(self, unlocked_vault):
        cid = unlocked_vault.add_credential("example.com", "alice", "pw", notes="n1", tags=["work"]).value
        result = unlocked_vault.get_credential(cid)
        assert result.ok
        assert result.value["password"] == "pw"
        assert result.value["notes"] == "n1"
        assert result.value["tags"] == ["work"]
        assert unlocked_vault.get_credential(cid).value["use_count"] == 1

    def test_get_missing(self, unlocked_vault):
        assert unlocked_vault.get_credential("nope").error is ErrorKind.NOT_FOUND

    def test_update_fields(self, unlocked_vault):
        cid = unlocked_vault.add_credential("example.com", "alice", "old-pw", notes="n1").value
        result = unlocked_vault.update_credential(cid, {"username": "bob"}, password="new-pw")
        assert result.ok

        entry = unlocked_vault.get_credential(cid).value
        assert entry["username"] == "bob"
        assert entry["password"] == "new-pw"
        assert entry["notes"] == "n1"
        assert entry["domain"] == "example.com"

        history = unlocked_vault.get_password_history(cid).value
        assert [h["password"] for h in history] == ["old-pw"]

    def test_update_clears_notes(self, unlocked_vault):
        cid = unlocked_vault.add_credential("example.com", password="pw", notes="n1").value
        unlocked_vault.update_credential(cid, notes="")
        assert unlocked_vault.get_credential(cid).value["notes"] is None

    def test_update_rejects_unknown_and_empty(self, unlocked_vault):
        cid = unlocked_vault.add_credential("example.com", password="pw").value
        assert unlocked_vault.update_credential(cid, color="red").error is ErrorKind.VALIDATION_ERROR
        assert unlocked_vault.update_credential(cid, password="").error is ErrorKind.VALIDATION_ERROR
        assert unlocked_vault.update_credential(cid, domain=" ").error is ErrorKind.VALIDATION_ERROR
        assert unlocked_vault.update_credential("nope", password="x").error is ErrorKind.NOT_FOUND

    def test_history_limited_to_five(self, unlocked_vault):
        cid = unlocked_vault.add_credential("example.com", password="p0").value
        for i in range(1, 11):
            assert unlocked_vault.update_credential(cid, password=f"p{i}").ok
        history = unlocked_vault.get_password_history(cid).value
        assert [h["password"] for h in history] == ["p9", "p8", "p7", "p6", "p5"]

    def test_history_missing_credential(self, unlocked_vault):
        assert unlocked_vault.get_password_history("nope").error is ErrorKind.NOT_FOUND

    def test_delete(self, unlocked_vault):
        cid = unlocked_vault.add_credential("example.com", password="pw").value
        unlocked_vault.update_credential(cid, password="pw2")
        result = unlocked_vault.delete_credential(cid)
        assert result.ok and result.value is True
        assert unlocked_vault.get_credential(cid).error is ErrorKind.NOT_FOUND
        assert unlocked_vault.delete_credential(cid).value is False

    def test_filter_and_search(self, unlocked_vault):
        unlocked_vault.add_credential("github.com", "alice", "pw1")
        unlocked_vault.add_credential("example.org", "alice", "pw2")
        unlocked_vault.add_credential("bank.com", "bob", "pw3")

        assert [c["domain"] for c in unlocked_vault.get_credentials("GITHUB").value] == ["github.com"]
        found = unlocked_vault.search_credentials("alice").value
        assert {c["domain"] for c in found} == {"github.com", "example.org"}

    def test_tags(self, unlocked_vault):
        unlocked_vault.add_credential("a.com", password="pw", tags=["work", "mail"])
        unlocked_vault.add_credential("b.com", password="pw", tags=["personal"])
        assert unlocked_vault.get_all_tags().value == ["mail", "personal", "work"]
        assert [c["domain"] for c in unlocked_vault.get_credentials_by_tag("work").value] == ["a.com"]

    def test_duplicates(self, unlocked_vault):
        unlocked_vault.add_credential("a.com", password="shared")
        unlocked_vault.add_credential("b.com", password="shared")
        unlocked_vault.add_credential("c.com", password="unique")

        groups = unlocked_vault.find_duplicates().value
        assert len(groups) == 1
        assert {c["domain"] for c in groups[0]} == {"a.com", "b.com"}
        assert all("password" not in c for c in groups[0])

    def test_corrupted_entry_is_flagged(self, unlocked_vault):
        good = unlocked_vault.add_credential("good.com", password="pw1").value
        bad = unlocked_vault.add_credential("bad.com", password="pw2").value
        _tamper_credential(unlocked_vault, bad)

        result = unlocked_vault.get_credentials()
        assert result.ok
        assert [c["id"] for c in result.value] == [good]
        assert result.flagged == [bad]

        assert unlocked_vault.get_credential(bad).error is ErrorKind.DECRYPTION_FAILURE


class TestNotesAndStatistics:
    def test_note_crud(self, unlocked_vault):
        nid = unlocked_vault.add_note("wifi", "hunter2").value
        assert unlocked_vault.get_note(nid).value["content"] == "hunter2"

        assert unlocked_vault.update_note(nid, content="new-secret").ok
        assert unlocked_vault.get_note(nid).value["content"] == "new-secret"
        assert unlocked_vault.get_note(nid).value["title"] == "wifi"

        notes = unlocked_vault.get_notes().value
        assert [n["id"] for n in notes] == [nid]

        assert unlocked_vault.delete_note(nid).value is True
        assert unlocked_vault.get_note(nid).error is ErrorKind.NOT_FOUND

    def test_note_requires_title(self, unlocked_vault):
        assert unlocked_vault.add_note("", "c").error is ErrorKind.VALIDATION_ERROR

    def test_statistics(self, unlocked_vault):
        a = unlocked_vault.add_credential("a.com", password="same", tags=["x"]).value
        unlocked_vault.add_credential("b.com", password="same")
        unlocked_vault.add_note("n", "c")
        unlocked_vault.get_credential(a)

        stats = unlocked_vault.get_statistics().value
        assert stats["total_credentials"] == 2
        assert stats["total_notes"] == 1
        assert stats["recently_used"] == 1
        assert stats["duplicate_groups"] == 1
        assert stats["tags"] == ["x"]


class TestPasswordTools:
    def test_generate_with_options(self, vault):
        result = vault.generate_password(PasswordOptions(length=20, symbols=False))
        assert result.ok
        assert len(result.value["password"]) == 20
        assert result.value["password"].isalnum()
        assert set(result.value["strength"]) == {"score", "label", "feedback"}

    def test_generate_with_kwargs_and_dict(self, vault):
        assert len(vault.generate_password(length=12).value["password"]) == 12
        assert len(vault.generate_password({"length": 30}).value["password"]) == 30

    def test_generate_invalid(self, vault):
        assert vault.generate_password(length=4).error is ErrorKind.VALIDATION_ERROR
        assert vault.generate_password(bogus=True).error is ErrorKind.VALIDATION_ERROR

    def test_check_strength(self, vault):
        assert vault.check_strength("Tr0ub4dor&3").value["label"] == "Strong"


class TestMasterPasswordChange:
    NEW_PASSWORD = "N3w-Master!pass"

    def test_change_reencrypts_everything(self, unlocked_vault):
        cid = unlocked_vault.add_credential("a.com", password="p0", notes="note").value
        unlocked_vault.update_credential(cid, password="p1")
        unlocked_vault.add_credential("b.com", password="p1")
        nid = unlocked_vault.add_note("n", "secret")

        assert unlocked_vault.change_master_password(MASTER_PASSWORD, self.NEW_PASSWORD).ok

        unlocked_vault.lock()
        assert unlocked_vault.unlock(MASTER_PASSWORD).error is ErrorKind.AUTHENTICATION_FAILURE
        assert unlocked_vault.unlock(self.NEW_PASSWORD).ok

        entry = unlocked_vault.get_credential(cid).value
        assert entry["password"] == "p1"
        assert entry["notes"] == "note"
        assert [h["password"] for h in unlocked_vault.get_password_history(cid).value] == ["p0"]
        assert unlocked_vault.get_note(nid.value).value["content"] == "secret"
        assert len(unlocked_vault.find_duplicates().value) == 1

    def test_change_rejects_wrong_current(self, unlocked_vault):
        result = unlocked_vault.change_master_password("wrong", self.NEW_PASSWORD)
        assert result.error is ErrorKind.AUTHENTICATION_FAILURE

    def test_change_rejects_weak_new(self, unlocked_vault):
        result = unlocked_vault.change_master_password(MASTER_PASSWORD, "weak")
        assert result.error is ErrorKind.WEAK_PASSWORD

    def test_change_requires_unlock(self, unlocked_vault):
        unlocked_vault.lock()
        result = unlocked_vault.change_master_password(MASTER_PASSWORD, self.NEW_PASSWORD)
        assert result.error is ErrorKind.VAULT_LOCKED

    def test_change_aborts_on_corrupt_entry(self, unlocked_vault):
        cid = unlocked_vault.add_credential("a.com", password="pw").value
        _tamper_credential(unlocked_vault, cid)
        result = unlocked_vault.change_master_password(MASTER_PASSWORD, self.NEW_PASSWORD)
        assert result.error is ErrorKind.DECRYPTION_FAILURE

        unlocked_vault.lock()
        assert unlocked_vault.unlock(MASTER_PASSWORD).ok

    def test_write_during_change_is_not_lost(self, unlocked_vault, monkeypatch):
        unlocked_vault.add_credential("a.com", password="pw-a")
        real_rekey = unlocked_vault.store.rekey
        writer = {}

        def rekey_with_concurrent_add(settings, reencrypt):
            writer["result"] = None
            thread = threading.Thread(
                target=lambda: writer.update(result=unlocked_vault.add_credential("b.com", password="pw-b"))
            )
            thread.start()
            # The add waits for the password change to finish
            thread.join(0.2)
            writer["blocked"] = thread.is_alive()
            writer["thread"] = thread
            real_rekey(settings, reencrypt)

        monkeypatch.setattr(unlocked_vault.store, "rekey", rekey_with_concurrent_add)
        assert unlocked_vault.change_master_password(MASTER_PASSWORD, self.NEW_PASSWORD).ok
        writer["thread"].join()

        assert writer["blocked"] is True
        assert writer["result"].ok
        listed = unlocked_vault.get_credentials()
        assert listed.flagged == []
        assert {c["domain"]: c["password"] for c in listed.value} == {"a.com": "pw-a", "b.com": "pw-b"}

        unlocked_vault.lock()
        assert unlocked_vault.unlock(self.NEW_PASSWORD).ok
        assert len(unlocked_vault.get_credentials().value) == 2

    def test_idle_lock_during_change_keeps_vault_locked(self, unlocked_vault, monkeypatch):
        unlocked_vault.add_credential("a.com", password="pw-a")
        real_rekey = unlocked_vault.store.rekey

        def rekey_then_lock(settings, reencrypt):
            real_rekey(settings, reencrypt)
            unlocked_vault.lock()

        monkeypatch.setattr(unlocked_vault.store, "rekey", rekey_then_lock)
        assert unlocked_vault.change_master_password(MASTER_PASSWORD, self.NEW_PASSWORD).ok
        assert unlocked_vault.is_locked()

        assert unlocked_vault.unlock(self.NEW_PASSWORD).ok
        assert unlocked_vault.get_credentials().value[0]["password"] == "pw-a"


class TestReset:
    def test_reset_requires_password(self, unlocked_vault):
        assert unlocked_vault.reset_vault("wrong").error is ErrorKind.AUTHENTICATION_FAILURE
        assert unlocked_vault.has_master_password()

    def test_reset(self, unlocked_vault):
        unlocked_vault.add_credential("a.com", password="pw")
        assert unlocked_vault.reset_vault(MASTER_PASSWORD).ok
        assert not unlocked_vault.has_master_password()
        assert unlocked_vault.is_locked()

        assert unlocked_vault.setup_master_password("Brand-New-Vault-2").ok
        assert unlocked_vault.get_credentials().value == []


class TestExportImport:
    @pytest.fixture
    def other_vault(self, vault_config, tmp_path):
        config = replace(vault_config, vault_path=tmp_path / "other.db")
        mgr = VaultManager(config=config, scheduler=ManualScheduler())
        assert mgr.setup_master_password("Other-Master-Pass-7").ok
        yield mgr
        mgr.shutdown()

    def _populate(self, vault):
        cid = vault.add_credential("example.com", "alice", "hunter2", notes="n", tags=["t"]).value
        vault.update_credential(cid, password="hunter3")
        vault.add_note("wifi", "router-secret")
        return cid

    def test_bundle_shape(self, unlocked_vault):
        self._populate(unlocked_vault)
        bundle = unlocked_vault.export_data().value
        assert bundle["format"] == "blackvault-export"
        assert bundle["version"] == 1
        assert set(bundle) == {"format", "version", "exported_at", "salt", "iterations", "payload"}

        text = json.dumps(bundle)
        for secret in ("hunter2", "hunter3", "router-secret", "example.com", "alice"):
            assert secret not in text

    def test_import_same_vault_is_idempotent(self, unlocked_vault):
        self._populate(unlocked_vault)
        bundle = unlocked_vault.export_data().value
        result = unlocked_vault.import_data(bundle)
        assert result.ok
        assert result.value == {"credentials": 1, "history": 0, "notes": 1, "skipped": 0}
        assert len(unlocked_vault.get_credentials().value) == 1

    def test_import_into_other_vault_with_password(self, unlocked_vault, other_vault):
        cid = self._populate(unlocked_vault)
        bundle = unlocked_vault.export_data().value

        result = other_vault.import_data(bundle, password=MASTER_PASSWORD)
        assert result.ok
        assert result.value == {"credentials": 1, "history": 1, "notes": 1, "skipped": 0}

        entry = other_vault.get_credential(cid).value
        assert entry["password"] == "hunter3"
        assert entry["notes"] == "n"
        assert [h["password"] for h in other_vault.get_password_history(cid).value] == ["hunter2"]
        assert other_vault.get_notes().value[0]["content"] == "router-secret"

    def test_import_other_vault_without_password_fails(self, unlocked_vault, other_vault):
        self._populate(unlocked_vault)
        bundle = unlocked_vault.export_data().value
        assert other_vault.import_data(bundle).error is ErrorKind.DECRYPTION_FAILURE
        assert other_vault.import_data(bundle, password="wrong").error is ErrorKind.DECRYPTION_FAILURE
        assert other_vault.get_credentials().value == []

    @pytest.mark.parametrize("bundle", [
        {},
        {"format": "other"},
        {"format": "blackvault-export", "version": 99},
        {"format": "blackvault-export", "version": 1},
        {"format": "blackvault-export", "version": 1, "payload": "***"},
    ])
    def test_import_rejects_malformed(self, unlocked_vault, bundle):
        assert unlocked_vault.import_data(bundle).error is ErrorKind.VALIDATION_ERROR

    @pytest.mark.parametrize("rows", [
        {"credentials": [], "history": 5, "notes": []},
        {"credentials": "abc", "history": [], "notes": []},
        {"credentials": [], "history": [], "notes": {"id": "x"}},
    ])
    def test_import_rejects_non_list_sections(self, unlocked_vault, rows):
        bundle = unlocked_vault.export_data().value
        key = unlocked_vault.session.capture_key()
        payload = EncryptionService.encrypt(key, json.dumps(rows).encode("utf-8"))
        bundle["payload"] = EncryptionService.encode_for_storage(payload)

        result = unlocked_vault.import_data(bundle)
        assert result.error is ErrorKind.VALIDATION_ERROR
        assert unlocked_vault.get_credentials().value == []

    @pytest.mark.parametrize("iterations", [-5, 0, "many", None])
    def test_import_rejects_bad_iterations(self, unlocked_vault, iterations):
        bundle = unlocked_vault.export_data().value
        bundle["iterations"] = iterations
        result = unlocked_vault.import_data(bundle, password=MASTER_PASSWORD)
        assert result.error is ErrorKind.VALIDATION_ERROR


class TestAuditAndResults:
    def test_audit_log_records_events_without_secrets(self, unlocked_vault, tmp_path):
        unlocked_vault.add_credential("example.com", password="hunter2")
        unlocked_vault.lock()
        unlocked_vault.unlock("wrong-password")

        logs = "".join(p.read_text() for p in (tmp_path / "audit_logs").glob("audit_*.log"))
        assert "vault.created" in logs
        assert "vault.credential.added" in logs
        assert "vault.locked" in logs
        assert "vault.unlock.failed" in logs
        assert "hunter2" not in logs
        assert MASTER_PASSWORD not in logs
        assert "wrong-password" not in logs

    def test_auto_lock_is_audited(self, unlocked_vault, scheduler, tmp_path):
        scheduler.advance(300)
        logs = "".join(p.read_text() for p in (tmp_path / "audit_logs").glob("audit_*.log"))
        assert "vault.auto_locked" in logs

    def test_result_to_dict(self):
        assert VaultResult.success(1).to_dict() == {"success": True, "message": "", "value": 1}
        failure = VaultResult.failure(ErrorKind.NOT_FOUND, "missing").to_dict()
        assert failure == {"success": False, "message": "missing", "error": "not_found"}
