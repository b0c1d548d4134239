"""
Shared pytest fixtures for the BlackVault test suite.

Autouse fixtures below isolate tests from live application data:
  - Audit logger  -> temp directory  (no test events in ./audit_logs)
  - API singleton -> reset per test  (no shared vault between API tests)
"""

import pytest

MASTER_PASSWORD = "Correct-Horse-Battery-9"
TEST_ITERATIONS = 1000


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test."""
    import blackvault.core.audit_log as audit_mod

    # Reset the singleton so the next get_audit_logger() creates a fresh
    # instance pointing at the temp directory.
    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=tmp_path / "audit_logs")

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    if audit_mod._audit_logger is not None:
        audit_mod._audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_vault_manager():
    """Reset the API's lazy VaultManager singleton for every test."""
    import blackvault.api.vault_routes as routes_mod

    old_manager = routes_mod._vault_manager
    routes_mod._vault_manager = None

    yield

    if routes_mod._vault_manager is not None:
        routes_mod._vault_manager.shutdown()
    routes_mod._vault_manager = old_manager


@pytest.fixture
def vault_config(tmp_path):
    """Fast settings: temp database, low PBKDF2 work factor."""
    from blackvault.core import VaultConfig

    return VaultConfig(
        vault_path=tmp_path / "vault.db",
        pbkdf2_iterations=TEST_ITERATIONS,
        idle_timeout_seconds=300,
        audit_log_dir=tmp_path / "audit_logs",
    )


@pytest.fixture
def scheduler():
    from blackvault.vault import ManualScheduler

    sched = ManualScheduler()
    yield sched
    sched.shutdown()


@pytest.fixture
def vault(vault_config, scheduler):
    """A fresh, uninitialized VaultManager."""
    from blackvault.vault import VaultManager

    mgr = VaultManager(config=vault_config, scheduler=scheduler)
    yield mgr
    mgr.shutdown()


@pytest.fixture
def unlocked_vault(vault):
    """A VaultManager set up with MASTER_PASSWORD and left unlocked."""
    result = vault.setup_master_password(MASTER_PASSWORD)
    assert result.ok, result.message
    return vault
