"""
Shared pytest fixtures for the Keyward test suite.

Autouse fixtures below isolate tests from live data:
  - Audit logger -> temp directory  (prevents test events in ./audit_logs)

Everything else (config, store, services) is built per test on tmp_path
with a low PBKDF2 iteration count so the suite stays fast.
"""

import pytest

from keyward.core.audit_log import AuditLogger
from keyward.core.config import KeywardConfig
from keyward.vault.accounts import AccountService
from keyward.vault.store import SqliteCredentialStore

MASTER_PASSWORD = "Correct-Horse-42-Battery"
NEW_MASTER_PASSWORD = "Another-Strong-Pass-77"


class FakeClock:
    """Callable wall clock for TOTP and token-expiry tests."""

    def __init__(self, start: float = 1_700_000_010.0):
        # 1_700_000_010 is on a 30 s step boundary
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test.

    Without this, any code path that falls back to ``get_audit_logger()``
    writes into the real ``./audit_logs/`` directory.
    """
    import keyward.core.audit_log as audit_mod

    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__
    created = []

    def patched_init(self, log_dir=None, anonymizer=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs", anonymizer=anonymizer)
        created.append(self)

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    # Each audit directory keeps its own file handler open until closed
    for audit_logger in created:
        audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture
def config(tmp_path):
    return KeywardConfig(
        pbkdf2_iterations=10_000,
        anonymizer_iterations=1_000,
        backup_code_iterations=1_000,
        database_path=tmp_path / "keyward.db",
        audit_log_dir=tmp_path / "audit_logs",
    )


@pytest.fixture
def audit(tmp_path):
    return AuditLogger(log_dir=tmp_path / "audit_logs")


@pytest.fixture
def store(config):
    return SqliteCredentialStore(config.database_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def accounts(store, config, audit):
    return AccountService(store, config, audit=audit)


@pytest.fixture
def user(accounts):
    return accounts.register("alice@example.com", MASTER_PASSWORD)


@pytest.fixture
def vault(accounts, user):
    return accounts.unlock(user.id, MASTER_PASSWORD)
