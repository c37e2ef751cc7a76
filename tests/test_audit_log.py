"""Tests for the structured security audit log."""

import json
import logging

import pytest

from keyward.core.anonymize import UserIdAnonymizer
from keyward.core.audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    configure_audit_logger,
    get_audit_logger,
)
from keyward.core.config import KeywardConfig
from keyward.exceptions import ConfigError


class TestAuditLogger:

    def test_event_written_as_json_line(self, audit):
        event_id = audit.log_event(
            EventType.USER_REGISTERED, EventSeverity.INFO, "registered",
            user_id="user-1", details={"email_domain": "example.com"},
        )
        for handler in logging.getLogger(audit.logger_name).handlers:
            handler.flush()

        lines = audit.log_file.read_text(encoding="utf-8").splitlines()
        event = json.loads(lines[-1])
        assert event["event_id"] == event_id
        assert event["event_type"] == "user.registered"
        assert event["severity"] == "info"
        assert event["details"] == {"email_domain": "example.com"}

    def test_sensitive_details_redacted(self, audit):
        audit.log_event(
            EventType.LOGIN_FAILED, EventSeverity.INVESTIGATE, "bad login",
            details={"password": "hunter2-Hunter2", "code": "123456", "attempt": 3},
        )
        event = audit.query_events(event_types=[EventType.LOGIN_FAILED])[-1]
        assert event["details"]["password"] == "[redacted]"
        assert event["details"]["code"] == "[redacted]"
        assert event["details"]["attempt"] == 3
        assert "hunter2-Hunter2" not in audit.log_file.read_text(encoding="utf-8")

    def test_raw_user_id_without_anonymizer(self, audit):
        audit.log_event(EventType.USER_DELETED, EventSeverity.INFO, "gone", user_id="user-1")
        assert audit.query_events()[-1]["subject"] == "user-1"

    def test_anonymized_subject(self, tmp_path):
        config = KeywardConfig(anonymizer_iterations=1_000)
        anonymizer = UserIdAnonymizer(config)
        logger = AuditLogger(log_dir=tmp_path / "anon_logs", anonymizer=anonymizer)

        logger.log_event(EventType.LOGIN_VERIFIED, EventSeverity.INFO, "ok", user_id="user-1")

        event = logger.query_events()[-1]
        assert event["subject"] == anonymizer.anonymize("user-1")
        assert "user-1" not in logger.log_file.read_text(encoding="utf-8")

    def test_query_filters(self, audit):
        audit.log_event(EventType.LOGIN_VERIFIED, EventSeverity.INFO, "ok")
        audit.log_event(EventType.REKEY_PARTIAL, EventSeverity.ALERT, "partial")
        audit.log_event(EventType.LOGIN_FAILED, EventSeverity.INVESTIGATE, "bad")

        by_type = audit.query_events(event_types=[EventType.REKEY_PARTIAL, EventType.LOGIN_FAILED])
        assert [e["event_type"] for e in by_type] == ["rekey.partial", "login.failed"]

        by_severity = audit.query_events(severity=EventSeverity.ALERT)
        assert [e["message"] for e in by_severity] == ["partial"]

        assert len(audit.query_events(limit=2)) == 2

    def test_instances_do_not_share_files(self, tmp_path):
        first = AuditLogger(log_dir=tmp_path / "first")
        second = AuditLogger(log_dir=tmp_path / "second")

        first.log_event(EventType.LOGIN_VERIFIED, EventSeverity.INFO, "from first")
        second.log_event(EventType.LOGIN_VERIFIED, EventSeverity.INFO, "from second")

        assert [e["message"] for e in first.query_events()] == ["from first"]
        assert [e["message"] for e in second.query_events()] == ["from second"]

    def test_same_directory_shares_one_handler(self, tmp_path):
        first = AuditLogger(log_dir=tmp_path / "shared")
        second = AuditLogger(log_dir=tmp_path / "shared")

        first.log_event(EventType.LOGIN_VERIFIED, EventSeverity.INFO, "one")
        second.log_event(EventType.LOGIN_VERIFIED, EventSeverity.INFO, "two")

        assert first.logger_name == second.logger_name
        assert len(logging.getLogger(first.logger_name).handlers) == 1
        assert [e["message"] for e in first.query_events()] == ["one", "two"]

    def test_close_detaches_handler(self, tmp_path):
        logger = AuditLogger(log_dir=tmp_path / "closing")
        logger.close()
        assert logging.getLogger(logger.logger_name).handlers == []

    @pytest.mark.parametrize("event_type", list(EventType))
    def test_every_event_type_loggable(self, audit, event_type):
        audit.log_event(event_type, EventSeverity.INFO, "x")
        assert audit.query_events(event_types=[event_type])


class TestDefaultLogger:

    def test_configure_sets_default(self, tmp_path):
        config = KeywardConfig(anonymizer_iterations=1_000, audit_log_dir=tmp_path / "configured")
        configured = configure_audit_logger(config)
        assert get_audit_logger() is configured
        assert configured.log_dir == tmp_path / "configured"
        assert configured.anonymizer is not None

    def test_unconfigured_default_refused(self):
        with pytest.raises(ConfigError):
            get_audit_logger()

    def test_default_built_from_config_is_anonymized(self, config):
        default = get_audit_logger(config)
        assert default.anonymizer is not None
        assert default.log_dir == config.audit_log_dir

    def test_default_is_singleton(self, config):
        assert get_audit_logger(config) is get_audit_logger()
        assert get_audit_logger() is get_audit_logger(config)
