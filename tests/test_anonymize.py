"""Tests for audit-log user id pseudonyms."""

import logging

import pytest

from keyward.core.anonymize import ANONYMOUS, UserIdAnonymizer
from keyward.core.config import KeywardConfig
from keyward.exceptions import DerivationError


@pytest.fixture
def anonymizer():
    return UserIdAnonymizer(KeywardConfig(anonymizer_iterations=1_000))


def _broken_pbkdf2(*args, **kwargs):
    raise ValueError("unsupported")


class TestUserIdAnonymizer:

    def test_stable_hex_pseudonym(self, anonymizer):
        first = anonymizer.anonymize("user-1")
        assert len(first) == 32
        int(first, 16)
        assert anonymizer.anonymize("user-1") == first
        assert UserIdAnonymizer(KeywardConfig(anonymizer_iterations=1_000)).anonymize("user-1") == first

    def test_distinct_users(self, anonymizer):
        assert anonymizer.anonymize("user-1") != anonymizer.anonymize("user-2")

    def test_never_returns_raw_id(self, anonymizer):
        assert "user-1" not in anonymizer.anonymize("user-1")

    def test_salt_changes_pseudonym(self, anonymizer):
        other = UserIdAnonymizer(KeywardConfig(anonymizer_iterations=1_000, anonymizer_salt="other"))
        assert other.anonymize("user-1") != anonymizer.anonymize("user-1")

    @pytest.mark.parametrize("empty", ["", None])
    def test_empty_id(self, anonymizer, empty):
        assert anonymizer.anonymize(empty) == ANONYMOUS

    def test_failure_without_fallback_raises(self, anonymizer, monkeypatch):
        monkeypatch.setattr("keyward.core.anonymize.PBKDF2HMAC", _broken_pbkdf2)
        with pytest.raises(DerivationError):
            anonymizer.anonymize("user-1")

    def test_configured_fallback_logs(self, monkeypatch, caplog):
        anonymizer = UserIdAnonymizer(
            KeywardConfig(anonymizer_iterations=1_000, allow_anonymizer_fallback=True)
        )
        monkeypatch.setattr("keyward.core.anonymize.PBKDF2HMAC", _broken_pbkdf2)

        with caplog.at_level(logging.WARNING, logger="keyward.core.anonymize"):
            pseudonym = anonymizer.anonymize("user-1")

        assert len(pseudonym) == 32
        assert "fallback" in caplog.text

    def test_cache_is_bounded(self, anonymizer, monkeypatch):
        monkeypatch.setattr("keyward.core.anonymize.CACHE_SIZE", 3)
        first = anonymizer.anonymize("user-0")
        for i in range(1, 6):
            anonymizer.anonymize(f"user-{i}")

        assert len(anonymizer._cache) == 3
        assert "user-0" not in anonymizer._cache
        # Evicted ids are recomputed to the same pseudonym
        assert anonymizer.anonymize("user-0") == first

    def test_cache_keeps_recently_used(self, anonymizer, monkeypatch):
        monkeypatch.setattr("keyward.core.anonymize.CACHE_SIZE", 2)
        anonymizer.anonymize("user-a")
        anonymizer.anonymize("user-b")
        anonymizer.anonymize("user-a")
        anonymizer.anonymize("user-c")
        assert list(anonymizer._cache) == ["user-a", "user-c"]
