"""Tests for KeywardConfig validation and environment loading."""

from datetime import timedelta
from pathlib import Path

import pytest

from keyward.core.config import (
    DEFAULT_PBKDF2_ITERATIONS,
    MIN_PBKDF2_ITERATIONS,
    KeywardConfig,
    load_config,
)
from keyward.exceptions import ConfigError


class TestDefaults:

    def test_defaults(self):
        config = KeywardConfig()
        assert config.pbkdf2_iterations == DEFAULT_PBKDF2_ITERATIONS
        assert config.key_length == 32
        assert config.totp_digits == 6
        assert config.totp_step == 30
        assert config.totp_window == 1
        assert config.recovery_token_ttl == timedelta(minutes=30)

    def test_frozen(self):
        config = KeywardConfig()
        with pytest.raises(AttributeError):
            config.pbkdf2_iterations = 1


class TestValidation:

    def test_iterations_below_floor(self):
        with pytest.raises(ConfigError):
            KeywardConfig(pbkdf2_iterations=MIN_PBKDF2_ITERATIONS - 1)

    @pytest.mark.parametrize("kwargs", [
        {"key_length": 20},
        {"salt_length": 8},
        {"totp_digits": 4},
        {"totp_step": 0},
        {"totp_window": -1},
        {"backup_code_count": 0},
        {"backup_code_iterations": 10},
        {"rekey_page_size": 0},
        {"rekey_max_retries": -1},
        {"recovery_token_ttl": timedelta(0)},
        {"totp_setup_ttl": timedelta(seconds=-5)},
    ])
    def test_out_of_range(self, kwargs):
        with pytest.raises(ConfigError):
            KeywardConfig(**kwargs)


class TestLoadConfig:

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KEYWARD_PBKDF2_ITERATIONS", "200000")
        monkeypatch.setenv("KEYWARD_REKEY_BACKOFF_BASE", "0.5")
        monkeypatch.setenv("KEYWARD_DATABASE_PATH", str(tmp_path / "db.sqlite"))
        monkeypatch.setenv("KEYWARD_TOTP_ISSUER", "Acme")

        config = load_config(env_file=tmp_path / "missing.env")

        assert config.pbkdf2_iterations == 200_000
        assert config.rekey_backoff_base == 0.5
        assert config.database_path == tmp_path / "db.sqlite"
        assert config.totp_issuer == "Acme"

    def test_durations_in_seconds(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KEYWARD_RECOVERY_TOKEN_TTL", "600")
        config = load_config(env_file=tmp_path / "missing.env")
        assert config.recovery_token_ttl == timedelta(minutes=10)

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), ("yes", True), ("off", False), ("0", False),
    ])
    def test_bool_parsing(self, monkeypatch, tmp_path, raw, expected):
        monkeypatch.setenv("KEYWARD_ALLOW_ANONYMIZER_FALLBACK", raw)
        config = load_config(env_file=tmp_path / "missing.env")
        assert config.allow_anonymizer_fallback is expected

    def test_unparseable_value(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KEYWARD_TOTP_DIGITS", "six")
        with pytest.raises(ConfigError, match="KEYWARD_TOTP_DIGITS"):
            load_config(env_file=tmp_path / "missing.env")

    def test_weak_iterations_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KEYWARD_PBKDF2_ITERATIONS", "1000")
        with pytest.raises(ConfigError):
            load_config(env_file=tmp_path / "missing.env")

    def test_env_file(self, monkeypatch, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("KEYWARD_BACKUP_CODE_COUNT=8\n")
        # Registers the variable with monkeypatch so teardown removes what load_dotenv sets
        monkeypatch.setenv("KEYWARD_BACKUP_CODE_COUNT", "placeholder")
        monkeypatch.delenv("KEYWARD_BACKUP_CODE_COUNT")

        config = load_config(env_file=env_file)
        assert config.backup_code_count == 8

    def test_real_environment_wins_over_env_file(self, monkeypatch, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("KEYWARD_TOTP_WINDOW=3\n")
        monkeypatch.setenv("KEYWARD_TOTP_WINDOW", "2")

        config = load_config(env_file=env_file)
        assert config.totp_window == 2

    def test_path_fields(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KEYWARD_AUDIT_LOG_DIR", "logs/audit")
        config = load_config(env_file=tmp_path / "missing.env")
        assert config.audit_log_dir == Path("logs/audit")
