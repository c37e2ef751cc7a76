# Core - Typed Configuration
#
# One frozen config object is built at process start (load_config) and
# handed to every service. Nothing below the service constructors reads
# the environment. Iteration counts and key lengths live here and only
# here, so a caller can never negotiate a weaker derivation.

import logging
import os
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

from ..exceptions import ConfigError

logger = logging.getLogger(__name__)

# PBKDF2-SHA256: OWASP 2023 recommends 600k iterations
DEFAULT_PBKDF2_ITERATIONS = 600_000
MIN_PBKDF2_ITERATIONS = 10_000
VALID_KEY_LENGTHS = (16, 24, 32)
MIN_BACKUP_CODE_ITERATIONS = 1_000

ENV_PREFIX = "KEYWARD_"


@dataclass(frozen=True)
class KeywardConfig:
    """Every tunable of the credential core."""

    # Key derivation
    pbkdf2_iterations: int = DEFAULT_PBKDF2_ITERATIONS
    key_length: int = 32
    salt_length: int = 32

    # TOTP
    totp_issuer: str = "Keyward"
    totp_digits: int = 6
    totp_step: int = 30
    totp_window: int = 1
    totp_setup_ttl: timedelta = timedelta(minutes=15)
    backup_code_count: int = 10
    backup_code_iterations: int = 100_000

    # Recovery
    recovery_token_ttl: timedelta = timedelta(minutes=30)

    # Re-key
    rekey_page_size: int = 100
    rekey_max_retries: int = 3
    rekey_backoff_base: float = 0.2

    # Storage and logs
    database_path: Path = Path("data/keyward.db")
    audit_log_dir: Path = Path("./audit_logs")

    # User-id anonymization for audit/monitoring output
    anonymizer_salt: str = "keyward-audit"
    anonymizer_iterations: int = 10_000
    allow_anonymizer_fallback: bool = False

    # Breach lookups (HIBP range API)
    breach_check_url: str = "https://api.pwnedpasswords.com/range/"
    breach_check_timeout: float = 5.0

    def __post_init__(self):
        if self.pbkdf2_iterations < MIN_PBKDF2_ITERATIONS:
            raise ConfigError(
                f"pbkdf2_iterations must be at least {MIN_PBKDF2_ITERATIONS}"
            )
        if self.key_length not in VALID_KEY_LENGTHS:
            raise ConfigError(f"key_length must be one of {VALID_KEY_LENGTHS}")
        if self.salt_length < 16:
            raise ConfigError("salt_length must be at least 16 bytes")
        if self.totp_digits not in (6, 7, 8):
            raise ConfigError("totp_digits must be 6, 7 or 8")
        if self.totp_step <= 0:
            raise ConfigError("totp_step must be positive")
        if self.totp_window < 0:
            raise ConfigError("totp_window must not be negative")
        if self.backup_code_count <= 0:
            raise ConfigError("backup_code_count must be positive")
        if self.backup_code_iterations < MIN_BACKUP_CODE_ITERATIONS:
            raise ConfigError(
                f"backup_code_iterations must be at least {MIN_BACKUP_CODE_ITERATIONS}"
            )
        if self.rekey_page_size <= 0:
            raise ConfigError("rekey_page_size must be positive")
        if self.rekey_max_retries < 0:
            raise ConfigError("rekey_max_retries must not be negative")
        for name in ("totp_setup_ttl", "recovery_token_ttl"):
            if getattr(self, name) <= timedelta(0):
                raise ConfigError(f"{name} must be positive")


def _parse(raw: str, current):
    """Coerce an environment string to the type of the field's default."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, timedelta):
        return timedelta(seconds=int(raw))
    if isinstance(current, Path):
        return Path(raw)
    return raw


def load_config(env_file: Optional[Union[str, Path]] = None) -> KeywardConfig:
    """Build the process configuration from KEYWARD_* environment variables.

    Values from ``env_file`` (or a ``.env`` found by python-dotenv) fill in
    anything the real environment does not set. Durations are given in
    seconds, e.g. ``KEYWARD_RECOVERY_TOKEN_TTL=1800``.

    Raises:
        ConfigError: If a variable cannot be parsed or is out of range.
    """
    load_dotenv(dotenv_path=env_file, override=False)

    defaults = KeywardConfig()
    overrides = {}
    for f in fields(KeywardConfig):
        raw = os.environ.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        try:
            overrides[f.name] = _parse(raw, getattr(defaults, f.name))
        except ValueError as e:
            raise ConfigError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {e}") from e

    config = KeywardConfig(**overrides)
    if config.allow_anonymizer_fallback:
        logger.warning("Anonymizer SHA-256 fallback is enabled by configuration")
    return config
