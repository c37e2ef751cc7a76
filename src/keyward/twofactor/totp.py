# Two-Factor - TOTP (RFC 6238)
#
# HMAC-SHA1, 6 digits, 30 s step: what every authenticator app expects.
# The one-time-password math is cryptography's TOTP; this module adds
# secret generation, a +/- window for clock skew and an injectable clock.

import base64
import binascii
import os
import time
from typing import Callable, Optional

from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.twofactor import InvalidToken
from cryptography.hazmat.primitives.twofactor.totp import TOTP

from ..core.config import KeywardConfig
from ..exceptions import DerivationError

SECRET_BYTES = 20  # 160 bits, the RFC 4226 recommendation


def _decode_secret(secret: str) -> bytes:
    cleaned = secret.replace(" ", "").upper()
    cleaned += "=" * (-len(cleaned) % 8)
    try:
        return base64.b32decode(cleaned)
    except (binascii.Error, ValueError) as e:
        raise DerivationError("TOTP secret is not valid base32") from e


class TotpService:
    """Generates and checks time-based one-time codes."""

    def __init__(self, config: KeywardConfig, clock: Callable[[], float] = time.time):
        self.issuer = config.totp_issuer
        self.digits = config.totp_digits
        self.step = config.totp_step
        self.window = config.totp_window
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def _totp(self, secret: str) -> TOTP:
        return TOTP(
            _decode_secret(secret),
            self.digits,
            SHA1(),
            self.step,
        )

    @staticmethod
    def generate_secret() -> str:
        """Random base32 secret, the form authenticator apps accept."""
        return base64.b32encode(os.urandom(SECRET_BYTES)).decode("ascii").rstrip("=")

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        """otpauth:// URI for QR enrollment."""
        return self._totp(secret).get_provisioning_uri(account_name, self.issuer)

    def time_step(self, at: Optional[float] = None) -> int:
        return int((self.now() if at is None else at) // self.step)

    def generate(self, secret: str, at: Optional[float] = None) -> str:
        """Code for the step containing ``at`` (default: now)."""
        at = self.now() if at is None else at
        return self._totp(secret).generate(int(at)).decode("ascii")

    def verify(self, secret: str, code: str) -> Optional[int]:
        """
        Check ``code`` against the current step and ``window`` steps
        either side.

        Returns:
            The matching time step, or None when no step matches
        """
        code = (code or "").strip().replace(" ", "")
        if len(code) != self.digits or not code.isdigit():
            return None

        totp = self._totp(secret)
        current = self.time_step()
        # Current step first, then outward.
        offsets = sorted(range(-self.window, self.window + 1), key=abs)
        for offset in offsets:
            step = current + offset
            if step < 0:
                continue
            try:
                totp.verify(code.encode("ascii"), step * self.step)
                return step
            except InvalidToken:
                continue
        return None
