# Two-Factor Module - Second Factor and Account Recovery
#
# TOTP enrollment and login checks, single-use backup codes, and
# email-delivered recovery tokens.

from .totp import TotpService
from .gate import TotpSetup, TwoFactorGate
from .recovery import RecoveryTokenService

__all__ = ["RecoveryTokenService", "TotpService", "TotpSetup", "TwoFactorGate"]
