# Vault - Master Password Policy
#
# Enforced on registration, master-password change and reset.
# analyze_password() gives the UI-facing strength estimate; it does not
# gate anything by itself.

import math
import re
from dataclasses import dataclass, field
from typing import List, Tuple

MIN_MASTER_PASSWORD_LENGTH = 12

COMMON_PASSWORDS = frozenset({
    "password", "password123", "123456", "12345678", "qwerty", "admin",
    "welcome", "football", "letmein", "monkey", "abc123", "111111",
    "baseball", "dragon", "master", "sunshine", "passw0rd", "shadow",
    "123123", "superman", "qazwsx", "trustno1", "princess", "123456789",
    "1234567890", "admin123456", "welcome12345", "passw0rd123",
    "123456789012",
})

_SEQUENCES = (
    "abcdefghijklmnopqrstuvwxyz",
    "0123456789",
    "qwertyuiop",
    "asdfghjkl",
    "zxcvbnm",
)


def is_common_password(password: str) -> bool:
    return password.lower() in COMMON_PASSWORDS


def check_master_password(password: str) -> Tuple[bool, str]:
    """
    Verify master password meets security requirements.

    Requirements:
    - At least 12 characters
    - Mix of uppercase, lowercase, numbers
    - Not a common weak password

    Returns:
        (is_valid, error_message)
    """
    if len(password) < MIN_MASTER_PASSWORD_LENGTH:
        return False, f"Master password must be at least {MIN_MASTER_PASSWORD_LENGTH} characters long"

    if not any(c.isupper() for c in password):
        return False, "Master password must contain at least one uppercase letter"

    if not any(c.islower() for c in password):
        return False, "Master password must contain at least one lowercase letter"

    if not any(c.isdigit() for c in password):
        return False, "Master password must contain at least one number"

    if is_common_password(password):
        return False, "This password is too common. Please choose a stronger password."

    return True, ""


def estimate_entropy(password: str) -> float:
    """Bits of entropy from character pool size and length."""
    pool = 0
    if re.search(r"[a-z]", password):
        pool += 26
    if re.search(r"[A-Z]", password):
        pool += 26
    if re.search(r"[0-9]", password):
        pool += 10
    if re.search(r"[^a-zA-Z0-9]", password):
        pool += 33
    if pool == 0:
        return 0.0
    return len(password) * math.log2(pool)


def has_sequential_chars(password: str) -> bool:
    lowered = password.lower()
    for seq in _SEQUENCES:
        for i in range(len(seq) - 2):
            if seq[i:i + 3] in lowered:
                return True
    return False


def has_repeated_chars(password: str) -> bool:
    return re.search(r"(.)\1\1", password) is not None


@dataclass
class StrengthReport:
    score: int                  # 0-5
    strength: str
    entropy: float
    feedback: List[str] = field(default_factory=list)
    is_common: bool = False


_STRENGTH_BANDS = (
    (28, 1, "Very Weak"),
    (36, 2, "Weak"),
    (60, 3, "Moderate"),
    (80, 4, "Strong"),
)


def analyze_password(password: str) -> StrengthReport:
    if not password:
        return StrengthReport(score=0, strength="Very Weak", entropy=0.0,
                              feedback=["Password is empty"])

    entropy = estimate_entropy(password)
    feedback = []

    if len(password) < MIN_MASTER_PASSWORD_LENGTH:
        feedback.append(f"Use at least {MIN_MASTER_PASSWORD_LENGTH} characters")
    if not re.search(r"[a-z]", password):
        feedback.append("Add lowercase letters")
    if not re.search(r"[A-Z]", password):
        feedback.append("Add uppercase letters")
    if not re.search(r"[0-9]", password):
        feedback.append("Add numbers")
    if not re.search(r"[^a-zA-Z0-9]", password):
        feedback.append("Add special characters")

    sequential = has_sequential_chars(password)
    repeated = has_repeated_chars(password)
    if sequential:
        feedback.append("Avoid sequential characters (abc, 123, etc.)")
    if repeated:
        feedback.append("Avoid repeated characters (aaa, 111, etc.)")

    score, strength = 5, "Very Strong"
    for limit, band_score, band_name in _STRENGTH_BANDS:
        if entropy < limit:
            score, strength = band_score, band_name
            break

    if sequential or repeated:
        score = max(1, score - 1)

    common = is_common_password(password)
    if common:
        score, strength = 1, "Very Weak"
        feedback.insert(0, "This is a commonly used password")

    return StrengthReport(
        score=score,
        strength=strength,
        entropy=entropy,
        feedback=feedback,
        is_common=common,
    )
