"""Tests for master password policy and strength analysis."""

import pytest

from keyward.vault.password_policy import (
    analyze_password,
    check_master_password,
    estimate_entropy,
    has_repeated_chars,
    has_sequential_chars,
)


class TestCheckMasterPassword:

    def test_strong_password_accepted(self):
        assert check_master_password("Correct-Horse-42-Battery") == (True, "")

    @pytest.mark.parametrize("password,fragment", [
        ("Short1A", "12 characters"),
        ("no-uppercase-123", "uppercase"),
        ("NO-LOWERCASE-123", "lowercase"),
        ("No-Digits-Anywhere", "number"),
    ])
    def test_rejections(self, password, fragment):
        valid, message = check_master_password(password)
        assert not valid
        assert fragment in message

    def test_common_password(self):
        # Passes the character-class checks but is on the common list
        valid, message = check_master_password("Welcome12345")
        assert not valid
        assert "common" in message


class TestAnalyzePassword:

    def test_empty(self):
        report = analyze_password("")
        assert report.score == 0
        assert report.entropy == 0.0

    def test_strong(self):
        report = analyze_password("Tr0ub4dor&3-Kx9!vQ")
        assert report.score >= 4
        assert not report.is_common

    def test_common_forced_to_very_weak(self):
        report = analyze_password("password123")
        assert report.is_common
        assert report.score == 1
        assert report.strength == "Very Weak"
        assert report.feedback[0] == "This is a commonly used password"

    def test_patterns_lower_score(self):
        assert has_sequential_chars("xxabcxx")
        assert has_repeated_chars("paaass")
        assert not has_sequential_chars("Kx9!vQ")
        assert not has_repeated_chars("abab")

    def test_entropy_grows_with_pool(self):
        assert estimate_entropy("abcdefgh") < estimate_entropy("abcdEFGH")
        assert estimate_entropy("abcdEFGH") < estimate_entropy("abcdEF1!")
