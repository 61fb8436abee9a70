"""Tests for audit target URL validation."""

from __future__ import annotations

import pytest

from siteaudit.errors.exceptions import ValidationError
from siteaudit.services.validators import validate_url


class TestValidateUrl:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("https://example.com", "https://example.com"),
            ("example.com", "https://example.com"),
            ("http://Example.com/", "http://example.com"),
            ("https://sub.example.co.uk/path/", "https://sub.example.co.uk/path"),
            ("http://localhost:8000", "http://localhost:8000"),
            ("http://127.0.0.1", "http://127.0.0.1"),
        ],
    )
    def test_valid(self, raw: str, expected: str):
        assert validate_url(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   ",
            "ftp://example.com",
            "https://",
            "https://exa mple.com",
            "https://example",
            "https://example.com:99999",
        ],
    )
    def test_invalid(self, raw: str):
        with pytest.raises(ValidationError):
            validate_url(raw)
