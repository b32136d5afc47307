"""Tests for runtime environment detection."""

import pytest

from helpdesk.utils.runtime import get_environment, is_development


def test_defaults_to_production(monkeypatch):
    monkeypatch.delenv("HELPDESK_ENV", raising=False)
    assert get_environment() == "production"
    assert is_development() is False


@pytest.mark.parametrize(
    ("value", "expected"),
    [("development", True), (" Development ", True), ("test", False), ("", False)],
)
def test_is_development(monkeypatch, value, expected):
    monkeypatch.setenv("HELPDESK_ENV", value)
    assert is_development() is expected
