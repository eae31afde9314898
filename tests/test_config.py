"""
tests/test_config.py -- Settings secret policy and defaults.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import HttpSettings, Settings

GOOD = "s" * 32


def test_production_requires_secrets():
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="", csrf_secret=GOOD)
    with pytest.raises(ValidationError, match="CSRF_SECRET is required"):
        Settings(debug=False, secret_key=GOOD, csrf_secret="")


def test_short_secret_rejected():
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(debug=False, secret_key="short", csrf_secret=GOOD)


def test_debug_generates_missing_secrets():
    settings = Settings(debug=True, secret_key="", csrf_secret="")
    assert len(settings.secret_key) >= 32
    assert len(settings.csrf_secret) >= 32
    assert settings.secret_key != settings.csrf_secret


def test_pepper_falls_back_to_secret_key():
    settings = Settings(debug=False, secret_key=GOOD, csrf_secret="c" * 32, api_key_pepper="")
    assert settings.api_key_pepper == GOOD


def test_clock_skew_capped_at_30_seconds():
    with pytest.raises(ValidationError):
        Settings(debug=True, clock_skew_seconds=31)


def test_defaults():
    settings = Settings(debug=True)
    assert settings.session_ttl_seconds == 7 * 24 * 3600
    assert settings.csrf_ttl_seconds == 24 * 3600
    assert settings.pending_auth_ttl_seconds == 300
    assert "/api/v1/auth/login" in settings.csrf_exempt_paths
    assert "localhost" in HttpSettings().allowed_hosts
