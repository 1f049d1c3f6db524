from __future__ import annotations

import sys
from pathlib import Path

import jwt
import pytest
from fastapi import HTTPException


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from auth.utils import create_token, decode_token, token_lifetime_hours  # noqa: E402
from config import Settings  # noqa: E402
from db.models import User  # noqa: E402
from services.attempt_session import TimerRules  # noqa: E402


def test_production_security_gate_rejects_default_secret_values():
    settings = Settings(
        ENVIRONMENT="production",
        SECRET_KEY="change-me-in-production",
        ADMIN_PASSWORD="Pl4nk!Admin",
        AUTH_COOKIE_SECURE=False,
    )
    with pytest.raises(RuntimeError):
        settings.validate_security_configuration()


def test_development_settings_skip_the_security_gate():
    Settings(ENVIRONMENT="development").validate_security_configuration()


def test_timer_rules_follow_settings_defaults():
    rules = TimerRules.from_settings()
    assert rules.countdown_steps == 3
    assert rules.still_going_first_seconds == 300
    assert rules.still_going_interval_seconds == 120
    assert rules.recovery_limit_seconds == 60.0
    assert rules.max_attempts == 3


def test_admin_tokens_expire_sooner_than_participant_tokens():
    assert token_lifetime_hours("admin") == 12
    assert token_lifetime_hours("user") == 72
    assert token_lifetime_hours(None) == 72

    admin = User(id=1, username="boss", role="admin", token_version=2)
    claims = decode_token(create_token(admin))
    assert claims["sub"] == "1"
    assert claims["tv"] == 2
    assert claims["exp"] - claims["iat"] == 12 * 3600


def test_token_signed_with_another_key_is_rejected():
    forged = jwt.encode({"sub": "5", "tv": 0}, "not-the-server-secret", algorithm="HS256")
    with pytest.raises(HTTPException) as excinfo:
        decode_token(forged)
    assert excinfo.value.status_code == 401
