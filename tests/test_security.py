from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta

import jwt
import pytest

from kbchat.errors import Unauthenticated
from kbchat.security import JwtSecurityConfig, parse_and_validate_bearer_token, redact_sensitive

SECRET = "jwt_unit_secret"


def _cfg(**overrides) -> JwtSecurityConfig:
    values = {
        "issuer": "kbchat.test",
        "audience": "kbchat.api",
        "shared_secret": SECRET,
        "required_claims": ["sub", "exp"],
        "user_claim": "sub",
    }
    values.update(overrides)
    return JwtSecurityConfig(**values)


def _token(*, secret: str = SECRET, ttl_minutes: int = 15, **claims) -> str:
    now = datetime.now(UTC)
    payload: dict[str, object] = {
        "sub": "user_a",
        "iss": "kbchat.test",
        "aud": "kbchat.api",
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def test_valid_token_resolves_user():
    auth = parse_and_validate_bearer_token(authorization=f"Bearer {_token()}", cfg=_cfg())

    assert auth.user_id == "user_a"
    assert auth.claims["iss"] == "kbchat.test"


def test_audience_list_is_accepted():
    token = _token(aud=["other", "kbchat.api"])

    assert parse_and_validate_bearer_token(authorization=f"Bearer {token}", cfg=_cfg()).user_id == "user_a"


@pytest.mark.parametrize(
    ("authorization", "message"),
    [
        (None, "Authentication required."),
        ("Token abc", "invalid Authorization header"),
        ("Bearer    ", "empty bearer token"),
        ("Bearer a.b", "invalid token format"),
    ],
)
def test_malformed_headers_are_rejected(authorization, message):
    with pytest.raises(Unauthenticated) as exc_info:
        parse_and_validate_bearer_token(authorization=authorization, cfg=_cfg())

    assert exc_info.value.message == message
    assert exc_info.value.http_status == 401


@pytest.mark.parametrize(
    ("token_kwargs", "cfg_overrides", "message"),
    [
        ({"secret": "wrong"}, {}, "invalid token signature"),
        ({"ttl_minutes": -1}, {}, "token expired"),
        ({"iss": "elsewhere"}, {}, "jwt issuer mismatch"),
        ({"aud": "elsewhere"}, {}, "jwt audience mismatch"),
        ({}, {"required_claims": ["sub", "exp", "email"]}, "missing required claim: email"),
        ({"sub": ""}, {}, "missing user claim"),
        ({"exp": "4102444800"}, {}, "token expired"),
        ({"nbf": 4102444800}, {}, "token not yet valid"),
        ({}, {"shared_secret": ""}, "jwt shared secret not configured"),
    ],
)
def test_invalid_tokens_are_rejected(token_kwargs, cfg_overrides, message):
    token = _token(**token_kwargs)

    with pytest.raises(Unauthenticated, match=message):
        parse_and_validate_bearer_token(authorization=f"Bearer {token}", cfg=_cfg(**cfg_overrides))


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub, exp ,tenant")
    monkeypatch.setenv("JWT_USER_CLAIM", "")

    cfg = JwtSecurityConfig.from_env()

    assert cfg.required_claims == ["sub", "exp", "tenant"]
    assert cfg.user_claim == "sub"


def test_redact_sensitive_masks_secrets():
    redacted = redact_sensitive(
        {
            "Authorization": "Bearer abc",
            "X-Internal-Secret": "shh",
            "nested": [{"password": "p"}, "bearer 0123456789abcdefghijklmnop"],
            "path": "/api/chat",
        }
    )

    assert redacted == {
        "Authorization": "***REDACTED***",
        "X-Internal-Secret": "***REDACTED***",
        "nested": [{"password": "***REDACTED***"}, "***REDACTED***"],
        "path": "/api/chat",
    }


def test_non_hs256_tokens_are_rejected():
    header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode("ascii").rstrip("=")
    claims = _token().split(".")[1]

    with pytest.raises(Unauthenticated, match="unsupported jwt algorithm"):
        parse_and_validate_bearer_token(authorization=f"Bearer {header}.{claims}.", cfg=_cfg())
