from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kbchat.errors import Unauthenticated


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _numeric_date(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def redact_sensitive(value: object) -> object:
    sensitive_keys = {
        "authorization",
        "token",
        "secret",
        "password",
        "api_key",
        "apikey",
        "access_token",
        "x-internal-secret",
    }
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            if str(key).lower() in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("sk-", "bearer ", "token")):
            return "***REDACTED***"
    return value


@dataclass
class AuthContext:
    user_id: str
    claims: dict[str, Any]


@dataclass
class JwtSecurityConfig:
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    user_claim: str

    @classmethod
    def from_env(cls) -> "JwtSecurityConfig":
        return cls(
            issuer=os.environ.get("JWT_ISSUER", "").strip(),
            audience=os.environ.get("JWT_AUDIENCE", "").strip(),
            shared_secret=os.environ.get("JWT_SHARED_SECRET", "").strip(),
            required_claims=_split_csv(os.environ.get("JWT_REQUIRED_CLAIMS", "sub,exp")),
            user_claim=os.environ.get("JWT_USER_CLAIM", "sub").strip() or "sub",
        )


def _parse_token_parts(token: str) -> tuple[dict[str, Any], dict[str, Any], str, str]:
    parts = token.split(".")
    if len(parts) != 3:
        raise Unauthenticated("invalid token format")
    header_raw, payload_raw, signature_raw = parts
    try:
        header_obj = json.loads(_b64url_decode(header_raw))
        payload_obj = json.loads(_b64url_decode(payload_raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise Unauthenticated("invalid token payload") from None
    if not isinstance(header_obj, dict) or not isinstance(payload_obj, dict):
        raise Unauthenticated("invalid token payload")
    return header_obj, payload_obj, f"{header_raw}.{payload_raw}", signature_raw


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    """Resolve the session user from an ``Authorization: Bearer <jwt>`` header."""
    if not authorization:
        raise Unauthenticated()
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise Unauthenticated("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise Unauthenticated("empty bearer token")

    header_obj, payload_obj, signing_input, signature_raw = _parse_token_parts(token)
    if str(header_obj.get("alg", "")).upper() != "HS256":
        raise Unauthenticated("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise Unauthenticated("jwt shared secret not configured")
    expected = _b64url_encode(
        hmac.new(
            cfg.shared_secret.encode("utf-8"),
            signing_input.encode("ascii"),
            hashlib.sha256,
        ).digest()
    )
    if not hmac.compare_digest(expected, signature_raw):
        raise Unauthenticated("invalid token signature")

    now_ts = int(datetime.now(UTC).timestamp())
    exp = _numeric_date(payload_obj.get("exp"))
    if exp is None or exp <= now_ts:
        raise Unauthenticated("token expired")
    nbf = _numeric_date(payload_obj.get("nbf"))
    if nbf is not None and nbf > now_ts:
        raise Unauthenticated("token not yet valid")

    if cfg.issuer and str(payload_obj.get("iss", "")) != cfg.issuer:
        raise Unauthenticated("jwt issuer mismatch")
    if cfg.audience:
        aud = payload_obj.get("aud")
        if isinstance(aud, list):
            aud_ok = cfg.audience in {str(x) for x in aud}
        else:
            aud_ok = str(aud or "") == cfg.audience
        if not aud_ok:
            raise Unauthenticated("jwt audience mismatch")

    for claim in cfg.required_claims:
        if claim not in payload_obj:
            raise Unauthenticated(f"missing required claim: {claim}")

    user_id = str(payload_obj.get(cfg.user_claim) or "").strip()
    if not user_id:
        raise Unauthenticated("missing user claim")
    return AuthContext(user_id=user_id, claims=payload_obj)
