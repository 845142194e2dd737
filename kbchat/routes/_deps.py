from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from kbchat.errors import ApiError, Unauthenticated
from kbchat.repositories.quota import QuotaSnapshot
from kbchat.schemas import error_envelope
from kbchat.security import AuthContext, redact_sensitive

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store"}


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def auth_from_request(request: Request) -> AuthContext:
    auth = getattr(request.state, "auth", None)
    if not isinstance(auth, AuthContext):
        raise Unauthenticated()
    return auth


def quota_headers(quota: QuotaSnapshot | None) -> dict[str, str]:
    return quota.headers() if quota is not None else {}


def error_response(request: Request, exc: ApiError) -> JSONResponse:
    quota = exc.quota if isinstance(exc.quota, QuotaSnapshot) else None
    return JSONResponse(
        status_code=exc.http_status,
        content=error_envelope(
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            trace_id=trace_id_from_request(request),
            details=exc.details,
            quota=quota.as_dict() if quota is not None else None,
        ),
        headers={**NO_STORE, **quota_headers(quota)},
    )


def log_security_block(request: Request, exc: ApiError) -> None:
    headers: Any = redact_sensitive(dict(request.headers.items()))
    logger.warning(
        "security_blocked code=%s path=%s trace_id=%s headers=%s",
        exc.code,
        request.url.path,
        trace_id_from_request(request),
        headers,
    )
