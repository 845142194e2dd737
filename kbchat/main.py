from __future__ import annotations

import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from kbchat.backend_client import BackendClient
from kbchat.config import BackendConfig
from kbchat.errors import ApiError, InvalidRequest
from kbchat.monitor import GenerationMonitor, MonitorRegistry
from kbchat.orchestrator import ChatOrchestrator
from kbchat.reconciler import StatusReconciler
from kbchat.routes._deps import (
    error_response,
    log_security_block,
    request_id_from_request,
    trace_id_from_request,
)
from kbchat.routes.chat import router as chat_router
from kbchat.routes.conversations import router as conversations_router
from kbchat.schemas import success_envelope
from kbchat.security import JwtSecurityConfig, parse_and_validate_bearer_token
from kbchat.store import ChatStore, store

logger = logging.getLogger(__name__)

_SECURITY_CODES = {"AUTH_UNAUTHORIZED", "CONVERSATION_FORBIDDEN"}


def create_app(
    *,
    chat_store: ChatStore | None = None,
    backend: BackendClient | None = None,
    registry: MonitorRegistry | None = None,
    monitor: GenerationMonitor | None = None,
) -> FastAPI:
    security_cfg = JwtSecurityConfig.from_env()
    chat_store = chat_store or store
    backend = backend or BackendClient(BackendConfig.from_env())
    registry = registry or MonitorRegistry(capacity=chat_store.config.monitor_max_concurrent)
    monitor = monitor or GenerationMonitor(store=chat_store, backend=backend, registry=registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("chat_monitors_shutdown active=%s", len(monitor.registry))
        await monitor.registry.drain(cancel=True)

    app = FastAPI(title="Knowledge Base Chat Gateway", version="0.1.0", lifespan=lifespan)

    app.state.security_cfg = security_cfg
    app.state.chat_store = chat_store
    app.state.monitor_registry = monitor.registry
    app.state.monitor = monitor
    app.state.orchestrator = ChatOrchestrator(store=chat_store, backend=backend, monitor=monitor)
    app.state.reconciler = StatusReconciler(store=chat_store, backend=backend, monitor=monitor)

    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=[
                "X-RateLimit-Limit",
                "X-RateLimit-Remaining",
                "X-RateLimit-Used",
                "X-RateLimit-Reset",
                "x-trace-id",
            ],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth = None
        try:
            if request.url.path.startswith("/api/"):
                request.state.auth = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
            response = await call_next(request)
        except ApiError as exc:
            log_security_block(request, exc)
            response = error_response(request, exc)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_CODES:
            log_security_block(request, exc)
        return error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(request, InvalidRequest())

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(request, InvalidRequest("resource not found", code="REQ_NOT_FOUND", status=404))
        return error_response(
            request,
            InvalidRequest(str(exc.detail), code="REQ_HTTP_ERROR", status=exc.status_code),
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(chat_router)
    app.include_router(conversations_router)
    return app


app = create_app()
