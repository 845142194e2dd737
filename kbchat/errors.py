from __future__ import annotations

from typing import Any


class ApiError(Exception):
    quota: Any = None

    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class Unauthenticated(ApiError):
    def __init__(self, message: str = "Authentication required.") -> None:
        super().__init__(
            code="AUTH_UNAUTHORIZED",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )


class InvalidRequest(ApiError):
    def __init__(
        self,
        message: str = "Invalid chat request payload.",
        *,
        code: str = "REQ_VALIDATION_FAILED",
        status: int = 400,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=status,
        )


class ConversationForbidden(ApiError):
    def __init__(self, message: str = "Conversation does not belong to authenticated user.") -> None:
        super().__init__(
            code="CONVERSATION_FORBIDDEN",
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


class QuotaExceeded(ApiError):
    def __init__(self, quota: Any) -> None:
        super().__init__(
            code="QUOTA_EXCEEDED",
            message=f"Daily quota exceeded. You have reached {quota.limit} requests today.",
            error_class="business_rule",
            retryable=False,
            http_status=429,
        )
        self.quota = quota


class UpstreamUnavailable(ApiError):
    def __init__(self, message: str = "Backend is unavailable.") -> None:
        super().__init__(
            code="UPSTREAM_UNAVAILABLE",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=502,
        )


class UpstreamRejected(ApiError):
    def __init__(self, message: str = "Request was rejected by backend.", *, status_code: int = 400) -> None:
        super().__init__(
            code="UPSTREAM_REJECTED",
            message=message,
            error_class="upstream",
            retryable=False,
            http_status=status_code,
        )


class BackendFault(ApiError):
    def __init__(self, message: str = "Backend failed to process request.") -> None:
        super().__init__(
            code="BACKEND_FAULT",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=502,
        )


class MissingAnswer(ApiError):
    def __init__(self, message: str = "Backend response is missing answer.") -> None:
        super().__init__(
            code="MISSING_ANSWER",
            message=message,
            error_class="upstream",
            retryable=False,
            http_status=502,
        )


class PersistenceFailure(ApiError):
    def __init__(self, message: str = "Failed to persist chat state.") -> None:
        super().__init__(
            code="PERSISTENCE_FAILURE",
            message=message,
            error_class="internal",
            retryable=True,
            http_status=500,
        )


class ConversationNotFound(ApiError):
    def __init__(self, message: str = "Conversation not found.") -> None:
        super().__init__(
            code="CONVERSATION_NOT_FOUND",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class GenerationNotFound(ApiError):
    def __init__(self, message: str = "Generation not found.") -> None:
        super().__init__(
            code="GENERATION_NOT_FOUND",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class GenerationFailed(ApiError):
    def __init__(self, message: str = "Generation failed.", *, code: str = "GENERATION_FAILED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=422,
        )


class GenerationExpired(GenerationFailed):
    def __init__(self, message: str = "Generation expired before completion.") -> None:
        super().__init__(message, code="GENERATION_EXPIRED")


class GenerationStalled(GenerationFailed):
    def __init__(
        self,
        message: str = "Generation stalled and the response could not be recovered. Please try again.",
    ) -> None:
        super().__init__(message, code="GENERATION_STALLED")
        self.details = {"can_retry": True}


class MissingAssistantMessage(ApiError):
    def __init__(self, message: str = "Generation completed but assistant message was not found.") -> None:
        super().__init__(
            code="MISSING_ASSISTANT_MESSAGE",
            message=message,
            error_class="internal",
            retryable=False,
            http_status=500,
        )


class AssistantMessageConflict(Exception):
    """An assistant message already exists for this generation."""

    def __init__(self, generation_id: str) -> None:
        super().__init__(f"assistant message already stored for generation {generation_id}")
        self.generation_id = generation_id
