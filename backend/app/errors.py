from __future__ import annotations

from typing import Any


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    public_message: str | None = None

    def __init__(
        self,
        message: str,
        *,
        user_action: str | None = None,
        developer_detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.user_action = user_action
        self.developer_detail = developer_detail

    def to_payload(self) -> dict[str, Any]:
        if self.public_message:
            return {"error": self.public_message}
        payload: dict[str, Any] = {"error": self.message}
        if self.user_action:
            payload["action"] = self.user_action
        return payload

    def headers(self) -> dict[str, str]:
        return {}


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class RateLimitedError(AppError):
    status_code = 429
    code = "RATE_LIMITED"
    public_message = "too many requests"

    def __init__(self, retry_after: int, message: str = "too many requests") -> None:
        super().__init__(message)
        self.retry_after = max(1, int(retry_after))

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class CryptoError(AppError):
    code = "CRYPTO_ERROR"
    public_message = "internal error"

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message, developer_detail=message)
        self.kind = kind


class ProviderError(AppError):
    status_code = 502
    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body: str = "",
        user_action: str | None = None,
    ) -> None:
        super().__init__(
            message,
            user_action=user_action or "Check the AI provider configuration and try again.",
            developer_detail=body[:500] if body else None,
        )
        self.status = status
        self.body = body


PROCESSING_STATUS_BY_KIND = {
    "unavailable": 503,
    "canceled": 504,
}


class ProcessingError(AppError):
    code = "PROCESSING_ERROR"

    def __init__(
        self,
        kind: str,
        message: str,
        *,
        user_action: str | None = None,
        developer_detail: str | None = None,
    ) -> None:
        super().__init__(message, user_action=user_action, developer_detail=developer_detail)
        self.kind = kind
        self.status_code = PROCESSING_STATUS_BY_KIND.get(kind, 500)
