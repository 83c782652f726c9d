# app/core/errors.py
#
# Domain errors are HTTPExceptions so routes and services can raise them
# directly; FastAPI renders them as {"detail": {"code": ..., "message": ...}}.
from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class AppError(HTTPException):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "error"

    def __init__(self, message: str, *, code: str | None = None, extra: dict[str, Any] | None = None):
        self.message = message
        if code:
            self.code = code
        detail: dict[str, Any] = {"code": self.code, "message": message}
        if extra:
            detail.update(extra)
        super().__init__(status_code=self.status_code, detail=detail)


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class InvalidTransition(Conflict):
    code = "invalid_transition"


class DuplicatePendingWithdrawal(Conflict):
    code = "duplicate_pending_withdrawal"

    def __init__(self):
        super().__init__("You already have a pending withdrawal request")


class DuplicateRefundRequest(Conflict):
    code = "duplicate_refund_request"

    def __init__(self):
        super().__init__("A refund request already exists for this order")


class WebhookSignatureError(AppError):
    # 4xx tells the processor not to keep retrying this delivery
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_signature"


class PaymentProviderError(AppError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "payment_provider_error"
