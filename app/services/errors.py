from __future__ import annotations


class CoreError(Exception):
    code = "ERROR"
    http_status = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = str(message or self.default_message)
        super().__init__(self.message)

    def as_payload(self) -> dict[str, str]:
        return {"message": self.message, "code": self.code}


class InvalidPayload(CoreError):
    code = "INVALID_PAYLOAD"
    http_status = 400
    default_message = "Invalid payload"


class Unauthenticated(CoreError):
    code = "UNAUTHENTICATED"
    http_status = 401
    default_message = "Authentication failed"


class AccessDenied(CoreError):
    code = "ACCESS_DENIED"
    http_status = 403
    default_message = "Access denied to chat room"


class Forbidden(CoreError):
    code = "FORBIDDEN"
    http_status = 403
    default_message = "Access denied - you cannot perform this action"


class NotFound(CoreError):
    code = "NOT_FOUND"
    http_status = 404
    default_message = "Not found"


class NotAvailable(CoreError):
    code = "NOT_AVAILABLE"
    http_status = 400
    default_message = "Case is not available"


class AlreadyOffered(CoreError):
    code = "ALREADY_OFFERED"
    http_status = 409
    default_message = "A pending proposal already exists"


class AlreadyResolved(CoreError):
    code = "ALREADY_RESOLVED"
    http_status = 409
    default_message = "Request has already been responded to"


class Conflict(CoreError):
    """Concurrent writer won the race; safe to retry."""

    code = "CONFLICT"
    http_status = 409
    default_message = "Concurrent update, please retry"


class RateLimited(CoreError):
    code = "RATE_LIMITED"
    http_status = 429
    default_message = "Message rate limit exceeded. Please slow down."

    def __init__(self, message: str | None = None, retry_after_seconds: int = 0):
        super().__init__(message)
        self.retry_after_seconds = int(retry_after_seconds or 0)


class StoreUnavailable(CoreError):
    """Persistence timed out or is unreachable; safe to retry."""

    code = "STORE_UNAVAILABLE"
    http_status = 503
    default_message = "Storage is temporarily unavailable"
