from __future__ import annotations


class ErrorCode:
    FETCH_ERROR = "FETCH_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    LOCK_UNAVAILABLE = "LOCK_UNAVAILABLE"
    STATUS_CONFLICT = "STATUS_CONFLICT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EXPIRY_SPIKE = "EXPIRY_SPIKE"

    # row level
    MISSING_TITLE = "MISSING_TITLE"
    INVALID_PRICE = "INVALID_PRICE"
    MISSING_IDENTIFIER = "MISSING_IDENTIFIER"
    INVALID_IDENTIFIER = "INVALID_IDENTIFIER"


class FeedSentryError(Exception):
    code = "ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class FetchError(FeedSentryError):
    code = ErrorCode.FETCH_ERROR


class ParseFailure(FeedSentryError):
    """The document as a whole could not be parsed by any connector."""

    code = ErrorCode.PARSE_ERROR


class StatusConflictError(FeedSentryError):
    code = ErrorCode.STATUS_CONFLICT

    def __init__(self, message: str, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class ValidationFailedError(FeedSentryError):
    code = ErrorCode.VALIDATION_ERROR


class RunBindingError(FeedSentryError):
    """The freshly created run id could not be recorded on the job."""

    code = "RUN_BINDING_FAILED"


class LeaseLostError(FeedSentryError):
    """The feed lease or the job lock was taken over while a run was in progress."""

    code = ErrorCode.LOCK_UNAVAILABLE
