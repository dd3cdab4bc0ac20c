from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode:
    LOCK_TIMEOUT = "lock_timeout"
    STORAGE_ERROR = "storage_error"
    INVALID_STATE = "invalid_state"
    MISSING_USER_ID = "missing_user_id"
    NO_BINDING = "no_binding"
    DELIVERY_FAILED = "delivery_failed"
    NOT_CONFIGURED = "not_configured"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN = "unknown"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = ErrorCode.UNKNOWN) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def describe(self) -> str:
        """One-line outcome for logs and per-event webhook summaries."""
        if self.ok:
            return str(self.value)
        return f"{self.error_code}: {self.error}"
