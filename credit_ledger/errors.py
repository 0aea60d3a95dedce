from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    DOMAIN = "DOMAIN"
    CONFIGURATION = "CONFIGURATION"
    TRANSIENT = "TRANSIENT"
    UNKNOWN = "UNKNOWN"


# Error codes reported by common drivers for failures that are safe to retry.
RETRYABLE_CODES = frozenset({
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ENETUNREACH",
    "ER_LOCK_WAIT_TIMEOUT",
    "ER_LOCK_DEADLOCK",
    "SQLITE_BUSY",
    "SQLITE_LOCKED",
    "P2024",
    "P2034",
    "408",
    "429",
    "500",
    "502",
    "503",
    "504",
})


class LedgerError(Exception):
    kind = ErrorKind.DOMAIN

    def __init__(self, message: str, code: str, **details: Any):
        self.message = message
        self.code = code
        self.details = details
        for name, value in details.items():
            setattr(self, name, value)
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class UserNotFoundError(LedgerError):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found", "USER_NOT_FOUND", user_id=user_id)


class InsufficientCreditsError(LedgerError):
    def __init__(self, user_id: str, required: float, available: float):
        super().__init__(
            f"User {user_id} has insufficient credits. Required: {required}, Available: {available}",
            "INSUFFICIENT_CREDITS",
            user_id=user_id, required=required, available=available,
        )


class MembershipRequiredError(LedgerError):
    def __init__(self, user_id: str, required: str, current: Optional[str]):
        super().__init__(
            f"User {user_id} requires {required} membership, but has {current or 'none'}",
            "MEMBERSHIP_REQUIRED",
            user_id=user_id, required=required, current=current,
        )


class UndefinedActionError(LedgerError):
    def __init__(self, action: str):
        super().__init__(f"Action {action} has no defined cost", "UNDEFINED_ACTION", action=action)


class UndefinedTierError(LedgerError):
    def __init__(self, tier: Optional[str]):
        super().__init__(
            f"Membership tier '{tier}' is not defined in configuration",
            "UNDEFINED_TIER",
            tier=tier,
        )


class InvalidTierChangeError(LedgerError):
    def __init__(self, user_id: str, current_tier: Optional[str], target_tier: str, direction: str):
        super().__init__(
            f"Cannot {direction} user {user_id} from {current_tier or 'none'} to {target_tier}",
            "INVALID_TIER_CHANGE",
            user_id=user_id, current_tier=current_tier, target_tier=target_tier, direction=direction,
        )


class InvalidAmountError(LedgerError):
    def __init__(self, amount: Any):
        super().__init__(
            f"Amount must be a non-negative number, got {amount!r}",
            "INVALID_AMOUNT",
            amount=amount,
        )


class IdempotencyKeyConflictError(LedgerError):
    """Raised when an idempotency key is reused by a different operation."""

    def __init__(self, key: str, existing: Any = None):
        super().__init__(
            f"Idempotency key {key} already exists",
            "IDEMPOTENCY_KEY_CONFLICT",
            key=key, existing=existing,
        )


class ConfigurationError(LedgerError):
    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION_ERROR")


class TransientStorageError(LedgerError):
    """Raised by storage backends for failures that may succeed on retry."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message, "TRANSIENT_STORAGE_ERROR", storage_code=code)


_ERRORS_BY_CODE = {
    "USER_NOT_FOUND": UserNotFoundError,
    "INSUFFICIENT_CREDITS": InsufficientCreditsError,
    "MEMBERSHIP_REQUIRED": MembershipRequiredError,
    "UNDEFINED_ACTION": UndefinedActionError,
    "UNDEFINED_TIER": UndefinedTierError,
    "INVALID_TIER_CHANGE": InvalidTierChangeError,
    "INVALID_AMOUNT": InvalidAmountError,
    "IDEMPOTENCY_KEY_CONFLICT": IdempotencyKeyConflictError,
    "CONFIGURATION_ERROR": ConfigurationError,
    "TRANSIENT_STORAGE_ERROR": TransientStorageError,
}


def error_from_payload(payload: dict) -> LedgerError:
    """Rebuild an error previously serialized with ``LedgerError.to_payload``."""
    cls = _ERRORS_BY_CODE.get(payload.get("code"), LedgerError)
    error = cls.__new__(cls)
    LedgerError.__init__(
        error,
        payload.get("message", ""),
        payload.get("code", "UNKNOWN"),
        **payload.get("details", {}),
    )
    return error


def classify_error(error: BaseException) -> ErrorKind:
    if isinstance(error, LedgerError):
        return error.kind
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT

    for attr in ("code", "status_code", "errno"):
        value = getattr(error, attr, None)
        if value is not None and str(value) in RETRYABLE_CODES:
            return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN
