"""
Credit Ledger Orchestration Core

This module provides:
- Charge, refund and grant flows against a pluggable storage backend
- Membership tier upgrades and downgrades with credit cap resets
- Idempotent mutations keyed by caller-supplied keys
- Bounded retry with exponential backoff for transient storage failures
- Audit trail of every attempted operation
"""

from .config import LedgerConfig, load_config
from .errors import (
    ConfigurationError,
    ErrorKind,
    IdempotencyKeyConflictError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidTierChangeError,
    LedgerError,
    MembershipRequiredError,
    TransientStorageError,
    UndefinedActionError,
    UndefinedTierError,
    UserNotFoundError,
)
from .models import (
    AuditAction,
    AuditLog,
    AuditStatus,
    ChargeResult,
    GrantResult,
    RefundResult,
    TierChangeResult,
    Transaction,
    User,
)
from .service import LedgerService
from .storage import NO_TRANSACTION, UNSET, InMemoryStorage, StorageAdapter

__all__ = [
    "LedgerService",
    "LedgerConfig",
    "load_config",
    "StorageAdapter",
    "InMemoryStorage",
    "NO_TRANSACTION",
    "UNSET",
    "User",
    "Transaction",
    "AuditLog",
    "AuditAction",
    "AuditStatus",
    "ChargeResult",
    "RefundResult",
    "GrantResult",
    "TierChangeResult",
    "ErrorKind",
    "LedgerError",
    "UserNotFoundError",
    "InsufficientCreditsError",
    "MembershipRequiredError",
    "UndefinedActionError",
    "UndefinedTierError",
    "InvalidTierChangeError",
    "InvalidAmountError",
    "IdempotencyKeyConflictError",
    "ConfigurationError",
    "TransientStorageError",
]
