"""
Storage collaborator contract and the in-memory backend.

The ledger core only talks to storage through ``StorageAdapter``. Every method
takes an opaque ``txn`` handle that is passed through untouched, so a caller
that wraps a whole operation in one database transaction gets atomicity
without the core knowing about it.
"""

from copy import deepcopy
from datetime import datetime, timezone
from itertools import count
from typing import Any, Optional, Protocol, runtime_checkable

from .errors import UserNotFoundError
from .models import (
    AuditLog,
    AuditLogInput,
    IdempotencyRecord,
    IdempotencyRecordInput,
    Transaction,
    TransactionInput,
    User,
)

# Opaque per-backend transaction handle; None means "no transaction".
TransactionContext = Any
NO_TRANSACTION: TransactionContext = None


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


# Marks an argument the caller omitted, as opposed to an explicit None.
UNSET: Any = _Unset()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


@runtime_checkable
class StorageAdapter(Protocol):
    async def get_user_by_id(self, user_id: str, txn: TransactionContext = None) -> Optional[User]: ...

    async def update_user_credits(self, user_id: str, amount: int, txn: TransactionContext = None) -> User: ...

    async def update_user_membership(
        self,
        user_id: str,
        tier: Optional[str],
        credits: int,
        expires_at: Any = UNSET,
        txn: TransactionContext = None,
    ) -> User: ...

    async def create_transaction(self, entry: TransactionInput, txn: TransactionContext = None) -> Transaction: ...

    async def create_audit_log(self, entry: AuditLogInput, txn: TransactionContext = None) -> AuditLog: ...

    async def get_idempotency_record(self, key: str, txn: TransactionContext = None) -> Optional[IdempotencyRecord]: ...

    async def create_idempotency_record(
        self, record: IdempotencyRecordInput, txn: TransactionContext = None
    ) -> IdempotencyRecord: ...

    async def get_transactions(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        action: Optional[str] = None,
        txn: TransactionContext = None,
    ) -> list[Transaction]: ...


class InMemoryStorage:
    """Dictionary-backed storage. Every read and write hands out copies."""

    def __init__(self):
        self.users: dict[str, User] = {}
        self.transactions: list[Transaction] = []
        self.audit_logs: list[AuditLog] = []
        self.idempotency_records: dict[str, IdempotencyRecord] = {}
        self._ids = count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    async def get_user_by_id(self, user_id: str, txn: TransactionContext = None) -> Optional[User]:
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def update_user_credits(self, user_id: str, amount: int, txn: TransactionContext = None) -> User:
        user = self.users.get(user_id)
        if not user:
            raise UserNotFoundError(user_id)

        user.credits += amount
        user.updated_at = _utcnow()
        return user.model_copy(deep=True)

    async def update_user_membership(
        self,
        user_id: str,
        tier: Optional[str],
        credits: int,
        expires_at: Any = UNSET,
        txn: TransactionContext = None,
    ) -> User:
        user = self.users.get(user_id)
        if not user:
            raise UserNotFoundError(user_id)

        user.membership_tier = tier
        user.credits = credits
        if expires_at is not UNSET:
            user.membership_expires_at = expires_at
        user.updated_at = _utcnow()
        return user.model_copy(deep=True)

    async def create_transaction(self, entry: TransactionInput, txn: TransactionContext = None) -> Transaction:
        created = Transaction(
            id=self._next_id("txn"),
            created_at=_utcnow(),
            **deepcopy(entry.model_dump()),
        )
        self.transactions.append(created)
        return created.model_copy(deep=True)

    async def create_audit_log(self, entry: AuditLogInput, txn: TransactionContext = None) -> AuditLog:
        created = AuditLog(
            id=self._next_id("audit"),
            created_at=_utcnow(),
            **deepcopy(entry.model_dump()),
        )
        self.audit_logs.append(created)
        return created.model_copy(deep=True)

    async def get_idempotency_record(self, key: str, txn: TransactionContext = None) -> Optional[IdempotencyRecord]:
        record = self.idempotency_records.get(key)
        if record is None:
            return None

        if _as_utc(record.expires_at) <= _utcnow():
            del self.idempotency_records[key]
            return None

        return record.model_copy(deep=True)

    async def create_idempotency_record(
        self, record: IdempotencyRecordInput, txn: TransactionContext = None
    ) -> IdempotencyRecord:
        created = IdempotencyRecord(
            key=record.key,
            result=deepcopy(record.result),
            expires_at=record.expires_at,
            created_at=_utcnow(),
        )
        self.idempotency_records[record.key] = created
        return created.model_copy(deep=True)

    async def get_transactions(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        action: Optional[str] = None,
        txn: TransactionContext = None,
    ) -> list[Transaction]:
        entries = [t for t in self.transactions if t.user_id == user_id]
        if start_date is not None:
            entries = [t for t in entries if t.created_at >= _as_utc(start_date)]
        if end_date is not None:
            entries = [t for t in entries if t.created_at <= _as_utc(end_date)]
        if action is not None:
            entries = [t for t in entries if t.action == action]

        # Stable sort keeps insertion order reversed for equal timestamps.
        entries = list(reversed(entries))
        entries.sort(key=lambda t: t.created_at, reverse=True)

        start = offset or 0
        end = start + limit if limit is not None else None
        return [t.model_copy(deep=True) for t in entries[start:end]]

    # Test helpers

    async def create_user(
        self,
        id: str,
        credits: int = 0,
        membership_tier: Optional[str] = None,
        membership_expires_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ) -> User:
        now = _utcnow()
        user = User(
            id=id,
            credits=credits,
            membership_tier=membership_tier,
            membership_expires_at=membership_expires_at,
            created_at=created_at or now,
            updated_at=updated_at or now,
        )
        self.users[id] = user
        return user.model_copy(deep=True)

    def set_user(self, user: User) -> None:
        self.users[user.id] = user.model_copy(deep=True)

    def get_all_users(self) -> list[User]:
        return [u.model_copy(deep=True) for u in self.users.values()]

    def get_all_transactions(self) -> list[Transaction]:
        return [t.model_copy(deep=True) for t in self.transactions]

    def get_audit_logs(self) -> list[AuditLog]:
        return [log.model_copy(deep=True) for log in self.audit_logs]

    def get_all_idempotency_records(self) -> list[IdempotencyRecord]:
        return [r.model_copy(deep=True) for r in self.idempotency_records.values()]

    def reset(self) -> None:
        self.users.clear()
        self.transactions = []
        self.audit_logs = []
        self.idempotency_records.clear()
        self._ids = count(1)
