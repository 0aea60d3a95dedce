from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .config import IdempotencyConfig
from .models import IdempotencyRecord, IdempotencyRecordInput
from .storage import StorageAdapter, TransactionContext


class IdempotencyManager:
    """
    Caches operation results by caller-supplied key.

    Expiry is enforced by the storage backend: ``get_idempotency_record``
    treats records at or past ``expires_at`` as absent and may purge them.
    """

    def __init__(self, storage: StorageAdapter, config: IdempotencyConfig):
        self.storage = storage
        self.config = config

    def is_enabled(self) -> bool:
        return self.config.enabled

    def get_ttl(self) -> int:
        return self.config.ttl

    async def check(self, key: str, txn: TransactionContext = None) -> Optional[IdempotencyRecord]:
        if not self.config.enabled:
            return None
        return await self.storage.get_idempotency_record(key, txn)

    async def save(self, key: str, result: Any, txn: TransactionContext = None) -> None:
        if not self.config.enabled:
            return

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.config.ttl)
        await self.storage.create_idempotency_record(
            IdempotencyRecordInput(key=key, result=result, expires_at=expires_at),
            txn,
        )
