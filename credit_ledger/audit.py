"""
Audit trail recording.

Audit entries are append-only and describe every attempted operation,
successful or not. Recording is best-effort: a failing audit write is logged
and never replaces the outcome of the operation being audited.
"""

import logging
from typing import Optional, Union

from .config import AuditConfig
from .models import AuditAction, AuditLog, AuditLogInput, AuditStatus
from .storage import StorageAdapter, TransactionContext

_logger = logging.getLogger(__name__)


class AuditTrail:
    def __init__(self, storage: StorageAdapter, config: AuditConfig, logger: Optional[logging.Logger] = None):
        self.storage = storage
        self.config = config
        self.logger = logger or _logger

    def is_enabled(self) -> bool:
        return self.config.enabled

    async def record(
        self,
        user_id: str,
        action: Union[AuditAction, str],
        status: AuditStatus,
        metadata: Optional[dict] = None,
        error_message: Optional[str] = None,
        txn: TransactionContext = None,
    ) -> Optional[AuditLog]:
        if not self.config.enabled:
            return None

        action_name = action.value if isinstance(action, AuditAction) else action
        entry = AuditLogInput(
            user_id=user_id,
            action=action_name,
            status=status,
            metadata=dict(metadata or {}),
            error_message=error_message if status == AuditStatus.FAILED else None,
        )

        try:
            return await self.storage.create_audit_log(entry, txn)
        except Exception as e:
            self.logger.warning(
                "Failed to write %s audit log for %s on user %s: %s",
                status.value, action_name, user_id, e,
            )
            return None

    async def record_success(
        self,
        user_id: str,
        action: Union[AuditAction, str],
        metadata: dict,
        txn: TransactionContext = None,
    ) -> Optional[AuditLog]:
        return await self.record(user_id, action, AuditStatus.SUCCESS, metadata, txn=txn)

    async def record_failure(
        self,
        user_id: str,
        action: Union[AuditAction, str],
        error: BaseException,
        metadata: dict,
        txn: TransactionContext = None,
    ) -> Optional[AuditLog]:
        error_message = str(error) or type(error).__name__
        return await self.record(
            user_id,
            action,
            AuditStatus.FAILED,
            {**metadata, "error": error_message},
            error_message=error_message,
            txn=txn,
        )
