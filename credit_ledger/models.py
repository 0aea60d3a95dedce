from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class AuditAction(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"
    GRANT = "grant"
    UPGRADE_TIER = "upgrade_tier"
    DOWNGRADE_TIER = "downgrade_tier"
    VALIDATE_ACCESS = "validate_access"


class TierChangeAction(str, Enum):
    UPGRADE = "tier-upgrade"
    DOWNGRADE = "tier-downgrade"


class LedgerModel(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class User(LedgerModel):
    id: str
    credits: int = 0
    membership_tier: Optional[str] = None
    membership_expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class TransactionInput(LedgerModel):
    user_id: str
    action: str
    amount: int
    balance_before: int
    balance_after: int
    metadata: dict = Field(default_factory=dict)


class Transaction(TransactionInput):
    id: str
    created_at: datetime


class AuditLogInput(LedgerModel):
    user_id: str
    action: str
    status: AuditStatus
    metadata: dict = Field(default_factory=dict)
    error_message: Optional[str] = None


class AuditLog(AuditLogInput):
    id: str
    created_at: datetime


class IdempotencyRecordInput(LedgerModel):
    key: str
    result: Any = None
    expires_at: datetime


class IdempotencyRecord(IdempotencyRecordInput):
    created_at: datetime


class ChargeRequest(LedgerModel):
    action: str = Field(..., description="Catalog action to charge for")
    idempotency_key: Optional[str] = None
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "action": "generate-image",
            "idempotency_key": "charge-user-123-req-42",
            "metadata": {"request_id": "req-42"},
        }
    })


class AmountRequest(LedgerModel):
    amount: int
    action: str
    idempotency_key: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class UpgradeTierRequest(LedgerModel):
    target_tier: str
    membership_expires_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class DowngradeTierRequest(UpgradeTierRequest):
    clear_expiration: bool = False


class ChargeResult(LedgerModel):
    success: bool = True
    transaction_id: str
    cost: int
    balance_before: int
    balance_after: int


class RefundResult(LedgerModel):
    success: bool = True
    transaction_id: str
    amount: int
    balance_before: int
    balance_after: int


class GrantResult(RefundResult):
    pass


class TierChangeResult(LedgerModel):
    success: bool = True
    transaction_id: str
    old_tier: Optional[str] = None
    new_tier: str
    old_credits: int
    new_credits: int
    credits_delta: int


class BalanceResponse(LedgerModel):
    user_id: str
    credits: int


class AccessResponse(LedgerModel):
    user_id: str
    action: str
    allowed: bool
