"""
Ledger service: the operation orchestrator.

Every mutating operation runs the same stages:

1. Idempotency short-circuit (cached result returned verbatim)
2. Load the subject user
3. Operation-specific validation
4. Storage mutation plus ledger entry, each storage call under retry
5. Audit write (success or failure)
6. Idempotency save

Any failure in stages 2-4 skips the rest, is audited as a failure and then
re-raised unchanged to the caller.
"""

import logging
import math
from datetime import datetime
from numbers import Number
from typing import Any, Awaitable, Callable, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .audit import AuditTrail
from .config import LedgerConfig, load_config
from .costs import CostCatalog
from .errors import (
    ErrorKind,
    IdempotencyKeyConflictError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidTierChangeError,
    MembershipRequiredError,
    UndefinedActionError,
    UndefinedTierError,
    UserNotFoundError,
    classify_error,
    error_from_payload,
)
from .idempotency import IdempotencyManager
from .membership import MembershipValidator
from .models import (
    AuditAction,
    ChargeResult,
    GrantResult,
    RefundResult,
    TierChangeAction,
    TierChangeResult,
    Transaction,
    TransactionInput,
    User,
)
from .retry import RetryHandler
from .storage import UNSET, StorageAdapter, TransactionContext

R = TypeVar("R", bound=BaseModel)

# Cached payloads are tagged with the operation that produced them.
OPERATION_KEY = "ledger_operation"

_logger = logging.getLogger(__name__)


class LedgerService:
    def __init__(
        self,
        storage: StorageAdapter,
        config: Union[LedgerConfig, Mapping[str, Any]],
        logger: Optional[logging.Logger] = None,
    ):
        self.config = load_config(config)
        self.storage = storage
        self.logger = logger or _logger

        self.costs = CostCatalog(self.config.costs)
        self.membership = MembershipValidator(self.config.membership.tiers)
        self.idempotency = IdempotencyManager(storage, self.config.idempotency)
        self.audit = AuditTrail(storage, self.config.audit, self.logger)
        self.retry = RetryHandler(self.config.retry, self.logger)

        self.logger.debug(
            "LedgerService initialized: %d actions, %d tiers, retry=%s, idempotency=%s, audit=%s",
            len(self.config.costs),
            len(self.config.membership.tiers),
            self.config.retry.enabled,
            self.config.idempotency.enabled,
            self.config.audit.enabled,
        )

    # Balance operations

    async def charge(
        self,
        user_id: str,
        action: str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
        txn: TransactionContext = None,
    ) -> ChargeResult:
        """Deduct the configured cost of ``action`` from the user's balance.

        The tier override is looked up with the effective tier: an expired
        membership counts as no membership, so it pays the default cost.

        Raises:
            UserNotFoundError: If the user does not exist
            UndefinedActionError: If ``action`` has no configured cost
            MembershipRequiredError: If the action's tier requirement is not met
            InsufficientCreditsError: If the balance is below the cost
        """
        metadata = dict(metadata or {})

        async def run() -> tuple[ChargeResult, dict]:
            user = await self._load_user(user_id, txn)

            required_tier = self.config.get_requirement(action)
            validation = self.membership.validate(user, required_tier)
            cost = self.costs.get_cost(action, validation.current_tier)

            if not validation.valid:
                self.logger.warning(
                    "Membership check failed for user %s on %s: %s", user_id, action, validation.reason
                )
                raise MembershipRequiredError(user_id, required_tier, validation.current_tier)

            if user.credits < cost:
                raise InsufficientCreditsError(user_id, cost, user.credits)

            balance_before = user.credits
            balance_after = balance_before - cost

            await self._with_retry(lambda: self.storage.update_user_credits(user_id, -cost, txn))
            transaction = await self._record_transaction(
                user_id, action, -cost, balance_before, balance_after, metadata, txn
            )

            result = ChargeResult(
                transaction_id=transaction.id,
                cost=cost,
                balance_before=balance_before,
                balance_after=balance_after,
            )
            audit_metadata = _audit_metadata(
                transaction,
                metadata,
                operation=action,
                cost=cost,
                balance_before=balance_before,
                balance_after=balance_after,
            )
            return result, audit_metadata

        return await self._execute(
            AuditAction.CHARGE,
            user_id,
            ChargeResult,
            run,
            failure_metadata={**metadata, "operation": action},
            idempotency_key=idempotency_key,
            txn=txn,
        )

    async def refund(
        self,
        user_id: str,
        amount: int,
        action: str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
        txn: TransactionContext = None,
    ) -> RefundResult:
        return await self._credit(
            AuditAction.REFUND, RefundResult, user_id, amount, action, idempotency_key, metadata, txn
        )

    async def grant(
        self,
        user_id: str,
        amount: int,
        action: str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
        txn: TransactionContext = None,
    ) -> GrantResult:
        return await self._credit(
            AuditAction.GRANT, GrantResult, user_id, amount, action, idempotency_key, metadata, txn
        )

    async def _credit(
        self,
        audit_action: AuditAction,
        result_type: Type[RefundResult],
        user_id: str,
        amount: int,
        action: str,
        idempotency_key: Optional[str],
        metadata: Optional[dict],
        txn: TransactionContext,
    ) -> RefundResult:
        metadata = dict(metadata or {})

        async def run() -> tuple[RefundResult, dict]:
            user = await self._load_user(user_id, txn)
            credit = _validate_amount(amount)

            balance_before = user.credits
            balance_after = balance_before + credit

            await self._with_retry(lambda: self.storage.update_user_credits(user_id, credit, txn))
            transaction = await self._record_transaction(
                user_id, action, credit, balance_before, balance_after, metadata, txn
            )

            result = result_type(
                transaction_id=transaction.id,
                amount=credit,
                balance_before=balance_before,
                balance_after=balance_after,
            )
            audit_metadata = _audit_metadata(
                transaction,
                metadata,
                operation=action,
                amount=credit,
                balance_before=balance_before,
                balance_after=balance_after,
            )
            return result, audit_metadata

        return await self._execute(
            audit_action,
            user_id,
            result_type,
            run,
            failure_metadata={**metadata, "operation": action, "amount": amount},
            idempotency_key=idempotency_key,
            txn=txn,
        )

    # Tier operations

    async def upgrade_tier(
        self,
        user_id: str,
        target_tier: str,
        membership_expires_at: Any = UNSET,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
        txn: TransactionContext = None,
    ) -> TierChangeResult:
        """Move a user to a strictly higher tier and reset credits to its cap.

        ``membership_expires_at`` overwrites the stored expiration when given,
        including an explicit None; when omitted the stored value is kept.
        """
        return await self._change_tier(
            TierChangeAction.UPGRADE,
            user_id,
            target_tier,
            membership_expires_at,
            idempotency_key,
            metadata,
            txn,
        )

    async def downgrade_tier(
        self,
        user_id: str,
        target_tier: str,
        clear_expiration: bool = False,
        membership_expires_at: Any = UNSET,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
        txn: TransactionContext = None,
    ) -> TierChangeResult:
        """Move a user to a strictly lower tier and reset credits to its cap.

        ``clear_expiration=True`` removes the expiration date regardless of
        ``membership_expires_at``.
        """
        expires_at = None if clear_expiration else membership_expires_at
        return await self._change_tier(
            TierChangeAction.DOWNGRADE,
            user_id,
            target_tier,
            expires_at,
            idempotency_key,
            metadata,
            txn,
            extra_failure_metadata={"clear_expiration": clear_expiration},
        )

    async def _change_tier(
        self,
        change: TierChangeAction,
        user_id: str,
        target_tier: str,
        expires_at: Any,
        idempotency_key: Optional[str],
        metadata: Optional[dict],
        txn: TransactionContext,
        extra_failure_metadata: Optional[dict] = None,
    ) -> TierChangeResult:
        metadata = dict(metadata or {})
        upgrading = change == TierChangeAction.UPGRADE
        direction = "upgrade" if upgrading else "downgrade"

        async def run() -> tuple[TierChangeResult, dict]:
            user = await self._load_user(user_id, txn)

            if not self.membership.has_tier(target_tier):
                raise UndefinedTierError(target_tier)

            old_tier = user.membership_tier
            target_level = self.membership.get_level(target_tier)
            if old_tier is None:
                # No tier ranks below every configured tier.
                allowed = upgrading
            else:
                current_level = self.membership.get_level(old_tier)
                if current_level is None:
                    allowed = False
                elif upgrading:
                    allowed = target_level > current_level
                else:
                    allowed = target_level < current_level

            if not allowed:
                raise InvalidTierChangeError(user_id, old_tier, target_tier, direction)

            old_credits = user.credits
            new_credits = self.config.get_credits_cap(target_tier)
            credits_delta = new_credits - old_credits

            await self._with_retry(
                lambda: self.storage.update_user_membership(user_id, target_tier, new_credits, expires_at, txn)
            )
            transaction = await self._record_transaction(
                user_id,
                change.value,
                credits_delta,
                old_credits,
                new_credits,
                {**metadata, "old_tier": old_tier, "new_tier": target_tier},
                txn,
            )

            result = TierChangeResult(
                transaction_id=transaction.id,
                old_tier=old_tier,
                new_tier=target_tier,
                old_credits=old_credits,
                new_credits=new_credits,
                credits_delta=credits_delta,
            )
            audit_metadata = _audit_metadata(
                transaction,
                metadata,
                old_tier=old_tier,
                new_tier=target_tier,
                old_credits=old_credits,
                new_credits=new_credits,
                credits_delta=credits_delta,
            )
            return result, audit_metadata

        return await self._execute(
            AuditAction.UPGRADE_TIER if upgrading else AuditAction.DOWNGRADE_TIER,
            user_id,
            TierChangeResult,
            run,
            failure_metadata={**metadata, "target_tier": target_tier, **(extra_failure_metadata or {})},
            idempotency_key=idempotency_key,
            txn=txn,
        )

    # Reads

    async def query_balance(self, user_id: str, txn: TransactionContext = None) -> int:
        self.logger.info("Querying balance for user %s", user_id)
        user = await self._load_user(user_id, txn)
        return user.credits

    async def get_history(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        action: Optional[str] = None,
        txn: TransactionContext = None,
    ) -> list[Transaction]:
        """Ledger entries for a user, newest first."""
        self.logger.info("Fetching transaction history for user %s", user_id)
        return await self._with_retry(
            lambda: self.storage.get_transactions(
                user_id,
                limit=limit,
                offset=offset,
                start_date=start_date,
                end_date=end_date,
                action=action,
                txn=txn,
            )
        )

    async def validate_access(self, user_id: str, action: str, txn: TransactionContext = None) -> bool:
        """Return True if the user may perform ``action``.

        Raises:
            UserNotFoundError: If the user does not exist
            UndefinedActionError: If ``action`` has no configured cost
            MembershipRequiredError: If the membership requirement is not met
        """
        try:
            user = await self._load_user(user_id, txn)
            if not self.costs.has_action(action):
                raise UndefinedActionError(action)

            required_tier = self.config.get_requirement(action)
            if required_tier is None:
                return True

            validation = self.membership.validate(user, required_tier)
            if not validation.valid:
                self.logger.warning(
                    "Access to %s denied for user %s: %s", action, user_id, validation.reason
                )
                raise MembershipRequiredError(user_id, required_tier, validation.current_tier)
            return True
        except Exception as e:
            await self.audit.record_failure(
                user_id, AuditAction.VALIDATE_ACCESS, e, {"target_action": action}, txn
            )
            raise

    # Stage plumbing

    async def _execute(
        self,
        audit_action: AuditAction,
        user_id: str,
        result_type: Type[R],
        run: Callable[[], Awaitable[tuple[R, dict]]],
        failure_metadata: dict,
        idempotency_key: Optional[str],
        txn: TransactionContext,
    ) -> R:
        self.logger.info("Starting %s for user %s", audit_action.value, user_id)

        if idempotency_key:
            record = await self._with_retry(lambda: self.idempotency.check(idempotency_key, txn))
            if record is not None:
                self.logger.info(
                    "Idempotency key %s already used, returning cached %s result",
                    idempotency_key, audit_action.value,
                )
                return _replay(idempotency_key, audit_action.value, record.result, result_type)

        try:
            result, audit_metadata = await run()
        except Exception as e:
            kind = classify_error(e)
            if kind == ErrorKind.DOMAIN:
                self.logger.warning("%s failed for user %s: %s", audit_action.value, user_id, e)
            else:
                self.logger.error("%s failed for user %s: %s", audit_action.value, user_id, e)

            await self.audit.record_failure(user_id, audit_action, e, failure_metadata, txn)
            if idempotency_key and kind == ErrorKind.DOMAIN:
                await self._remember(
                    idempotency_key,
                    {"success": False, "error": e.to_payload(), OPERATION_KEY: audit_action.value},
                    txn,
                )
            raise

        await self.audit.record_success(user_id, audit_action, audit_metadata, txn)
        if idempotency_key:
            await self._remember(
                idempotency_key, {**result.model_dump(), OPERATION_KEY: audit_action.value}, txn
            )

        self.logger.info(
            "%s completed for user %s (transaction %s)", audit_action.value, user_id, result.transaction_id
        )
        return result

    async def _remember(self, key: str, payload: Any, txn: TransactionContext) -> None:
        try:
            await self._with_retry(lambda: self.idempotency.save(key, payload, txn))
        except Exception as e:
            self.logger.warning("Failed to save idempotency record %s: %s", key, e)

    async def _load_user(self, user_id: str, txn: TransactionContext) -> User:
        user = await self._with_retry(lambda: self.storage.get_user_by_id(user_id, txn))
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def _record_transaction(
        self,
        user_id: str,
        action: str,
        amount: int,
        balance_before: int,
        balance_after: int,
        metadata: dict,
        txn: TransactionContext,
    ) -> Transaction:
        entry = TransactionInput(
            user_id=user_id,
            action=action,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            metadata=metadata,
        )
        transaction = await self._with_retry(lambda: self.storage.create_transaction(entry, txn))
        self.logger.debug("Recorded transaction %s for user %s", transaction.id, user_id)
        return transaction

    async def _with_retry(self, call: Callable[[], Awaitable[Any]]) -> Any:
        return await self.retry.execute(call)


def _validate_amount(amount: Any) -> int:
    if (
        not isinstance(amount, Number)
        or isinstance(amount, bool)
        or not math.isfinite(amount)
        or amount < 0
        or int(amount) != amount
    ):
        raise InvalidAmountError(amount)
    return int(amount)


def _audit_metadata(transaction: Transaction, caller_metadata: dict, **derived: Any) -> dict:
    # Caller keys override derived fields, but never the transaction id.
    return {**derived, **caller_metadata, "transaction_id": transaction.id}


def _replay(key: str, operation: str, payload: Any, result_type: Type[R]) -> R:
    """Rebuild a cached outcome, raising the cached domain error for failures.

    Raises:
        IdempotencyKeyConflictError: If the key was used by another operation
            or the cached payload does not fit ``result_type``
    """
    if isinstance(payload, dict):
        cached_operation = payload.get(OPERATION_KEY)
        if cached_operation is not None and cached_operation != operation:
            raise IdempotencyKeyConflictError(key, payload)
        if payload.get("success") is False and "error" in payload:
            raise error_from_payload(payload["error"])
    if payload is None or isinstance(payload, result_type):
        return payload
    try:
        return result_type.model_validate(payload)
    except ValidationError as e:
        raise IdempotencyKeyConflictError(key, payload) from e
