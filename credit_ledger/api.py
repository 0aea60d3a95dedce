import os
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import CONFIG_PATH_ENV, load_config, load_config_from_env
from .errors import (
    ErrorKind,
    IdempotencyKeyConflictError,
    InsufficientCreditsError,
    LedgerError,
    MembershipRequiredError,
    UserNotFoundError,
)
from .logging_utils import get_logger
from .models import (
    AccessResponse,
    AmountRequest,
    BalanceResponse,
    ChargeRequest,
    ChargeResult,
    DowngradeTierRequest,
    GrantResult,
    RefundResult,
    TierChangeResult,
    Transaction,
    UpgradeTierRequest,
)
from .service import LedgerService
from .storage import UNSET, InMemoryStorage

logger = get_logger(__name__)

# Used when no configuration file is supplied, e.g. local development.
DEFAULT_CONFIG = load_config({
    "costs": {
        "generate-text": {"default": 1},
        "generate-image": {"default": 10, "pro": 5, "premium": 2},
        "export-report": {"default": 25, "premium": 10},
    },
    "membership": {
        "tiers": {"free": 0, "basic": 1, "pro": 2, "premium": 3},
        "requirements": {"export-report": "pro"},
        "creditsCaps": {"free": 100, "basic": 500, "pro": 2000, "premium": 8000},
    },
})

_STATUS_BY_ERROR = {
    UserNotFoundError: status.HTTP_404_NOT_FOUND,
    InsufficientCreditsError: status.HTTP_402_PAYMENT_REQUIRED,
    MembershipRequiredError: status.HTTP_403_FORBIDDEN,
    IdempotencyKeyConflictError: status.HTTP_409_CONFLICT,
}


def build_service() -> LedgerService:
    if os.getenv(CONFIG_PATH_ENV):
        config = load_config_from_env()
        logger.info("Loaded ledger configuration from %s", os.getenv(CONFIG_PATH_ENV))
    else:
        config = DEFAULT_CONFIG
        logger.info("%s not set, using default ledger configuration", CONFIG_PATH_ENV)
    return LedgerService(InMemoryStorage(), config)


@lru_cache(maxsize=1)
def get_ledger_service() -> LedgerService:
    return build_service()


def http_error(error: LedgerError) -> HTTPException:
    if error.kind == ErrorKind.TRANSIENT:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = _STATUS_BY_ERROR.get(type(error), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail={"code": error.code, "message": error.message})


app = FastAPI(
    title="Credit Ledger API",
    description="Credit ledger with membership tiers, idempotent mutations and audit trails",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "credit-ledger"}


@app.post("/users/{user_id}/charge", response_model=ChargeResult, response_model_by_alias=False, tags=["Credits"])
async def charge(
    user_id: str, request: ChargeRequest, service: LedgerService = Depends(get_ledger_service)
) -> ChargeResult:
    try:
        return await service.charge(
            user_id,
            request.action,
            idempotency_key=request.idempotency_key,
            metadata=request.metadata,
        )
    except LedgerError as e:
        raise http_error(e)


@app.post("/users/{user_id}/refund", response_model=RefundResult, response_model_by_alias=False, tags=["Credits"])
async def refund(
    user_id: str, request: AmountRequest, service: LedgerService = Depends(get_ledger_service)
) -> RefundResult:
    try:
        return await service.refund(
            user_id,
            request.amount,
            request.action,
            idempotency_key=request.idempotency_key,
            metadata=request.metadata,
        )
    except LedgerError as e:
        raise http_error(e)


@app.post("/users/{user_id}/grant", response_model=GrantResult, response_model_by_alias=False, tags=["Credits"])
async def grant(
    user_id: str, request: AmountRequest, service: LedgerService = Depends(get_ledger_service)
) -> GrantResult:
    try:
        return await service.grant(
            user_id,
            request.amount,
            request.action,
            idempotency_key=request.idempotency_key,
            metadata=request.metadata,
        )
    except LedgerError as e:
        raise http_error(e)


@app.post(
    "/users/{user_id}/tier/upgrade",
    response_model=TierChangeResult,
    response_model_by_alias=False,
    tags=["Membership"],
)
async def upgrade_tier(
    user_id: str, request: UpgradeTierRequest, service: LedgerService = Depends(get_ledger_service)
) -> TierChangeResult:
    expires_at = request.membership_expires_at if "membership_expires_at" in request.model_fields_set else UNSET
    try:
        return await service.upgrade_tier(
            user_id,
            request.target_tier,
            membership_expires_at=expires_at,
            idempotency_key=request.idempotency_key,
            metadata=request.metadata,
        )
    except LedgerError as e:
        raise http_error(e)


@app.post(
    "/users/{user_id}/tier/downgrade",
    response_model=TierChangeResult,
    response_model_by_alias=False,
    tags=["Membership"],
)
async def downgrade_tier(
    user_id: str, request: DowngradeTierRequest, service: LedgerService = Depends(get_ledger_service)
) -> TierChangeResult:
    expires_at = request.membership_expires_at if "membership_expires_at" in request.model_fields_set else UNSET
    try:
        return await service.downgrade_tier(
            user_id,
            request.target_tier,
            clear_expiration=request.clear_expiration,
            membership_expires_at=expires_at,
            idempotency_key=request.idempotency_key,
            metadata=request.metadata,
        )
    except LedgerError as e:
        raise http_error(e)


@app.get("/users/{user_id}/balance", response_model=BalanceResponse, response_model_by_alias=False, tags=["Users"])
async def get_balance(user_id: str, service: LedgerService = Depends(get_ledger_service)) -> BalanceResponse:
    try:
        credits = await service.query_balance(user_id)
    except LedgerError as e:
        raise http_error(e)
    return BalanceResponse(user_id=user_id, credits=credits)


@app.get(
    "/users/{user_id}/transactions",
    response_model=list[Transaction],
    response_model_by_alias=False,
    tags=["Users"],
)
async def get_transactions(
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    action: Optional[str] = None,
    service: LedgerService = Depends(get_ledger_service),
) -> list[Transaction]:
    try:
        return await service.get_history(user_id, limit=limit, offset=offset, action=action)
    except LedgerError as e:
        raise http_error(e)


@app.get(
    "/users/{user_id}/access/{action}",
    response_model=AccessResponse,
    response_model_by_alias=False,
    tags=["Membership"],
)
async def check_access(
    user_id: str, action: str, service: LedgerService = Depends(get_ledger_service)
) -> AccessResponse:
    try:
        allowed = await service.validate_access(user_id, action)
    except MembershipRequiredError:
        allowed = False
    except LedgerError as e:
        raise http_error(e)
    return AccessResponse(user_id=user_id, action=action, allowed=allowed)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
