"""Admin API endpoints (token-protected)."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from offramp.config import get_settings
from offramp.fees import FeeSchedule, FeeTier
from offramp.ledger.database import get_db
from offramp.ledger.models import OfframpStatus
from offramp.ledger.repository import OfframpRepository
from offramp.pipeline import (
    TransactionRunner,
    TransactionStateMachine,
    get_settings_service,
    get_state_machine,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/offramp")


async def require_admin_token(x_admin_token: str = Header(None)) -> bool:
    """Verify admin token from header.

    If ADMIN_TOKEN is not set, allows access outside production.
    """
    settings = get_settings()

    if not settings.admin_token:
        if settings.is_production:
            raise HTTPException(status_code=503, detail="ADMIN_TOKEN is not configured")
        return True

    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")

    return True


class RefundRequest(BaseModel):
    """Refund destination."""

    to_address: str = Field(min_length=42, max_length=42)


class FeeTierModel(BaseModel):
    """One fee tier."""

    min_amount: Decimal = Field(ge=0)
    max_amount: Optional[Decimal] = None
    percentage: Decimal = Field(ge=0, le=100)
    tier_name: Optional[str] = None


class SettingsUpdate(BaseModel):
    """Partial runtime settings update."""

    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)
    enabled: Optional[bool] = None
    minimum_ngn: Optional[Decimal] = Field(default=None, ge=0)
    maximum_ngn: Optional[Decimal] = Field(default=None, gt=0)


@router.get("/transactions")
async def list_transactions(
    status: Optional[OfframpStatus] = None,
    user_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    _: bool = Depends(require_admin_token),
):
    """List transactions, newest first."""
    limit = max(1, min(limit, 200))
    async with get_db() as session:
        repo = OfframpRepository(session)
        rows = await repo.list_transactions(status=status, user_id=user_id, limit=limit, offset=offset)
        return {
            "success": True,
            "count": len(rows),
            "transactions": [tx.to_dict() for tx in rows],
        }


@router.get("/stats")
async def get_stats(_: bool = Depends(require_admin_token)):
    """Transaction counts per status and total fee revenue."""
    async with get_db() as session:
        repo = OfframpRepository(session)
        counts = await repo.count_by_status()
        revenue = await repo.get_total_revenue()
        violations = await repo.find_completed_violations()

    return {
        "success": True,
        "by_status": counts,
        "total_revenue_ngn": str(revenue),
        "completed_without_hashes": [tx.transaction_id for tx in violations],
    }


@router.post("/process-pending")
async def process_pending(
    machine: TransactionStateMachine = Depends(get_state_machine),
    _: bool = Depends(require_admin_token),
):
    """Run one sweep over every in-flight transaction (for external schedulers)."""
    summary = await TransactionRunner.from_settings(machine).process_once()
    logger.info(f"Admin sweep: {summary}")
    return {"success": True, **summary}


@router.post("/{transaction_id}/restart")
async def restart_transaction(
    transaction_id: str,
    machine: TransactionStateMachine = Depends(get_state_machine),
    _: bool = Depends(require_admin_token),
):
    """Resume a failed or stuck transaction at its earliest incomplete phase."""
    result = await machine.restart(transaction_id)
    logger.info(f"Admin restart of {transaction_id}: {result.status.value}")
    return result.to_dict()


@router.post("/{transaction_id}/refund")
async def refund_transaction(
    transaction_id: str,
    request: RefundRequest,
    machine: TransactionStateMachine = Depends(get_state_machine),
    _: bool = Depends(require_admin_token),
):
    """Send the deposited funds back to a user address."""
    try:
        tx = await machine.refund(transaction_id, request.to_address)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "success": True,
        "transaction_id": tx.transaction_id,
        "status": tx.current_status.value,
        "refund_tx_hash": tx.refund_tx_hash,
    }


@router.post("/{transaction_id}/return-gas")
async def return_gas(
    transaction_id: str,
    machine: TransactionStateMachine = Depends(get_state_machine),
    _: bool = Depends(require_admin_token),
):
    """Sweep leftover ETH from the transaction's wallet to the treasury."""
    tx_hash = await machine.return_gas(transaction_id)
    return {
        "success": True,
        "transaction_id": transaction_id,
        "tx_hash": tx_hash,
        "message": "Gas returned" if tx_hash else "Nothing to recover",
    }


@router.get("/fee-tiers")
async def get_fee_tiers(_: bool = Depends(require_admin_token)):
    """Effective fee tiers."""
    async with get_db() as session:
        schedule = await get_settings_service().fee_schedule(OfframpRepository(session))
    return {"success": True, "tiers": schedule.to_list()}


@router.put("/fee-tiers")
async def replace_fee_tiers(
    tiers: list[FeeTierModel],
    _: bool = Depends(require_admin_token),
):
    """Replace the fee tier table. The new table must cover [0, inf) without gaps."""
    try:
        schedule = FeeSchedule(
            FeeTier(
                min_amount=t.min_amount,
                max_amount=t.max_amount,
                percentage=t.percentage,
                name=t.tier_name or "",
            )
            for t in tiers
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    service = get_settings_service()
    async with get_db() as session:
        await OfframpRepository(session).replace_fee_tiers(schedule.tiers)
    service.invalidate()

    logger.info(f"Fee tiers replaced ({len(schedule.tiers)} tiers)")
    return {"success": True, "tiers": schedule.to_list()}


@router.get("/settings")
async def get_offramp_settings(_: bool = Depends(require_admin_token)):
    """Effective runtime settings."""
    async with get_db() as session:
        settings = await get_settings_service().get(OfframpRepository(session))
    return {"success": True, "settings": settings.to_dict()}


@router.patch("/settings")
async def update_offramp_settings(
    update: SettingsUpdate,
    _: bool = Depends(require_admin_token),
):
    """Override runtime settings."""
    async with get_db() as session:
        repo = OfframpRepository(session)
        current = await get_settings_service().get(repo)
        minimum = update.minimum_ngn if update.minimum_ngn is not None else current.minimum_ngn
        maximum = update.maximum_ngn if update.maximum_ngn is not None else current.maximum_ngn
        if minimum >= maximum:
            raise HTTPException(status_code=400, detail="Minimum must be below maximum")

        settings = await get_settings_service().update(repo, **update.model_dump(exclude_none=True))

    return {"success": True, "settings": settings.to_dict()}
