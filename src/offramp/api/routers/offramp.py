"""Public off-ramp endpoints: deposit address, processing trigger and status."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from offramp.ledger.database import get_db
from offramp.ledger.repository import OfframpRepository
from offramp.pipeline import TransactionStateMachine, get_settings_service, get_state_machine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/offramp")


class GenerateAddressRequest(BaseModel):
    """Request for a deposit address."""

    user_id: Optional[str] = Field(default=None, max_length=64)
    account_number: str = Field(pattern=r"^\d{10}$", description="10 digit NUBAN")
    account_name: Optional[str] = Field(default=None, max_length=255)
    bank_code: str = Field(min_length=3, max_length=20)
    bank_name: Optional[str] = Field(default=None, max_length=255)


class GenerateAddressResponse(BaseModel):
    """Deposit address for a transaction."""

    success: bool = True
    transaction_id: str
    deposit_address: str
    network: str
    status: str


class ProcessResponse(BaseModel):
    """Result of a processing trigger."""

    success: bool
    transaction_id: str
    status: str
    error: Optional[str] = None
    busy: bool = False


@router.post("/address", response_model=GenerateAddressResponse)
async def generate_address(
    request: GenerateAddressRequest,
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> GenerateAddressResponse:
    """Create (or reuse) a deposit address for an off-ramp."""
    tx = await machine.generate_address(
        user_id=request.user_id,
        account_number=request.account_number,
        account_name=request.account_name,
        bank_code=request.bank_code,
        bank_name=request.bank_name,
    )
    return GenerateAddressResponse(
        transaction_id=tx.transaction_id,
        deposit_address=tx.deposit_address,
        network=tx.network,
        status=tx.current_status.value,
    )


@router.post("/{transaction_id}/process", response_model=ProcessResponse)
async def process_transaction(
    transaction_id: str,
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> ProcessResponse:
    """Advance a transaction as far as it can go."""
    result = await machine.advance(transaction_id)
    return ProcessResponse(**result.to_dict())


@router.post("/{transaction_id}/cancel")
async def cancel_transaction(
    transaction_id: str,
    machine: TransactionStateMachine = Depends(get_state_machine),
):
    """Abandon a transaction that is still waiting for its deposit."""
    tx = await machine.cancel(transaction_id)
    return {
        "success": True,
        "transaction_id": tx.transaction_id,
        "status": tx.current_status.value,
        "message": tx.error_message,
    }


@router.get("/rate")
async def get_rate():
    """Current exchange rate, limits and fee tiers."""
    service = get_settings_service()
    async with get_db() as session:
        repo = OfframpRepository(session)
        settings = await service.get(repo)
        schedule = await service.fee_schedule(repo)

    return {
        "success": True,
        **settings.to_dict(),
        "fee_tiers": schedule.to_list(),
    }


@router.get("/quote")
async def get_quote(usdc_amount: Decimal):
    """Preview the NGN payout for a settlement amount."""
    service = get_settings_service()
    async with get_db() as session:
        repo = OfframpRepository(session)
        settings = await service.get(repo)
        calculator = await service.fee_calculator(repo)

    ngn_amount = usdc_amount * settings.exchange_rate
    settings.check_limits(ngn_amount)
    quote = calculator.quote(ngn_amount)
    return {
        "success": True,
        "usdc_amount": str(usdc_amount),
        "exchange_rate": str(settings.exchange_rate),
        "ngn_amount": str(quote.ngn_amount),
        "fee_ngn": str(quote.fee),
        "fee_percentage": str(quote.percentage),
        "payable_ngn": str(quote.payable),
    }


@router.get("/{transaction_id}")
async def get_transaction(transaction_id: str):
    """Read a transaction's status, amounts, error and timestamps."""
    async with get_db() as session:
        repo = OfframpRepository(session)
        tx = await repo.require_transaction(transaction_id)
        return {"success": True, "transaction": tx.to_dict()}
