"""Deposit webhook endpoint.

Receives deposit notifications from chain watchers (e.g. Alchemy address
activity) and advances the matching off-ramp transaction. Responses are
always 200 for well-signed requests so the sender does not retry a
notification that was already handled.
"""

import hashlib
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel

from offramp.config import get_settings
from offramp.ledger.database import get_db
from offramp.ledger.repository import OfframpRepository
from offramp.pipeline import TransactionStateMachine, get_state_machine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks")


class DepositWebhookPayload(BaseModel):
    """Deposit notification for a custodial wallet."""

    to_address: str
    network: str = "base"
    tx_hash: Optional[str] = None
    token_address: Optional[str] = None
    amount: Optional[str] = None


class WebhookResponse(BaseModel):
    """Webhook response."""

    success: bool
    message: str
    transaction_id: Optional[str] = None
    status: Optional[str] = None


def verify_webhook_signature(
    payload: bytes,
    signature: str,
    secret: str,
    algorithm: str = "sha256",
) -> bool:
    """Verify webhook signature using HMAC.

    Args:
        payload: Raw request body
        signature: Hex signature from header, optionally prefixed ("sha256=...")
        secret: Webhook secret key
        algorithm: Hash algorithm (sha256, sha512)

    Returns:
        True if signature is valid
    """
    # Remove any prefix like "sha256="
    if "=" in signature:
        signature = signature.split("=", 1)[1]

    mac = hmac.new(
        secret.encode(),
        payload,
        getattr(hashlib, algorithm),
    )
    expected = mac.hexdigest()

    return hmac.compare_digest(expected, signature.lower())


@router.post("/deposit", response_model=WebhookResponse)
async def handle_deposit_webhook(
    request: Request,
    payload: DepositWebhookPayload,
    x_webhook_signature: Optional[str] = Header(None),
    machine: TransactionStateMachine = Depends(get_state_machine),
) -> WebhookResponse:
    """Handle a deposit notification.

    1. Verifies the HMAC signature (when DEPOSIT_WEBHOOK_SECRET is set)
    2. Finds the transaction that owns the deposit address
    3. Advances it; completed or busy transactions are acknowledged as-is
    """
    settings = get_settings()

    if settings.deposit_webhook_secret:
        body = await request.body()
        if not x_webhook_signature or not verify_webhook_signature(
            body, x_webhook_signature, settings.deposit_webhook_secret
        ):
            logger.warning(f"Invalid webhook signature for deposit to {payload.to_address}")
            raise HTTPException(status_code=401, detail="Invalid signature")

    async with get_db() as session:
        repo = OfframpRepository(session)
        tx = await repo.get_active_by_address(payload.to_address)
        if tx is None:
            tx = await repo.get_latest_by_address(payload.to_address)

    if tx is None:
        logger.warning(f"Deposit webhook for unknown address {payload.to_address}")
        return WebhookResponse(success=False, message="Unknown deposit address")

    logger.info(
        f"Deposit webhook for {tx.transaction_id}: {payload.amount or '?'} "
        f"{payload.token_address or 'token'} tx {payload.tx_hash or '?'}"
    )

    if tx.is_terminal:
        return WebhookResponse(
            success=True,
            message=f"Transaction already {tx.current_status.value}",
            transaction_id=tx.transaction_id,
            status=tx.current_status.value,
        )

    result = await machine.advance(tx.transaction_id)
    if result.busy:
        message = "Transaction is already being processed"
    elif result.success:
        message = "Transaction processed"
    else:
        message = result.error or "Transaction not processed"

    return WebhookResponse(
        success=result.success or result.busy,
        message=message,
        transaction_id=tx.transaction_id,
        status=result.status.value,
    )
