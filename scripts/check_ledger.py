#!/usr/bin/env python3
"""Off-ramp Ledger Check.

Reports transaction counts, completed rows that are missing their swap
hash or payout reference, and transactions sitting in failed or
mid-pipeline states. Optionally restarts the failed ones.

Usage:
    python scripts/check_ledger.py [--restart-failed] [--limit 50]

Options:
    --restart-failed  Resume every failed transaction at its earliest incomplete phase
    --limit           Rows to inspect per status (default: 50)
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv

from offramp.ledger.database import close_db, get_db, init_db
from offramp.ledger.models import OfframpStatus
from offramp.ledger.repository import OfframpRepository
from offramp.pipeline import get_state_machine

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

IN_FLIGHT = (
    OfframpStatus.TOKEN_RECEIVED,
    OfframpStatus.SWAPPING,
    OfframpStatus.USDC_RECEIVED,
    OfframpStatus.PAYING,
)


async def main():
    parser = argparse.ArgumentParser(description="Off-ramp Ledger Check")
    parser.add_argument("--restart-failed", action="store_true", help="Restart failed transactions")
    parser.add_argument("--limit", type=int, default=50, help="Rows to inspect per status")

    args = parser.parse_args()

    await init_db()

    logger.info("=" * 60)
    logger.info("OFF-RAMP LEDGER CHECK")
    logger.info("=" * 60)

    async with get_db() as session:
        repo = OfframpRepository(session)
        counts = await repo.count_by_status()
        violations = await repo.find_completed_violations()
        failed = await repo.list_transactions(status=OfframpStatus.FAILED, limit=args.limit)
        in_flight = []
        for status in IN_FLIGHT:
            in_flight.extend(await repo.list_transactions(status=status, limit=args.limit))
        revenue = await repo.get_total_revenue()

    for status in OfframpStatus:
        logger.info(f"  {status.value:<15} {counts.get(status.value, 0)}")
    logger.info(f"  Fee revenue:    {revenue} NGN")

    if violations:
        logger.error(f"{len(violations)} completed transactions without swap hash or payout reference:")
        for tx in violations:
            logger.error(f"  {tx.transaction_id} swap={tx.swap_tx_hash} payout={tx.payout_reference}")

    for tx in in_flight:
        logger.warning(
            f"In flight: {tx.transaction_id} {tx.status} since {tx.updated_at} "
            f"error={tx.error_message or '-'}"
        )

    for tx in failed:
        logger.info(f"Failed: {tx.transaction_id} ({tx.error_message or 'no error recorded'})")

    if args.restart_failed and failed:
        machine = get_state_machine()
        for tx in failed:
            result = await machine.restart(tx.transaction_id)
            logger.info(f"  Restarted {tx.transaction_id}: {result.status.value} {result.error or ''}")

    await close_db()

    # Non-zero exit when completed rows lack hashes
    return 1 if violations else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
