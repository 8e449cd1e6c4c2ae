"""Scheduled off-ramp processing.

Advances every in-flight transaction on a fixed interval, so a deposit is
picked up even when no webhook or manual trigger arrives.

Usage:
    python -m offramp.pipeline.runner --interval 60

Environment variables:
    PROCESS_INTERVAL_SECONDS: Seconds between sweeps (default: 60)
    PROCESS_BATCH_SIZE: Transactions advanced per sweep (default: 100)
"""

import argparse
import asyncio
import logging
from typing import Optional

from offramp.config import get_settings
from offramp.ledger.database import get_db, init_db
from offramp.ledger.models import OfframpStatus
from offramp.ledger.repository import OfframpRepository
from offramp.pipeline.factory import get_state_machine
from offramp.pipeline.state_machine import TransactionStateMachine

logger = logging.getLogger(__name__)


class TransactionRunner:
    """Sweeps non-terminal transactions through the state machine."""

    def __init__(
        self,
        machine: TransactionStateMachine,
        interval: float = 60.0,
        batch_size: int = 100,
    ):
        """Initialize the runner.

        Args:
            machine: State machine that owns the pipeline
            interval: Seconds between sweeps
            batch_size: Maximum transactions advanced per sweep, oldest first
        """
        self.machine = machine
        self.interval = interval
        self.batch_size = batch_size

    @classmethod
    def from_settings(cls, machine: TransactionStateMachine) -> "TransactionRunner":
        settings = get_settings()
        return cls(
            machine,
            interval=settings.process_interval_seconds,
            batch_size=settings.process_batch_size,
        )

    async def get_transactions_to_process(self) -> list[str]:
        """IDs of non-terminal transactions, oldest first."""
        async with get_db(self.machine.session_factory) as session:
            repo = OfframpRepository(session)
            rows = await repo.list_active(limit=self.batch_size)
            return [row.transaction_id for row in rows]

    async def process_once(self) -> dict[str, int]:
        """Run a single sweep.

        Returns:
            Counts of completed, failed, waiting, busy and errored transactions
        """
        transaction_ids = await self.get_transactions_to_process()
        summary = dict.fromkeys(
            ("processed", "completed", "failed", "waiting", "busy", "errors"), 0
        )

        if not transaction_ids:
            logger.debug("No in-flight transactions to process")
            return summary

        logger.info(f"Processing {len(transaction_ids)} in-flight transactions...")

        for transaction_id in transaction_ids:
            try:
                result = await self.machine.advance(transaction_id)
            except Exception as e:
                logger.exception(f"Error processing {transaction_id}: {e}")
                summary["errors"] += 1
                continue

            summary["processed"] += 1
            if result.busy:
                summary["busy"] += 1
            elif result.status == OfframpStatus.COMPLETED:
                summary["completed"] += 1
            elif result.status == OfframpStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["waiting"] += 1

        return summary

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Sweep until ``stop_event`` is set (or forever without one)."""
        logger.info(
            f"Starting transaction runner (interval: {self.interval}s, "
            f"batch size: {self.batch_size})"
        )
        stop_event = stop_event or asyncio.Event()

        while not stop_event.is_set():
            try:
                summary = await self.process_once()
                if summary["completed"] or summary["failed"]:
                    logger.info(
                        f"Sweep finished: {summary['completed']} completed, "
                        f"{summary['failed']} failed, {summary['waiting']} waiting"
                    )
            except Exception as e:
                logger.exception(f"Runner error: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Transaction runner stopped")


async def main():
    """Main entry point."""
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Advance in-flight off-ramp transactions")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.process_interval_seconds,
        help="Seconds between sweeps (default: PROCESS_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one sweep and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    await init_db()
    runner = TransactionRunner(
        get_state_machine(), interval=args.interval, batch_size=settings.process_batch_size
    )

    if args.once:
        summary = await runner.process_once()
        print(f"Processed {summary['processed']} transactions: {summary}")
    else:
        await runner.run()


if __name__ == "__main__":
    asyncio.run(main())
