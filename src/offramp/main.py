"""Main entry point - runs the off-ramp API and the scheduled transaction runner."""

import asyncio
import logging
import signal

import uvicorn

from offramp.api.app import create_app
from offramp.config import get_settings
from offramp.errors import ChainRPCError
from offramp.ledger.database import init_db
from offramp.pipeline import TransactionRunner, get_state_machine
from offramp.signing.evm import EVMClient

logger = logging.getLogger(__name__)


class Application:
    """Runs the API server and transaction runner until a shutdown signal arrives."""

    def __init__(self):
        self.settings = get_settings()
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services."""
        # Configure logging
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting off-ramp service...")
        logger.info(f"Environment: {self.settings.environment}")
        if self.settings.dry_run:
            logger.warning("DRY_RUN enabled - payouts are simulated")
        if not self.settings.has_wallet:
            logger.warning("OFFRAMP_MASTER_MNEMONIC not set - address generation disabled")

        await self._check_chain()

        tasks = [asyncio.create_task(self._run_api())]
        if self.settings.process_interval_seconds > 0 and self.settings.has_wallet:
            tasks.append(asyncio.create_task(self._run_processor()))
        else:
            logger.info("Scheduled processing disabled")

        # Wait for shutdown signal or a service exiting on its own
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())
        await asyncio.wait({*tasks, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

        self._shutdown_event.set()
        for task in (*tasks, shutdown_task):
            task.cancel()
        await asyncio.gather(*tasks, shutdown_task, return_exceptions=True)
        logger.info("Shutdown complete")

    async def _check_chain(self):
        """Warn when the RPC endpoint serves a different chain than configured."""
        client = EVMClient.from_settings()
        try:
            chain_id = await client.get_chain_id()
        except ChainRPCError as e:
            logger.warning(f"Base RPC unreachable at startup: {e}")
            return

        if chain_id != client.chain_id:
            logger.error(f"RPC reports chain id {chain_id}, expected {client.chain_id}")
        else:
            logger.info(f"Connected to chain {chain_id}")

    async def _run_api(self):
        """Run the FastAPI server. Database setup happens in the app lifespan."""
        try:
            app = create_app()
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    async def _run_processor(self):
        """Advance in-flight transactions until shutdown."""
        try:
            await init_db()
            runner = TransactionRunner.from_settings(get_state_machine())
            await runner.run(self._shutdown_event)
        except asyncio.CancelledError:
            logger.info("Transaction runner cancelled")
        except Exception as e:
            logger.error(f"Transaction runner error: {e}")
            raise

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    app = Application()

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
