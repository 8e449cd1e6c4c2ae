"""State machine factory: wires the pipeline from settings."""

from typing import Optional

from offramp.config import get_settings
from offramp.crypto import get_cipher
from offramp.hdwallet.provisioner import WalletProvisioner
from offramp.ledger.database import get_session_factory
from offramp.payout import PayoutDispatcher, get_payout_gateway
from offramp.pipeline.state_machine import TransactionStateMachine
from offramp.routing.zerox import ZeroXProvider
from offramp.scanner.tokens import TokenScanner
from offramp.services.consolidation import ConsolidationTransfer
from offramp.services.gas_funder import GasFunder
from offramp.services.gas_recovery import GasRecovery
from offramp.services.swap_orchestrator import SwapOrchestrator
from offramp.settings_service import OfframpSettingsService
from offramp.signing.evm import EVMClient, to_wei
from offramp.signing.treasury import TreasurySigner
from offramp.utils.retry import RetryPolicy

# Singleton instances
_machine: Optional[TransactionStateMachine] = None
_settings_service: Optional[OfframpSettingsService] = None


def get_settings_service() -> OfframpSettingsService:
    """Shared runtime settings service, so admin updates invalidate the pipeline cache."""
    global _settings_service
    if _settings_service is None:
        _settings_service = OfframpSettingsService()
    return _settings_service


def build_state_machine() -> TransactionStateMachine:
    """Build a state machine from environment settings."""
    settings = get_settings()

    provisioner = WalletProvisioner.from_settings()
    client = EVMClient.from_settings()
    treasury = TreasurySigner.from_settings(client, provisioner)
    scanner = TokenScanner(client)
    retry_policy = RetryPolicy.from_settings()

    return TransactionStateMachine(
        session_factory=get_session_factory(),
        provisioner=provisioner,
        client=client,
        scanner=scanner,
        gas_funder=GasFunder.from_settings(client, treasury),
        swapper=SwapOrchestrator.from_settings(
            client, ZeroXProvider.from_settings(), scanner.settlement_asset, retry_policy
        ),
        consolidator=ConsolidationTransfer(client),
        gas_recovery=GasRecovery.from_settings(client, treasury.address),
        dispatcher=PayoutDispatcher(get_payout_gateway(), retry_policy),
        settings_service=get_settings_service(),
        receiver_address=settings.receiver_wallet_address or treasury.address,
        gas_retry=retry_policy,
        estimated_gas_wei=to_wei(settings.estimated_swap_gas_eth),
        dust_threshold=settings.dust_threshold,
        settlement_tolerance_percent=settings.settlement_tolerance_percent,
        cipher=get_cipher(),
    )


def get_state_machine() -> TransactionStateMachine:
    """Get the process-wide state machine.

    The treasury signer inside it owns the treasury nonce, so there must
    only be one per process.
    """
    global _machine
    if _machine is None:
        _machine = build_state_machine()
    return _machine


def reset_state_machine() -> None:
    """Reset state machine instance (useful for testing)."""
    global _machine, _settings_service
    _machine = None
    _settings_service = None
