"""On-chain pipeline services."""

from offramp.services.consolidation import ConsolidationTransfer
from offramp.services.gas_funder import GasFunder
from offramp.services.gas_recovery import GasRecovery
from offramp.services.swap_orchestrator import SwapOrchestrator, SwapOutcome

__all__ = [
    "ConsolidationTransfer",
    "GasFunder",
    "GasRecovery",
    "SwapOrchestrator",
    "SwapOutcome",
]
