"""Off-ramp pipeline orchestration."""

from offramp.pipeline.factory import (
    build_state_machine,
    get_settings_service,
    get_state_machine,
    reset_state_machine,
)
from offramp.pipeline.runner import TransactionRunner
from offramp.pipeline.state_machine import AdvanceResult, TransactionStateMachine

__all__ = [
    "AdvanceResult",
    "TransactionRunner",
    "TransactionStateMachine",
    "build_state_machine",
    "get_settings_service",
    "get_state_machine",
    "reset_state_machine",
]
