"""
Workflow orchestrators.
"""

from swapflow.orchestrator.asset_swap import AssetSwapOrchestrator
from swapflow.orchestrator.base import (
    BatteryScan,
    OrchestratorConfig,
    SessionCompletedError,
    SessionExpiredError,
    StepKind,
    StepResult,
    WorkflowOrchestrator,
)
from swapflow.orchestrator.registration import RegistrationOrchestrator

__all__ = [
    "AssetSwapOrchestrator",
    "BatteryScan",
    "OrchestratorConfig",
    "SessionCompletedError",
    "SessionExpiredError",
    "StepKind",
    "StepResult",
    "WorkflowOrchestrator",
    "RegistrationOrchestrator",
]
