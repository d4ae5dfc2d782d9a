"""
Multi-step operations with progress reporting.

Example:
    from iloader.core.operations import OperationOrchestrator, StepDefinition

    orchestrator = OperationOrchestrator()
    handle = orchestrator.start(account, kind, steps)
    handle.subscribe(show_progress)
    handle.wait()
"""

from iloader.core.operations.models import (
    OperationKind,
    OperationSnapshot,
    OperationState,
    OperationStep,
    StepState,
)
from iloader.core.operations.orchestrator import (
    OperationContext,
    OperationHandle,
    OperationOrchestrator,
    StepDefinition,
)
from iloader.core.operations.downloads import download_file

__all__ = [
    "OperationContext",
    "OperationHandle",
    "OperationKind",
    "OperationOrchestrator",
    "OperationSnapshot",
    "OperationState",
    "OperationStep",
    "StepDefinition",
    "StepState",
    "download_file",
]
