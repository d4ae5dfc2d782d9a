"""
Data models for multi-step operations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class OperationKind(Enum):
    """Named workflows."""

    INSTALL_SIDESTORE = "install_sidestore"
    INSTALL_LIVECONTAINER = "install_livecontainer"
    CUSTOM_SIDELOAD = "custom_sideload"
    INSTALL_CUSTOM_IPA = "install_custom_ipa"

    @property
    def needs_ipa(self) -> bool:
        """Whether the caller supplies the IPA."""
        return self in (OperationKind.CUSTOM_SIDELOAD, OperationKind.INSTALL_CUSTOM_IPA)


class StepState(Enum):
    """State of one step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OperationState(Enum):
    """State of a whole operation."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def finished(self) -> bool:
        return self in (OperationState.COMPLETED, OperationState.FAILED, OperationState.CANCELLED)


@dataclass
class OperationStep:
    """
    A labelled step.

    Attributes:
        title: Label shown to the user.
        state: Current state.
        reason: Why the step failed, when it did.
    """

    title: str
    state: StepState = StepState.PENDING
    reason: Optional[str] = None


@dataclass(frozen=True)
class OperationSnapshot:
    """
    Point-in-time copy of an operation's progress.

    Attributes:
        operation_id: Unique id of the operation.
        kind: Which workflow is running.
        account: Apple ID the operation runs for.
        state: Overall state.
        steps: Copies of every step, in order.
        result: Signed IPA path once the operation produced one.
    """

    operation_id: str
    kind: OperationKind
    account: str
    state: OperationState
    steps: tuple[OperationStep, ...] = field(default_factory=tuple)
    result: Optional[Path] = None

    @property
    def current_step(self) -> Optional[OperationStep]:
        for step in self.steps:
            if step.state == StepState.IN_PROGRESS:
                return step
        return None

    @property
    def failed_step(self) -> Optional[OperationStep]:
        for step in self.steps:
            if step.state == StepState.FAILED:
                return step
        return None

    @property
    def completed_count(self) -> int:
        return sum(1 for step in self.steps if step.state == StepState.COMPLETED)
