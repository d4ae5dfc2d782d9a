"""
Runs named operations as ordered steps on a worker thread.

Steps run strictly one after another; each one may read and leave
artifacts for later steps in the shared OperationContext. The first
failing step halts the rest. Cancellation is checked between steps.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Optional

from iloader.core.operations.models import (
    OperationKind,
    OperationSnapshot,
    OperationState,
    OperationStep,
    StepState,
)
from iloader.exceptions import (
    IloaderError,
    OperationCancelledError,
    OperationInProgressError,
    PermissionDeniedError,
)

logger = logging.getLogger(__name__)


@dataclass
class OperationContext:
    """
    State shared by the steps of one operation.

    Attributes:
        account: Apple ID the operation runs for.
        scratch_dir: Directory owned by the operation, removed when it ends.
        cancel_event: Set when cancellation is requested.
        artifacts: Values produced by earlier steps for later ones.
    """

    account: str
    scratch_dir: Path
    cancel_event: threading.Event
    artifacts: dict[str, Any] = field(default_factory=dict)


StepAction = Callable[[OperationContext], None]
SnapshotCallback = Callable[[OperationSnapshot], None]


@dataclass(frozen=True)
class StepDefinition:
    """A step title and the callable that performs it."""

    title: str
    action: StepAction


def _reason(error: BaseException) -> str:
    if isinstance(error, IloaderError):
        return error.user_message
    return f"Unexpected error: {type(error).__name__}"


class OperationHandle:
    """
    Caller-side view of a running operation.

    Example:
        handle = orchestrator.start("user@example.com", kind, steps)
        handle.subscribe(lambda snap: print(snap.current_step))
        snapshot = handle.wait()
    """

    def __init__(self, kind: OperationKind, account: str, titles: list[str]):
        self.operation_id = str(uuid.uuid4())
        self.kind = kind
        self.account = account
        self._steps = [OperationStep(title) for title in titles]
        self._state = OperationState.PENDING
        self._result: Optional[Path] = None
        self._error: Optional[BaseException] = None
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._cancel_event = threading.Event()
        self._subscribers: list[SnapshotCallback] = []

    def snapshot(self) -> OperationSnapshot:
        """Copy of the current state."""
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> OperationSnapshot:
        return OperationSnapshot(
            operation_id=self.operation_id,
            kind=self.kind,
            account=self.account,
            state=self._state,
            steps=tuple(replace(step) for step in self._steps),
            result=self._result,
        )

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """
        Call back with a snapshot on every change.

        The current snapshot is delivered right away on the caller's
        thread; later changes are delivered on the worker thread.

        Returns:
            A function that removes the subscription.
        """
        with self._lock:
            self._subscribers.append(callback)
            snapshot = self._snapshot_locked()
        callback(snapshot)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def wait(self, timeout: Optional[float] = None) -> OperationSnapshot:
        """Block until the operation finishes or the timeout passes."""
        self._done.wait(timeout)
        return self.snapshot()

    def cancel(self) -> None:
        """Request cancellation; takes effect at the next step boundary."""
        if not self._done.is_set():
            logger.info(f"Cancellation requested for {self.kind.value}")
        self._cancel_event.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def error(self) -> Optional[BaseException]:
        """Exception of the failed step, if any."""
        with self._lock:
            return self._error

    # Worker-side updates

    def _update(self, **changes: Any) -> None:
        with self._lock:
            index = changes.pop("index", None)
            if index is not None:
                step = self._steps[index]
                step.state = changes.pop("step_state")
                step.reason = changes.pop("reason", None)
            for name, value in changes.items():
                setattr(self, f"_{name}", value)
            subscribers = list(self._subscribers)
            snapshot = self._snapshot_locked()

        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning(f"Operation subscriber failed: {e}")

    def _cancel_remaining(self, start: int) -> None:
        for index in range(start, len(self._steps)):
            self._update(index=index, step_state=StepState.CANCELLED)

    def _finish(self) -> None:
        self._done.set()


class OperationOrchestrator:
    """
    Starts operations, allowing one active operation per account.

    Example:
        orchestrator = OperationOrchestrator()
        handle = orchestrator.start(
            "user@example.com",
            OperationKind.CUSTOM_SIDELOAD,
            [StepDefinition("Signing Apps", sign_step)],
        )
    """

    def __init__(self, work_dir: Optional[Path] = None):
        self.work_dir = work_dir
        self._active: dict[str, OperationHandle] = {}
        self._lock = threading.Lock()

    def active(self, account: str) -> Optional[OperationHandle]:
        """The running operation for an account, if any."""
        with self._lock:
            return self._active.get(account)

    def start(
        self,
        account: str,
        kind: OperationKind,
        steps: list[StepDefinition],
        initial: Optional[dict[str, Any]] = None,
    ) -> OperationHandle:
        """
        Start an operation on a worker thread.

        Args:
            account: Apple ID the operation runs for.
            kind: Workflow name.
            steps: Ordered steps.
            initial: Artifacts available to the first step.

        Raises:
            OperationInProgressError: If the account already has one running.
        """
        handle = OperationHandle(kind, account, [step.title for step in steps])
        with self._lock:
            if account in self._active:
                raise OperationInProgressError(account)
            self._active[account] = handle

        thread = threading.Thread(
            target=self._run,
            args=(handle, steps, dict(initial or {})),
            name=f"iloader-{kind.value}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError:
            self._release(handle)
            raise
        logger.info(f"Started {kind.value} for {account}")
        return handle

    def _run(
        self,
        handle: OperationHandle,
        steps: list[StepDefinition],
        artifacts: dict[str, Any],
    ) -> None:
        scratch: Optional[Path] = None
        try:
            handle._update(state=OperationState.RUNNING)
            try:
                scratch = self._make_scratch()
            except PermissionDeniedError as e:
                self._fail(handle, steps, 0, e)
                return
            context = OperationContext(handle.account, scratch, handle._cancel_event, artifacts)

            for index, step in enumerate(steps):
                if context.cancel_event.is_set():
                    handle._cancel_remaining(index)
                    handle._update(state=OperationState.CANCELLED)
                    logger.info(f"{handle.kind.value} cancelled before: {step.title}")
                    return

                handle._update(index=index, step_state=StepState.IN_PROGRESS)
                try:
                    step.action(context)
                except OperationCancelledError as e:
                    handle._update(index=index, step_state=StepState.CANCELLED, error=e)
                    handle._cancel_remaining(index + 1)
                    handle._update(state=OperationState.CANCELLED)
                    logger.info(f"{handle.kind.value} cancelled during: {step.title}")
                    return
                except Exception as e:
                    self._fail(handle, steps, index, e)
                    return

                handle._update(index=index, step_state=StepState.COMPLETED)

            handle._update(state=OperationState.COMPLETED, result=context.artifacts.get("result"))
            logger.info(f"{handle.kind.value} completed")

        finally:
            if scratch is not None:
                shutil.rmtree(scratch, ignore_errors=True)
            self._release(handle)
            handle._finish()

    def _make_scratch(self) -> Path:
        try:
            if self.work_dir is not None:
                self.work_dir.mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix="iloader_op_", dir=self.work_dir))
        except OSError as e:
            raise PermissionDeniedError("work directory") from e

    def _fail(
        self,
        handle: OperationHandle,
        steps: list[StepDefinition],
        index: int,
        error: Exception,
    ) -> None:
        if index < len(steps):
            handle._update(
                index=index,
                step_state=StepState.FAILED,
                reason=_reason(error),
                error=error,
            )
            title = steps[index].title
        else:
            handle._update(error=error)
            title = "setup"
        handle._update(state=OperationState.FAILED)
        logger.error(f"{handle.kind.value} failed at '{title}': {_reason(error)}")
        logger.debug("Step failure details", exc_info=error)

    def _release(self, handle: OperationHandle) -> None:
        with self._lock:
            if self._active.get(handle.account) is handle:
                del self._active[handle.account]
