"""
WorkflowOrchestrator: shared control flow for the field workflows.

An orchestrator drives one session at a time. Step handlers validate
input, call the backend, and move the session forward through the state
machine; SessionManager takes care of persisting every change.

Architecture:
    The orchestrator owns the control flow, not the rules:
    - state_machine: step/timeline transitions (pure)
    - SessionManager: live session, debounced saves, flush before commits
    - SessionStore: listing and loading sessions for resume/review
    - BackendGateway / BackendApi: the business requests

Blocking policy:
    Payment and completion failures stop the flow (StepResult with
    success=False). Session saves never do: a failed autosave is logged
    and retried on the next change. A version conflict is the exception;
    it ends the flow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, TYPE_CHECKING

from swapflow.core.errors import SwapflowError
from swapflow.core.json_utils import dumps
from swapflow.execution.correlation import CorrelationResult, CorrelationStatus
from swapflow.infra.backend_api import BackendApiError, BackendUnavailableError
from swapflow.state import state_machine
from swapflow.state.session import Actor, Session, WorkflowType
from swapflow.state.session_manager import SessionManager
from swapflow.state.session_store import (
    STATUS_ACTIVE,
    SessionFilter,
    SessionLoadError,
    SessionStore,
    SessionStoreError,
    SessionSummary,
    SessionVersionConflictError,
)
from swapflow.state.state_machine import SessionMode
from swapflow.state.step_data import StepRecord

if TYPE_CHECKING:
    from swapflow.monitoring.metrics_rich import EngineMetrics

log = logging.getLogger("swapflow")


class SessionCompletedError(SwapflowError):
    """The session is complete; it can be reviewed but not changed."""
    pass


class SessionExpiredError(SwapflowError):
    """The session is past its expiry and cannot be resumed."""
    pass


class StepKind(str, Enum):
    OK = "ok"
    IDEMPOTENT = "idempotent"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    VALIDATION = "validation"
    CONFLICT = "conflict"


@dataclass
class StepResult:
    """What a step handler tells the operator."""
    success: bool
    step: int
    kind: StepKind = StepKind.OK
    message: Optional[str] = None
    retryable: bool = False
    notice: Optional[str] = None

    @classmethod
    def ok(cls, step: int, notice: Optional[str] = None, idempotent: bool = False) -> "StepResult":
        return cls(
            success=True,
            step=step,
            kind=StepKind.IDEMPOTENT if idempotent else StepKind.OK,
            notice=notice,
        )

    @classmethod
    def invalid(cls, step: int, message: str) -> "StepResult":
        return cls(success=False, step=step, kind=StepKind.VALIDATION, message=message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "step": self.step,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "notice": self.notice,
        }


@dataclass
class BatteryScan:
    """A battery read at the counter (QR/BLE)."""
    battery_id: str
    energy_wh: float
    charge_level: Optional[float] = None


_KIND_BY_STATUS = {
    CorrelationStatus.TIMEOUT: StepKind.TIMEOUT,
    CorrelationStatus.TRANSPORT_ERROR: StepKind.TRANSPORT,
    CorrelationStatus.CANCELLED: StepKind.TRANSPORT,
    CorrelationStatus.REJECTED: StepKind.REJECTED,
}


@dataclass
class OrchestratorConfig:
    """Configuration shared by the workflow orchestrators."""
    ttl_hours: int = 24
    currency: str = "KES"
    page_limit: int = 20

    # Logging
    log_event_callback: Optional[Callable[..., None]] = None


class WorkflowOrchestrator:
    """
    Base class. Subclasses set WORKFLOW_TYPE, total_steps and the handlers.

    Usage:
        orch = AssetSwapOrchestrator(manager, store, gateway, actor)
        pending = await orch.find_resumable()
        mode = await orch.resume(pending[0].reference_id) if pending else orch.start_new()
    """

    WORKFLOW_TYPE: ClassVar[WorkflowType]

    def __init__(
        self,
        manager: SessionManager,
        store: SessionStore,
        actor: Actor,
        config: Optional[OrchestratorConfig] = None,
        metrics: Optional["EngineMetrics"] = None,
    ) -> None:
        self.manager = manager
        self.store = store
        self.actor = actor
        self.config = config or OrchestratorConfig()
        self.metrics = metrics
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        """Default logging."""
        payload = {"event": event, "workflow": self.WORKFLOW_TYPE.value, **kwargs}
        if self.manager.has_session:
            payload.setdefault("session_id", self.manager.session.session_id)
        log.info(dumps(payload))

    # ========== Properties ==========

    @property
    def total_steps(self) -> int:
        raise NotImplementedError

    @property
    def session(self) -> Session:
        return self.manager.session

    @property
    def current_step(self) -> int:
        return self.manager.session.flow_state.current_step

    def step_name(self, step: int) -> str:
        return state_machine.step_names(self.WORKFLOW_TYPE, self.total_steps).get(step, f"Step {step}")

    # ========== Session lifecycle ==========

    def start_new(self) -> SessionMode:
        session = state_machine.create(
            self.WORKFLOW_TYPE,
            self.total_steps,
            self.actor,
            ttl_hours=self.config.ttl_hours,
            currency=self.config.currency,
        )
        self.manager.start(session)
        self._reset()
        if self.metrics:
            self.metrics.sessions_started.labels(workflow=self.WORKFLOW_TYPE.value, mode="new").inc()
        self._log_event("session_started", session_id=session.session_id)
        return SessionMode.NEW

    async def find_resumable(self, search_text: Optional[str] = None) -> List[SessionSummary]:
        """Open sessions of this workflow that can still be picked up."""
        page = await self.store.list(SessionFilter(
            workflow_type=self.WORKFLOW_TYPE,
            status=STATUS_ACTIVE,
            search_text=search_text,
            limit=self.config.page_limit,
        ))
        return [s for s in page.sessions if not self._effectively_complete(s)]

    async def resume(self, reference_id: Any) -> SessionMode:
        """
        Load a stored session and continue it. Completed sessions open in
        review mode.

        Raises:
            SessionLoadError: nothing stored under reference_id, or malformed
            SessionExpiredError: past expiry
        """
        session = await self._load(reference_id)
        if state_machine.is_completed(session) or session.flow_state.current_step >= session.flow_state.total_steps:
            self._restore(session)
            self.manager.start(session, reference_id)
            return SessionMode.REVIEW
        if state_machine.is_expired(session):
            raise SessionExpiredError(f"session {session.session_id} expired at {session.expires_at.isoformat()}")
        if not state_machine.can_resume(session):
            raise SessionExpiredError(f"session {session.session_id} cannot be resumed")

        self._restore(session)
        self.manager.start(session, reference_id)
        self.manager.apply(state_machine.record_action, "Session resumed")
        self.manager.apply(state_machine.update_summary, {
            "time_elapsed": state_machine.time_elapsed(session),
        })
        if self.metrics:
            self.metrics.sessions_started.labels(workflow=self.WORKFLOW_TYPE.value, mode="resume").inc()
        self._log_event("session_resumed", reference_id=reference_id, step=session.flow_state.current_step)
        return SessionMode.RESUME

    async def open_review(self, reference_id: Any) -> Session:
        """Read-only view of a stored session."""
        session = await self._load(reference_id)
        self._restore(session)
        self.manager.start(session, reference_id)
        return session

    def discard(self) -> None:
        self.manager.discard()
        self._reset()

    async def close(self) -> None:
        await self.manager.close()

    def go_back(self, step: int) -> StepResult:
        """Return to an earlier step. Steps behind a commit point stay closed."""
        self._ensure_open()
        current = self.current_step
        if not 1 <= step < current:
            return StepResult.invalid(current, f"cannot go back to step {step} from step {current}")
        floor = self._back_floor()
        if step < floor:
            return StepResult.invalid(current, f"{self.step_name(step)} can no longer be changed")
        self._advance(step)
        return StepResult.ok(step)

    # ========== Subclass hooks ==========

    def _reset(self) -> None:
        """Drop cached step state."""

    def _restore(self, session: Session) -> None:
        """Rebuild cached step state from a loaded session."""

    def _back_floor(self) -> int:
        return 1

    def _effectively_complete(self, summary: SessionSummary) -> bool:
        return summary.current_step >= self.total_steps

    # ========== Helpers ==========

    async def _load(self, reference_id: Any) -> Session:
        session = await self.store.load(reference_id)
        if session is None:
            raise SessionLoadError(f"no session stored for {reference_id}")
        if session.workflow_type is not self.WORKFLOW_TYPE:
            raise SessionLoadError(
                f"session {reference_id} is {session.workflow_type.value}, not {self.WORKFLOW_TYPE.value}"
            )
        return session

    def _ensure_open(self) -> None:
        session = self.manager.session
        if state_machine.is_completed(session):
            raise SessionCompletedError(f"session {session.session_id} is complete")
        if state_machine.is_expired(session):
            raise SessionExpiredError(f"session {session.session_id} has expired")

    def _ensure_session(self) -> None:
        if not self.manager.has_session:
            self.start_new()

    def _expect_step(self, step: int) -> Optional[StepResult]:
        if self.current_step != step:
            return StepResult.invalid(
                self.current_step,
                f"{self.step_name(step)} is not the current step ({self.step_name(self.current_step)})",
            )
        return None

    def _advance(self, step: int, record: Optional[StepRecord] = None) -> Session:
        session = self.manager.apply(state_machine.advance, step, self.step_name(step), record)
        if self.metrics:
            self.metrics.step_transitions.labels(workflow=self.WORKFLOW_TYPE.value, step=str(step)).inc()
        return session

    def _summary(self, **partial: Any) -> Session:
        return self.manager.apply(state_machine.update_summary, partial)

    def _fail(self, step: int, kind: StepKind, message: str, retryable: bool = False) -> StepResult:
        if step in self.manager.session.timeline:
            self.manager.apply(state_machine.mark_step_failed, step, message)
        else:
            self.manager.apply(state_machine.record_action, f"Failed: {message}", error=True)
        if retryable:
            self.manager.apply(state_machine.record_action, f"Retry available: {self.step_name(step)}", retry=True)
        if self.metrics:
            self.metrics.step_failures.labels(
                workflow=self.WORKFLOW_TYPE.value, step=str(step), kind=kind.value
            ).inc()
        self._log_event("step_failed", step=step, kind=kind.value, message=message)
        return StepResult(success=False, step=step, kind=kind, message=message, retryable=retryable)

    def _fail_from_result(self, step: int, result: CorrelationResult, message: str) -> StepResult:
        kind = _KIND_BY_STATUS.get(result.status, StepKind.REJECTED)
        return self._fail(step, kind, message, retryable=result.retryable)

    def _fail_from_api(self, step: int, error: BackendApiError) -> StepResult:
        if isinstance(error, BackendUnavailableError):
            return self._fail(step, StepKind.TRANSPORT, str(error), retryable=True)
        return self._fail(step, StepKind.REJECTED, str(error))

    async def _attach(self, subscription_code: str) -> Optional[str]:
        """First persisted write. Returns a notice when it could not be made."""
        if self.manager.reference_id is not None:
            return None
        try:
            reference_id = await self.manager.attach(subscription_code)
        except SessionStoreError as e:
            self._log_event("session_attach_failed", error=str(e))
            return "Session could not be saved; progress is kept on this device only"
        self._summary(order_id=reference_id)
        return None

    async def _checkpoint(self, step: int, required: bool = True) -> Optional[StepResult]:
        """
        Flush the session. A version conflict always blocks.

        Before a point of no return (required=True) a failed save of a
        session the backend already knows blocks too, as a retryable
        transport failure: nothing is reported while the stored session
        lags behind the device. After the commit a failed save is logged
        and the session stays dirty for the next flush.
        """
        try:
            await self.manager.flush_now()
        except SessionVersionConflictError as e:
            return StepResult(
                success=False,
                step=step,
                kind=StepKind.CONFLICT,
                message=f"Session was changed elsewhere ({e}). Reload it before continuing.",
            )
        except SessionStoreError as e:
            self._log_event("autosave_failed", step=step, error=str(e))
            if required and self.manager.reference_id is not None:
                return self._fail(
                    step,
                    StepKind.TRANSPORT,
                    "Session could not be saved. Check the connection and try again.",
                    retryable=True,
                )
        return None

    def _completed(self) -> None:
        if self.metrics:
            self.metrics.sessions_completed.labels(workflow=self.WORKFLOW_TYPE.value).inc()
        self._log_event("session_completed", reference_id=self.manager.reference_id)
