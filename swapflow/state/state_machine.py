"""
Session state machine: pure transforms over Session values.

Every function returns a new Session and leaves its argument untouched.
Persistence is the caller's job (see SessionManager).

Step status lifecycle:

    PENDING ──> IN_PROGRESS ──> COMPLETED (terminal)
       │            │  ▲
       │            ▼  │
       └──────────> FAILED

Timeline rule on advance(session, s):
    1. step s-1, if present, becomes COMPLETED
    2. any other IN_PROGRESS step k < s becomes COMPLETED
    3. s becomes IN_PROGRESS (keeping its first started_at) unless it is
       already COMPLETED or a later step is still IN_PROGRESS; then it
       keeps its status (and is created PENDING if absent)
This keeps "at most one IN_PROGRESS" and "COMPLETED is terminal" true for
any sequence of calls, including back navigation.
"""

from __future__ import annotations

import copy
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from swapflow.core.errors import SwapflowError
from swapflow.core.utils import format_time_ago, make_session_id, to_iso, utcnow
from swapflow.state.session import (
    DEFAULT_CURRENCY,
    SESSION_TTL_HOURS,
    Actor,
    FlowState,
    Session,
    SessionMetadata,
    StepStatus,
    TimelineEntry,
    WorkflowType,
    new_recovery_summary,
)
from swapflow.state.step_data import StepRecord, decode_record, validate_record

REGISTRATION_STEP_NAMES: Dict[int, str] = {
    1: "Customer",
    2: "Package",
    3: "Subscription",
    4: "Preview",
    5: "Payment",
    6: "Battery",
}

ASSET_SWAP_STEP_NAMES: Dict[int, str] = {
    1: "Customer",
    2: "Return",
    3: "New",
    4: "Review",
    5: "Pay",
    6: "Done",
}

ASSET_SWAP_TOTAL_STEPS = 6

VALID_TRANSITIONS: Dict[StepStatus, List[StepStatus]] = {
    StepStatus.PENDING: [StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.FAILED],
    StepStatus.IN_PROGRESS: [StepStatus.COMPLETED, StepStatus.FAILED],
    StepStatus.FAILED: [StepStatus.IN_PROGRESS, StepStatus.COMPLETED],
    StepStatus.COMPLETED: [],
}


class StepTransitionError(SwapflowError, ValueError):
    """Raised on an invalid step status change."""
    pass


class SessionMode(str, Enum):
    NEW = "new"
    RESUME = "resume"
    REVIEW = "review"


def step_names(workflow_type: WorkflowType, total_steps: int) -> Dict[int, str]:
    if workflow_type is WorkflowType.ASSET_SWAP:
        return dict(ASSET_SWAP_STEP_NAMES)
    names = dict(REGISTRATION_STEP_NAMES)
    if total_steps >= 8:
        names[7] = "Vehicle"
    names[total_steps] = "Done"
    return names


def _set_status(entry: TimelineEntry, to: StepStatus, now: datetime) -> None:
    if entry.status is to:
        return
    if to not in VALID_TRANSITIONS[entry.status]:
        raise StepTransitionError(f"cannot move step {entry.name!r} from {entry.status.value} to {to.value}")
    entry.status = to
    if to is StepStatus.IN_PROGRESS and entry.started_at is None:
        entry.started_at = now
    if to is StepStatus.COMPLETED:
        entry.completed_at = now


def create(
    workflow_type: WorkflowType,
    total_steps: int,
    actor: Actor,
    *,
    now: Optional[datetime] = None,
    ttl_hours: int = SESSION_TTL_HOURS,
    currency: str = DEFAULT_CURRENCY,
    session_id: Optional[str] = None,
) -> Session:
    """Fresh session at step 1, step 1 in progress, expiring after ttl_hours."""
    if total_steps < 2:
        raise ValueError(f"total_steps must be >= 2, got {total_steps}")
    now = now or utcnow()
    first = step_names(workflow_type, total_steps).get(1, "Step 1")
    return Session(
        session_id=session_id or make_session_id(workflow_type.id_prefix),
        workflow_type=workflow_type,
        version=0,
        created_at=now,
        updated_at=now,
        expires_at=Session.default_expiry(now, ttl_hours),
        actor=actor,
        flow_state=FlowState(current_step=1, max_step_reached=1, total_steps=total_steps),
        timeline={1: TimelineEntry(name=first, status=StepStatus.IN_PROGRESS, started_at=now)},
        recovery_summary=new_recovery_summary(first, now=now, currency=currency),
        metadata=SessionMetadata(last_action="Session started", last_action_at=now),
    )


def advance(
    session: Session,
    step: int,
    step_name: str,
    step_data: Optional[StepRecord] = None,
    *,
    now: Optional[datetime] = None,
) -> Session:
    """
    Move to `step`. Backward moves are allowed and never lower max_step_reached.

    Raises:
        ValueError: step outside 1..total_steps
        StepDataError: step_data is not the schema record for this step
    """
    total = session.flow_state.total_steps
    if not 1 <= step <= total:
        raise ValueError(f"step {step} outside 1..{total}")
    if step_data is not None:
        validate_record(session.workflow_type, total, step, step_data)

    now = now or utcnow()
    s = copy.deepcopy(session)

    prev = s.timeline.get(step - 1)
    if prev is not None:
        _set_status(prev, StepStatus.COMPLETED, now)
    for k, entry in s.timeline.items():
        if k < step and entry.status is StepStatus.IN_PROGRESS:
            _set_status(entry, StepStatus.COMPLETED, now)

    later_active = any(
        k > step and e.status is StepStatus.IN_PROGRESS for k, e in s.timeline.items()
    )
    entry = s.timeline.get(step)
    if entry is None:
        entry = TimelineEntry(name=step_name, status=StepStatus.PENDING)
        s.timeline[step] = entry
    else:
        entry.name = step_name
    if entry.status is not StepStatus.COMPLETED and not later_active:
        _set_status(entry, StepStatus.IN_PROGRESS, now)

    s.flow_state.current_step = step
    s.flow_state.max_step_reached = max(s.flow_state.max_step_reached, step)

    if step_data is not None:
        s.step_data[step] = {
            "step": step,
            "step_name": step_name,
            "captured_at": to_iso(now),
            **step_data.to_payload(),
        }

    s.updated_at = now
    s.recovery_summary.merge({
        "current_step": step,
        "current_step_name": step_name,
        "max_step_reached": s.flow_state.max_step_reached,
        "last_action": f"Moved to {step_name}",
        "last_action_at": now,
        "time_elapsed": "just now",
    })
    return s


def update_summary(session: Session, partial: Dict[str, Any], *, now: Optional[datetime] = None) -> Session:
    """Shallow-merge into the recovery summary; flow_state is untouched."""
    s = copy.deepcopy(session)
    s.recovery_summary.merge(partial)
    s.updated_at = now or utcnow()
    return s


def complete(session: Session, *, now: Optional[datetime] = None) -> Session:
    """Mark the final step completed and close the session for resume."""
    now = now or utcnow()
    s = copy.deepcopy(session)
    total = s.flow_state.total_steps

    for k, entry in s.timeline.items():
        if k != total and entry.status is StepStatus.IN_PROGRESS:
            _set_status(entry, StepStatus.COMPLETED, now)
    final = s.timeline.get(total)
    if final is None:
        final = TimelineEntry(
            name=step_names(s.workflow_type, total).get(total, "Done"),
            status=StepStatus.PENDING,
            started_at=now,
        )
        s.timeline[total] = final
    _set_status(final, StepStatus.COMPLETED, now)

    s.updated_at = now
    s.recovery_summary.merge({
        "can_resume": False,
        "last_action": "Session completed",
        "last_action_at": now,
    })
    s.metadata.last_action = "Session completed"
    s.metadata.last_action_at = now
    return s


def mark_step_failed(session: Session, step: int, error: str, *, now: Optional[datetime] = None) -> Session:
    """Record a failed attempt at `step`. The step can be re-entered later."""
    now = now or utcnow()
    s = copy.deepcopy(session)
    entry = s.timeline.get(step)
    if entry is None:
        raise ValueError(f"step {step} has no timeline entry")
    _set_status(entry, StepStatus.FAILED, now)
    entry.extra["error"] = error
    entry.extra["failed_at"] = to_iso(now)
    s.metadata.error_count += 1
    s.metadata.last_action = f"Failed: {error}"
    s.metadata.last_action_at = now
    s.updated_at = now
    return s


def record_action(
    session: Session,
    action: str,
    *,
    error: bool = False,
    retry: bool = False,
    now: Optional[datetime] = None,
) -> Session:
    """Roll the operational counters forward."""
    now = now or utcnow()
    s = copy.deepcopy(session)
    s.metadata.last_action = action
    s.metadata.last_action_at = now
    if error:
        s.metadata.error_count += 1
    if retry:
        s.metadata.retry_count += 1
    s.metadata.session_duration_seconds = max(0, int((now - s.created_at).total_seconds()))
    s.updated_at = now
    return s


def read_step(session: Session, step: int) -> Optional[StepRecord]:
    """Typed view of step_N_data, or None if nothing was captured."""
    payload = session.step_data.get(step)
    if payload is None:
        return None
    return decode_record(session.workflow_type, session.flow_state.total_steps, step, payload)


def is_completed(session: Session) -> bool:
    return session.status_of(session.flow_state.total_steps) is StepStatus.COMPLETED


def is_expired(session: Session, now: Optional[datetime] = None) -> bool:
    return session.expires_at <= (now or utcnow())


def can_resume(session: Session, now: Optional[datetime] = None) -> bool:
    if is_expired(session, now):
        return False
    if is_completed(session) or session.flow_state.current_step >= session.flow_state.total_steps:
        return False
    return session.recovery_summary.can_resume is not False


def session_mode(session: Optional[Session], now: Optional[datetime] = None) -> SessionMode:
    if session is None:
        return SessionMode.NEW
    if is_completed(session):
        return SessionMode.REVIEW
    return SessionMode.RESUME


def time_elapsed(session: Session, now: Optional[datetime] = None) -> str:
    return format_time_ago(session.updated_at, now)
