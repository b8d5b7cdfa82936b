"""
Session document model.

The Session is the unit of recoverability: it is written to the backend of
record in full on every save and rehydrated in full on resume. Field names
and nesting are a contract with the backend; keys this model does not know
are kept in `extra` dicts and written back untouched.

Wire layout:
    {
      "session_id", "session_type", "version",
      "created_at", "updated_at", "expires_at",
      "actor": {...}, "flow_state": {...},
      "timeline": {"step_1": {...}, ...},
      "recovery_summary": {...},
      "step_1_data": {...}, ...,
      "metadata": {...}
    }
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from swapflow.core.utils import parse_iso, to_iso, utcnow

SESSION_TTL_HOURS = 24
DEFAULT_CURRENCY = "KES"

_TIMELINE_KEY = re.compile(r"^step_(\d+)$")
_STEP_DATA_KEY = re.compile(r"^step_(\d+)_data$")


class WorkflowType(str, Enum):
    """Workflow types. Values are the backend's session_type strings."""
    REGISTRATION = "SALES_REGISTRATION"
    ASSET_SWAP = "ATTENDANT_SWAP"

    @property
    def id_prefix(self) -> str:
        return "sales" if self is WorkflowType.REGISTRATION else "swap"

    @property
    def actor_role(self) -> "ActorRole":
        if self is WorkflowType.REGISTRATION:
            return ActorRole.SALESPERSON
        return ActorRole.ATTENDANT


class ActorRole(str, Enum):
    SALESPERSON = "salesperson"
    ATTENDANT = "attendant"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def _split_known(data: Dict[str, Any], known: set) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k not in known}


@dataclass(frozen=True)
class Actor:
    """Who operates the workflow. Immutable after creation."""
    role: ActorRole
    id: str
    name: str
    station: Optional[str] = None
    company_id: Optional[Any] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.extra,
            "type": self.role.value,
            "id": self.id,
            "name": self.name,
            "station": self.station,
            "company_id": self.company_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Actor":
        return cls(
            role=ActorRole(data.get("type", ActorRole.ATTENDANT.value)),
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            station=data.get("station"),
            company_id=data.get("company_id"),
            extra=_split_known(data, {"type", "id", "name", "station", "company_id"}),
        )


@dataclass
class FlowState:
    current_step: int
    max_step_reached: int
    total_steps: int
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.extra,
            "current_step": self.current_step,
            "max_step_reached": self.max_step_reached,
            "total_steps": self.total_steps,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowState":
        return cls(
            current_step=int(data["current_step"]),
            max_step_reached=int(data["max_step_reached"]),
            total_steps=int(data["total_steps"]),
            extra=_split_known(data, {"current_step", "max_step_reached", "total_steps"}),
        )


@dataclass
class TimelineEntry:
    name: str
    status: StepStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.extra,
            "name": self.name,
            "status": self.status.value,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimelineEntry":
        return cls(
            name=data.get("name", ""),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            started_at=parse_iso(data.get("started_at")),
            completed_at=parse_iso(data.get("completed_at")),
            extra=_split_known(data, {"name", "status", "started_at", "completed_at"}),
        )


@dataclass
class RecoverySummary:
    """
    Denormalized snapshot for session lists. Kept in sync on every
    transition so a list can render without reading step payloads.
    """
    customer_name: str = ""
    current_step: int = 1
    current_step_name: str = ""
    max_step_reached: int = 1
    last_action: str = "Session started"
    last_action_at: Optional[datetime] = None
    time_elapsed: str = "just now"
    currency_symbol: str = DEFAULT_CURRENCY
    can_resume: bool = True
    resume_warnings: List[str] = field(default_factory=list)
    subscription_code: Optional[str] = None
    order_id: Optional[Any] = None
    amount_due: Optional[float] = None
    amount_paid: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if f.name == "last_action_at":
                value = to_iso(value)
            elif f.name == "resume_warnings":
                value = list(value)
            out[f.name] = value
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecoverySummary":
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["last_action_at"] = parse_iso(data.get("last_action_at"))
        kwargs["resume_warnings"] = list(data.get("resume_warnings") or [])
        return cls(**kwargs, extra=_split_known(data, known))

    def merge(self, partial: Dict[str, Any]) -> None:
        """Shallow merge; unknown keys land in extra."""
        known = {f.name for f in fields(self)} - {"extra"}
        for key, value in partial.items():
            if key in known:
                if key == "last_action_at" and isinstance(value, str):
                    value = parse_iso(value)
                setattr(self, key, value)
            else:
                self.extra[key] = value


@dataclass
class SessionMetadata:
    """Rolling operational counters. Written by the orchestrator only."""
    last_action: str = "Session started"
    last_action_at: Optional[datetime] = None
    error_count: int = 0
    retry_count: int = 0
    session_duration_seconds: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.extra,
            "last_action": self.last_action,
            "last_action_at": to_iso(self.last_action_at),
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "session_duration_seconds": self.session_duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionMetadata":
        known = {"last_action", "last_action_at", "error_count", "retry_count", "session_duration_seconds"}
        return cls(
            last_action=data.get("last_action", ""),
            last_action_at=parse_iso(data.get("last_action_at")),
            error_count=int(data.get("error_count", 0)),
            retry_count=int(data.get("retry_count", 0)),
            session_duration_seconds=int(data.get("session_duration_seconds", 0)),
            extra=_split_known(data, known),
        )


@dataclass
class Session:
    """
    One recoverable transaction.

    Invariants (maintained by state_machine):
    - flow_state.current_step <= flow_state.max_step_reached <= flow_state.total_steps
    - at most one timeline entry is in_progress
    - a completed timeline entry never changes status again
    """
    session_id: str
    workflow_type: WorkflowType
    version: int
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    actor: Actor
    flow_state: FlowState
    timeline: Dict[int, TimelineEntry] = field(default_factory=dict)
    recovery_summary: RecoverySummary = field(default_factory=RecoverySummary)
    step_data: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def current_step(self) -> int:
        return self.flow_state.current_step

    @property
    def total_steps(self) -> int:
        return self.flow_state.total_steps

    @property
    def max_step_reached(self) -> int:
        return self.flow_state.max_step_reached

    def status_of(self, step: int) -> Optional[StepStatus]:
        entry = self.timeline.get(step)
        return entry.status if entry else None

    def in_progress_steps(self) -> List[int]:
        return sorted(s for s, e in self.timeline.items() if e.status is StepStatus.IN_PROGRESS)

    @staticmethod
    def default_expiry(created_at: datetime, ttl_hours: int = SESSION_TTL_HOURS) -> datetime:
        return created_at + timedelta(hours=ttl_hours)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        out.update({
            "session_id": self.session_id,
            "session_type": self.workflow_type.value,
            "version": self.version,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "expires_at": to_iso(self.expires_at),
            "actor": self.actor.to_dict(),
            "flow_state": self.flow_state.to_dict(),
            "timeline": {f"step_{n}": e.to_dict() for n, e in sorted(self.timeline.items())},
            "recovery_summary": self.recovery_summary.to_dict(),
            "metadata": self.metadata.to_dict(),
        })
        for n, data in sorted(self.step_data.items()):
            out[f"step_{n}_data"] = data
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        """
        Rehydrate from a wire document.

        Raises KeyError/ValueError/TypeError on a malformed document; the
        store adapter turns those into SessionLoadError.
        """
        timeline: Dict[int, TimelineEntry] = {}
        for key, entry in (data.get("timeline") or {}).items():
            m = _TIMELINE_KEY.match(key)
            if not m:
                raise ValueError(f"bad timeline key {key!r}")
            timeline[int(m.group(1))] = TimelineEntry.from_dict(entry)

        step_data: Dict[int, Dict[str, Any]] = {}
        extra: Dict[str, Any] = {}
        known = {
            "session_id", "session_type", "version", "created_at", "updated_at",
            "expires_at", "actor", "flow_state", "timeline", "recovery_summary", "metadata",
        }
        for key, value in data.items():
            m = _STEP_DATA_KEY.match(key)
            if m:
                if not isinstance(value, dict):
                    raise ValueError(f"{key} must be an object")
                step_data[int(m.group(1))] = value
            elif key not in known:
                extra[key] = value

        created_at = parse_iso(data["created_at"])
        if created_at is None:
            raise ValueError("created_at missing")

        return cls(
            session_id=data["session_id"],
            workflow_type=WorkflowType(data["session_type"]),
            version=int(data["version"]),
            created_at=created_at,
            updated_at=parse_iso(data.get("updated_at")) or created_at,
            expires_at=parse_iso(data.get("expires_at")) or cls.default_expiry(created_at),
            actor=Actor.from_dict(data["actor"]),
            flow_state=FlowState.from_dict(data["flow_state"]),
            timeline=timeline,
            recovery_summary=RecoverySummary.from_dict(data.get("recovery_summary") or {}),
            step_data=step_data,
            metadata=SessionMetadata.from_dict(data.get("metadata") or {}),
            extra=extra,
        )


def new_recovery_summary(step_name: str, now: Optional[datetime] = None,
                         currency: str = DEFAULT_CURRENCY) -> RecoverySummary:
    now = now or utcnow()
    return RecoverySummary(
        current_step=1,
        current_step_name=step_name,
        max_step_reached=1,
        last_action="Session started",
        last_action_at=now,
        currency_symbol=currency,
    )
