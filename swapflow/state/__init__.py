"""
Session state package.

- session: the session document model
- step_data: typed per-step payloads
- state_machine: pure step transitions
- session_store: persistence adapters
- session_manager: live session with debounced saves
"""

from swapflow.state.session import Actor, ActorRole, Session, StepStatus, WorkflowType
from swapflow.state.session_manager import SessionManager, SessionManagerConfig
from swapflow.state.session_store import (
    FileSessionStore,
    HttpSessionStore,
    SessionFilter,
    SessionLoadError,
    SessionPage,
    SessionStore,
    SessionStoreError,
    SessionSummary,
    SessionVersionConflictError,
)
from swapflow.state.state_machine import SessionMode, StepTransitionError
from swapflow.state.step_data import StepDataError, StepRecord

__all__ = [
    "Actor",
    "ActorRole",
    "Session",
    "StepStatus",
    "WorkflowType",
    "SessionManager",
    "SessionManagerConfig",
    "FileSessionStore",
    "HttpSessionStore",
    "SessionFilter",
    "SessionLoadError",
    "SessionPage",
    "SessionStore",
    "SessionStoreError",
    "SessionSummary",
    "SessionVersionConflictError",
    "SessionMode",
    "StepTransitionError",
    "StepDataError",
    "StepRecord",
]
