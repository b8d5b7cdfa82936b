"""
SessionManager: owns the live session and its persistence.

The state machine is pure; this is where its results are kept and written.
Every mutation marks the session dirty and (re)arms a delayed flush, so a
burst of updates turns into one write. flush_now() cancels the timer and
writes immediately; orchestrators call it before points of no return
(reporting a payment, completing a swap).

Versioning:
    session.version is the last version the store accepted. A write sends
    version + 1. A version conflict is fatal: the manager stops writing and
    every later flush re-raises it until the session is reloaded.

Thread Safety:
    Single event loop. Writes are serialized with an asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, TYPE_CHECKING

from swapflow.core.json_utils import dumps, dumps_canonical
from swapflow.state.session import Session
from swapflow.state.session_store import (
    SessionStore,
    SessionStoreError,
    SessionVersionConflictError,
)

if TYPE_CHECKING:
    from swapflow.monitoring.metrics_rich import EngineMetrics

log = logging.getLogger("swapflow")


@dataclass
class SessionManagerConfig:
    """Configuration for SessionManager."""
    autosave_delay_ms: int = 500

    # Logging
    log_event_callback: Optional[Callable[..., None]] = None


class SessionManager:
    """
    Single owner of the in-progress session.

    Usage:
        manager = SessionManager(store)
        manager.start(session)                        # new, not yet persisted
        manager.update(state_machine.advance(manager.session, 2, "Return"))
        await manager.attach("SUB-123")               # first persisted write
        await manager.flush_now()                     # before reporting payment
    """

    def __init__(
        self,
        store: SessionStore,
        config: Optional[SessionManagerConfig] = None,
        metrics: Optional["EngineMetrics"] = None,
    ) -> None:
        self.store = store
        self.config = config or SessionManagerConfig()
        self.metrics = metrics

        self._lock = asyncio.Lock()
        self._session: Optional[Session] = None
        self._reference_id: Any = None
        self._dirty = False
        self._mutation_seq = 0
        self._last_saved: Optional[str] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._conflict: Optional[SessionVersionConflictError] = None

        self._log_event = self.config.log_event_callback or self._default_log
        self._stats = {
            "saves": 0,
            "saves_skipped_unchanged": 0,
            "save_failures": 0,
            "flushes_scheduled": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        """Default logging."""
        payload = {"event": event, **kwargs}
        if self._session is not None:
            payload.setdefault("session_id", self._session.session_id)
        log.info(dumps(payload))

    # ========== Properties ==========

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("no active session")
        return self._session

    @property
    def has_session(self) -> bool:
        return self._session is not None

    @property
    def reference_id(self) -> Any:
        return self._reference_id

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def conflict(self) -> Optional[SessionVersionConflictError]:
        return self._conflict

    # ========== Lifecycle ==========

    def start(self, session: Session, reference_id: Any = None) -> None:
        """Begin tracking a session. A loaded session starts clean."""
        self._cancel_timer()
        self._session = session
        self._reference_id = reference_id
        self._conflict = None
        self._dirty = reference_id is None
        self._last_saved = self._fingerprint(session) if reference_id is not None else None
        self._log_event(
            "session_tracking_started",
            session_id=session.session_id,
            reference_id=reference_id,
            version=session.version,
        )

    async def attach(self, subscription_code: str) -> Any:
        """
        First persisted write: the store allocates the reference id
        (the backend's order id) and stores version 1.
        """
        session = self.session
        async with self._lock:
            candidate = copy.deepcopy(session)
            candidate.version = session.version + 1
            reference_id = await self.store.create(subscription_code, candidate)
            self._reference_id = reference_id
            self._session.version = candidate.version
            self._last_saved = self._fingerprint(candidate)
            if self._fingerprint(self._session) == self._last_saved:
                self._dirty = False
        self._log_event("session_attached", reference_id=reference_id, version=candidate.version)
        return reference_id

    def bind_reference(self, reference_id: Any) -> None:
        """Adopt a reference id created elsewhere (e.g. by an order purchase)."""
        self._reference_id = reference_id
        self._dirty = True
        self.schedule_flush()

    def update(self, session: Session) -> Session:
        """Replace the live session with a new value and schedule a save."""
        if self._conflict is not None:
            raise self._conflict
        if self._session is not None and session.session_id != self._session.session_id:
            raise ValueError("update() received a different session")
        # Persisted version is owned here, not by the caller's copy
        if self._session is not None:
            session.version = self._session.version
        self._session = session
        self._dirty = True
        self._mutation_seq += 1
        self.schedule_flush()
        return session

    def apply(self, fn: Callable[..., Session], *args: Any, **kwargs: Any) -> Session:
        """update(fn(session, *args, **kwargs))"""
        return self.update(fn(self.session, *args, **kwargs))

    async def close(self, flush: bool = True) -> None:
        self._cancel_timer()
        if flush and self._dirty and self._reference_id is not None and self._conflict is None:
            await self.flush_now()

    def discard(self) -> None:
        """Forget the session without writing."""
        self._cancel_timer()
        self._log_event("session_discarded", reference_id=self._reference_id)
        self._session = None
        self._reference_id = None
        self._dirty = False
        self._last_saved = None
        self._conflict = None

    # ========== Persistence ==========

    def schedule_flush(self) -> None:
        self._cancel_timer()
        if self._reference_id is None:
            return
        self._stats["flushes_scheduled"] += 1
        self._flush_task = asyncio.create_task(self._delayed_flush())

    async def flush_now(self) -> bool:
        """
        Write immediately if there is anything to write.

        Raises:
            SessionVersionConflictError: the stored session moved on
            SessionStoreError: the write failed (session stays dirty)
        """
        self._cancel_timer()
        return await self._flush()

    async def _delayed_flush(self) -> None:
        try:
            await asyncio.sleep(self.config.autosave_delay_ms / 1000)
            # Past the debounce window a save must not be cancelled mid-write
            if self._flush_task is asyncio.current_task():
                self._flush_task = None
            await self._flush()
        except asyncio.CancelledError:
            pass
        except SessionVersionConflictError:
            # Already recorded and logged in _flush
            pass
        except SessionStoreError as e:
            self._log_event("autosave_failed", error=str(e))

    async def _flush(self) -> bool:
        if self._conflict is not None:
            raise self._conflict
        if self._session is None or self._reference_id is None:
            return False

        async with self._lock:
            if not self._dirty:
                return True
            seq = self._mutation_seq
            fingerprint = self._fingerprint(self._session)
            if fingerprint == self._last_saved:
                self._dirty = False
                self._stats["saves_skipped_unchanged"] += 1
                return True

            candidate = copy.deepcopy(self._session)
            candidate.version = self._session.version + 1
            try:
                ok = await self.store.save(self._reference_id, candidate)
            except SessionVersionConflictError as e:
                self._conflict = e
                self._stats["save_failures"] += 1
                if self.metrics:
                    self.metrics.session_conflicts.labels(workflow=candidate.workflow_type.value).inc()
                self._log_event(
                    "session_version_conflict",
                    reference_id=self._reference_id,
                    attempted=e.attempted,
                    stored=e.stored,
                )
                raise
            except SessionStoreError:
                self._stats["save_failures"] += 1
                if self.metrics:
                    self.metrics.session_save_failures.labels(workflow=candidate.workflow_type.value).inc()
                raise

            if not ok:
                self._stats["save_failures"] += 1
                raise SessionStoreError(f"store rejected save of {self._reference_id}")

            self._session.version = candidate.version
            self._last_saved = fingerprint
            self._stats["saves"] += 1
            if self.metrics:
                self.metrics.session_saves.labels(workflow=candidate.workflow_type.value).inc()
            if seq == self._mutation_seq:
                self._dirty = False
            self._log_event(
                "session_saved",
                reference_id=self._reference_id,
                version=candidate.version,
                step=candidate.flow_state.current_step,
            )

        if self._dirty:
            self.schedule_flush()
        return True

    def _cancel_timer(self) -> None:
        task = self._flush_task
        self._flush_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    @staticmethod
    def _fingerprint(session: Session) -> str:
        doc = session.to_dict()
        doc.pop("version", None)
        return dumps_canonical(doc)

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "dirty": self._dirty,
            "reference_id": self._reference_id,
            "version": self._session.version if self._session else None,
        }
