"""
Session store adapters.

save() always replaces the whole document. Every write carries the
session's version; a store holding any version other than version - 1
rejects the write with SessionVersionConflictError. load() never returns a
partially populated session: not found is None, anything else that goes
wrong is an exception.

Implementations:
- HttpSessionStore: backend of record over BackendApi
- FileSessionStore: one JSON file per reference id, atomic replace
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from swapflow.core.errors import SwapflowError
from swapflow.core.json_utils import dumps, dumps_bytes, loads
from swapflow.core.utils import format_time_ago, parse_iso
from swapflow.infra.backend_api import BackendApi, BackendApiError, BackendUnavailableError
from swapflow.state.session import Session, WorkflowType
from swapflow.state import state_machine

log = logging.getLogger("swapflow")

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_EXPIRED = "expired"


class SessionStoreError(SwapflowError):
    """Network or storage failure. Retryable by the operator."""
    pass


class SessionLoadError(SessionStoreError):
    """Stored document could not be turned into a Session."""
    pass


class SessionVersionConflictError(SessionStoreError):
    """Stored version moved on; the session was modified elsewhere."""

    def __init__(self, reference_id: Any, attempted: int, stored: Optional[int] = None) -> None:
        detail = f"stored={stored}" if stored is not None else "stored=unknown"
        super().__init__(f"version conflict saving {reference_id}: attempted={attempted} {detail}")
        self.reference_id = reference_id
        self.attempted = attempted
        self.stored = stored


@dataclass
class SessionFilter:
    workflow_type: Optional[WorkflowType] = None
    status: Optional[str] = None
    search_text: Optional[str] = None
    page: int = 1
    limit: int = 20


@dataclass
class SessionSummary:
    reference_id: Any
    session_id: str
    workflow_type: WorkflowType
    status: str
    customer_name: str
    current_step: int
    current_step_name: str
    subscription_code: Optional[str]
    updated_at: Optional[str]
    time_elapsed: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference_id": self.reference_id,
            "session_id": self.session_id,
            "session_type": self.workflow_type.value,
            "status": self.status,
            "customer_name": self.customer_name,
            "current_step": self.current_step,
            "current_step_name": self.current_step_name,
            "subscription_code": self.subscription_code,
            "updated_at": self.updated_at,
            "time_elapsed": self.time_elapsed,
        }


@dataclass
class SessionPage:
    sessions: List[SessionSummary] = field(default_factory=list)
    page: int = 1
    limit: int = 20
    total: int = 0

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / self.limit)) if self.limit > 0 else 1

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessions": [s.to_dict() for s in self.sessions],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "totalPages": self.total_pages,
                "hasNextPage": self.has_next_page,
            },
        }


@runtime_checkable
class SessionStore(Protocol):
    async def create(self, subscription_code: str, session: Session) -> Any: ...

    async def save(self, reference_id: Any, session: Session) -> bool: ...

    async def load(self, reference_id: Any) -> Optional[Session]: ...

    async def list(self, flt: SessionFilter) -> SessionPage: ...


def session_status(session: Session) -> str:
    if state_machine.is_completed(session):
        return STATUS_COMPLETED
    if state_machine.is_expired(session):
        return STATUS_EXPIRED
    return STATUS_ACTIVE


def summarize(reference_id: Any, session: Session) -> SessionSummary:
    rs = session.recovery_summary
    return SessionSummary(
        reference_id=reference_id,
        session_id=session.session_id,
        workflow_type=session.workflow_type,
        status=session_status(session),
        customer_name=rs.customer_name,
        current_step=session.flow_state.current_step,
        current_step_name=rs.current_step_name,
        subscription_code=rs.subscription_code,
        updated_at=session.to_dict()["updated_at"],
        time_elapsed=format_time_ago(session.updated_at),
    )


def decode_session(document: Any, reference_id: Any) -> Session:
    if not isinstance(document, dict):
        raise SessionLoadError(f"session {reference_id} is not an object")
    try:
        return Session.from_dict(document)
    except (KeyError, ValueError, TypeError) as e:
        raise SessionLoadError(f"malformed session {reference_id}: {e}") from e


class HttpSessionStore:
    """Session store backed by the backend of record."""

    def __init__(self, api: BackendApi, log_event: Optional[Callable[..., None]] = None) -> None:
        self.api = api
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    async def create(self, subscription_code: str, session: Session) -> Any:
        try:
            order_id = await self.api.create_session(
                subscription_code, session.workflow_type.value, session.to_dict()
            )
        except BackendApiError as e:
            raise SessionStoreError(f"create session failed: {e}") from e
        self._log("session_created_remote", session_id=session.session_id, order_id=order_id)
        return order_id

    async def save(self, reference_id: Any, session: Session) -> bool:
        try:
            resp = await self.api.put_session(reference_id, session.to_dict())
        except BackendUnavailableError as e:
            raise SessionStoreError(str(e)) from e
        except BackendApiError as e:
            if e.status_code == 409:
                stored = e.body.get("version") if isinstance(e.body, dict) else None
                raise SessionVersionConflictError(reference_id, session.version, stored) from e
            raise SessionStoreError(f"save {reference_id} failed: {e}") from e
        return bool(resp.get("success", True)) if isinstance(resp, dict) else True

    async def load(self, reference_id: Any) -> Optional[Session]:
        try:
            document = await self.api.get_session(reference_id)
        except BackendApiError as e:
            raise SessionStoreError(f"load {reference_id} failed: {e}") from e
        if document is None:
            return None
        return decode_session(document, reference_id)

    async def list(self, flt: SessionFilter) -> SessionPage:
        try:
            data = await self.api.list_sessions({
                "type": flt.workflow_type.value if flt.workflow_type else None,
                "status": flt.status,
                "search": flt.search_text,
                "page": flt.page,
                "limit": flt.limit,
            })
        except BackendApiError as e:
            raise SessionStoreError(f"list sessions failed: {e}") from e

        summaries = []
        for item in data.get("sessions", []):
            updated_at = item.get("updated_at")
            summaries.append(SessionSummary(
                reference_id=item.get("order_id", item.get("reference_id")),
                session_id=item.get("session_id", ""),
                workflow_type=WorkflowType(item.get("session_type", WorkflowType.ASSET_SWAP.value)),
                status=item.get("status", STATUS_ACTIVE),
                customer_name=item.get("customer_name") or "",
                current_step=int(item.get("current_step", 1)),
                current_step_name=item.get("current_step_name") or "",
                subscription_code=item.get("subscription_code"),
                updated_at=updated_at,
                time_elapsed=format_time_ago(parse_iso(updated_at)),
            ))
        pagination = data.get("pagination") or {}
        return SessionPage(
            sessions=summaries,
            page=int(pagination.get("page", flt.page)),
            limit=int(pagination.get("limit", flt.limit)),
            total=int(pagination.get("total", len(summaries))),
        )


class FileSessionStore:
    """
    One JSON document per reference id under state_dir.

    File IO runs in an executor; an asyncio.Lock serializes access so
    version checks and writes are atomic with respect to each other.
    """

    def __init__(self, state_dir: str, log_event: Optional[Callable[..., None]] = None) -> None:
        self.root = Path(state_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    def _path(self, reference_id: Any) -> Path:
        safe = str(reference_id).replace("/", "_").replace(":", "_")
        return self.root / f"session_{safe}.json"

    def _read(self, reference_id: Any) -> Optional[Dict[str, Any]]:
        path = self._path(reference_id)
        if not path.exists():
            return None
        try:
            return loads(path.read_bytes())
        except ValueError as e:
            raise SessionLoadError(f"corrupt session file {path}: {e}") from e
        except OSError as e:
            raise SessionStoreError(f"read {path} failed: {e}") from e

    def _write(self, reference_id: Any, document: Dict[str, Any]) -> None:
        path = self._path(reference_id)
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_bytes(dumps_bytes(document))
            tmp.replace(path)
        except OSError as e:
            raise SessionStoreError(f"write {path} failed: {e}") from e

    def _scan(self) -> List[Dict[str, Any]]:
        docs = []
        for path in sorted(self.root.glob("session_*.json")):
            try:
                docs.append(loads(path.read_bytes()))
            except (OSError, ValueError) as e:
                log.warning(f"Skipping unreadable session file {path}: {e}")
        return docs

    def _allocate_id(self) -> int:
        ids = []
        for path in self.root.glob("session_*.json"):
            stem = path.stem[len("session_"):]
            if stem.isdigit():
                ids.append(int(stem))
        return max(ids, default=0) + 1

    async def create(self, subscription_code: str, session: Session) -> Any:
        """Allocate a reference id and store the session as its first version."""
        document = session.to_dict()
        document["subscription_code"] = subscription_code
        async with self._lock:
            loop = asyncio.get_running_loop()
            reference_id = await loop.run_in_executor(None, self._allocate_id)
            document["reference_id"] = reference_id
            await loop.run_in_executor(None, lambda: self._write(reference_id, document))
        self._log("session_created_local", session_id=session.session_id, reference_id=reference_id)
        return reference_id

    async def save(self, reference_id: Any, session: Session) -> bool:
        document = session.to_dict()
        document["reference_id"] = reference_id
        async with self._lock:
            loop = asyncio.get_running_loop()
            current = await loop.run_in_executor(None, lambda: self._read(reference_id))
            stored = int(current.get("version", 0)) if current else None
            if stored is not None and session.version != stored + 1:
                raise SessionVersionConflictError(reference_id, session.version, stored)
            if stored is None and session.version < 1:
                raise SessionVersionConflictError(reference_id, session.version, None)
            await loop.run_in_executor(None, lambda: self._write(reference_id, document))
        return True

    async def load(self, reference_id: Any) -> Optional[Session]:
        async with self._lock:
            loop = asyncio.get_running_loop()
            document = await loop.run_in_executor(None, lambda: self._read(reference_id))
        if document is None or "session_id" not in document:
            return None
        document = dict(document)
        document.pop("reference_id", None)
        return decode_session(document, reference_id)

    async def list(self, flt: SessionFilter) -> SessionPage:
        async with self._lock:
            loop = asyncio.get_running_loop()
            documents = await loop.run_in_executor(None, self._scan)

        summaries: List[SessionSummary] = []
        for doc in documents:
            if "session_id" not in doc:
                continue
            reference_id = doc.get("reference_id")
            body = {k: v for k, v in doc.items() if k != "reference_id"}
            try:
                session = Session.from_dict(body)
            except (KeyError, ValueError, TypeError) as e:
                log.warning(f"Skipping malformed session {reference_id}: {e}")
                continue
            if flt.workflow_type and session.workflow_type is not flt.workflow_type:
                continue
            summary = summarize(reference_id, session)
            if flt.status and summary.status != flt.status:
                continue
            if flt.search_text and not _matches_search(session, flt.search_text):
                continue
            summaries.append(summary)

        summaries.sort(key=lambda s: s.updated_at or "", reverse=True)
        page = max(1, flt.page)
        start = (page - 1) * flt.limit
        return SessionPage(
            sessions=summaries[start:start + flt.limit],
            page=page,
            limit=flt.limit,
            total=len(summaries),
        )


def _matches_search(session: Session, text: str) -> bool:
    """Swap sessions search by subscription code, registration by customer."""
    needle = text.lower().strip()
    rs = session.recovery_summary
    if session.workflow_type is WorkflowType.ASSET_SWAP:
        haystack = [rs.subscription_code or ""]
    else:
        haystack = [rs.customer_name, str(rs.extra.get("customer_id", ""))]
    haystack.append(session.session_id)
    return any(needle in h.lower() for h in haystack if h)
