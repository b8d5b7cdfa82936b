"""
CorrelationClient: request/response over a publish/subscribe bus.

Each request carries a fresh correlation_id. The client subscribes to the
response subject derived from the request subject, publishes, and waits
for a response whose correlation_id matches (exactly, or one id being a
prefix of the other). A wait ends in exactly one CorrelationResult:

    SUCCESS          matching response, no error signal
    IDEMPOTENT       backend says the operation already happened
    REJECTED         error signal, or success == False without an idempotent signal
    TIMEOUT          no matching response in time
    TRANSPORT_ERROR  could not subscribe or publish (no wait happened)
    CANCELLED        cancel() was called

Timeouts and rejections are results, not exceptions. Responses that
arrive after their wait resolved are logged and dropped.

Architecture:
    One transport handler per response subject, reference counted across
    concurrent requests. Subscriptions are re-armed from the transport's
    reconnect hook; a disconnect alone does not fail a wait.

Thread Safety:
    Single event loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from swapflow.core.json_utils import dumps
from swapflow.core.pubsub import Message, Transport, TransportError
from swapflow.core.topics import response_for
from swapflow.core.utils import BoundedSet, make_correlation_id, now_ms

if TYPE_CHECKING:
    from swapflow.monitoring.metrics_rich import EngineMetrics

log = logging.getLogger("swapflow")

DEFAULT_TIMEOUT_SEC = 30.0

# Any of these in a response means failure, whatever `success` says
ERROR_SIGNALS = frozenset({
    "BATTERY_MISMATCH",
    "ASSET_VALIDATION_FAILED",
    "SECURITY_ALERT",
    "VALIDATION_FAILED",
    "PAYMENT_FAILED",
    "SERVICE_COMPLETION_FAILED",
    "RATE_LIMIT_EXCEEDED",
    "SERVICE_REJECTED",
    "QUOTA_EXHAUSTED",
    "TOPUP_REQUIRED",
    "CUSTOMER_NOT_FOUND",
    "SERVICE_PLAN_NOT_FOUND",
    "INVALID_QR_CODE",
    "INVALID_SUBSCRIPTION_ID",
})

IDEMPOTENT_SIGNALS = frozenset({"IDEMPOTENT_OPERATION_DETECTED"})

IDENTIFY_SUCCESS_SIGNALS = frozenset({"CUSTOMER_IDENTIFIED_SUCCESS"})
COMPLETION_SUCCESS_SIGNALS = frozenset({"SERVICE_COMPLETED", "ASSET_RETURNED", "ASSET_ALLOCATED"})


class CorrelationStatus(str, Enum):
    SUCCESS = "success"
    IDEMPOTENT = "idempotent"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"
    CANCELLED = "cancelled"


@dataclass
class CorrelationResult:
    """Outcome of one correlated request."""
    status: CorrelationStatus
    correlation_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    signals: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    latency_ms: int = 0
    replayed: bool = False

    @property
    def success(self) -> bool:
        return self.status in (CorrelationStatus.SUCCESS, CorrelationStatus.IDEMPOTENT)

    @property
    def is_idempotent(self) -> bool:
        return self.status is CorrelationStatus.IDEMPOTENT

    @property
    def retryable(self) -> bool:
        """Timeouts and transport failures may be retried; rejections may not."""
        return self.status in (CorrelationStatus.TIMEOUT, CorrelationStatus.TRANSPORT_ERROR)

    def error_signals(self) -> List[str]:
        return [s for s in self.signals if s in ERROR_SIGNALS]

    def as_replay(self) -> "CorrelationResult":
        return replace(self, replayed=True, latency_ms=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "success": self.success,
            "correlation_id": self.correlation_id,
            "signals": list(self.signals),
            "error": self.error,
            "latency_ms": self.latency_ms,
            "replayed": self.replayed,
        }


def response_correlation_id(payload: Dict[str, Any]) -> Optional[str]:
    cid = payload.get("correlation_id")
    if cid is None and isinstance(payload.get("data"), dict):
        cid = payload["data"].get("correlation_id")
    return str(cid) if cid is not None else None


def ids_match(request_id: str, response_id: str) -> bool:
    """Exact match, or one id extends the other."""
    return (
        request_id == response_id
        or response_id.startswith(request_id)
        or request_id.startswith(response_id)
    )


def interpret_response(
    payload: Dict[str, Any],
    correlation_id: str,
    success_signals: Iterable[str] = (),
    latency_ms: int = 0,
) -> CorrelationResult:
    """
    Classify a response payload.

    Precedence: error signal > idempotent signal > success == False >
    success. An idempotent signal means the backend already applied the
    operation, whatever the nominal flag says. When success_signals are
    given, a response carrying none of them only succeeds if success is
    True.
    """
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    signals = [str(s) for s in (data.get("signals") or [])]
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    wanted = frozenset(success_signals)

    def result(status: CorrelationStatus, error: Optional[str] = None) -> CorrelationResult:
        return CorrelationResult(
            status=status,
            correlation_id=correlation_id,
            data=data,
            signals=signals,
            metadata=metadata,
            error=error,
            latency_ms=latency_ms,
        )

    errors = [s for s in signals if s in ERROR_SIGNALS]
    if errors:
        reason = metadata.get("reason") or metadata.get("message") or data.get("error")
        return result(CorrelationStatus.REJECTED, reason or errors[0])

    if any(s in IDEMPOTENT_SIGNALS for s in signals):
        return result(CorrelationStatus.IDEMPOTENT)

    if data.get("success") is False:
        reason = data.get("error") or metadata.get("reason") or metadata.get("message")
        return result(CorrelationStatus.REJECTED, reason or "request failed")

    if data.get("success") is True or any(s in wanted for s in signals):
        return result(CorrelationStatus.SUCCESS)

    return result(CorrelationStatus.REJECTED, "response carried no success indication")


@dataclass
class _PendingRequest:
    correlation_id: str
    action: str
    response_subject: str
    future: asyncio.Future
    started_ms: int
    success_signals: frozenset


class CorrelationClient:
    """
    Turns publish/subscribe into awaitable requests.

    Usage:
        client = CorrelationClient(transport, timeout_sec=30)
        result = await client.request(subject, payload, action="identify_customer")
        if result.success:
            ...
    """

    def __init__(
        self,
        transport: Transport,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        log_event: Optional[Callable[..., None]] = None,
        metrics: Optional["EngineMetrics"] = None,
    ) -> None:
        self.transport = transport
        self.timeout_sec = timeout_sec
        self.metrics = metrics
        self._log_event = log_event or self._default_log

        self._pending: Dict[str, _PendingRequest] = {}
        self._subscriptions: Dict[str, int] = {}
        self._resolved = BoundedSet(maxlen=1000)
        self._stats = {
            "requests": 0,
            "success": 0,
            "idempotent": 0,
            "rejected": 0,
            "timeout": 0,
            "transport_error": 0,
            "cancelled": 0,
            "late_responses": 0,
            "rearms": 0,
        }

        transport.on_reconnect(self._rearm)

    def _default_log(self, event: str, **kwargs: Any) -> None:
        """Default logging when no callback provided."""
        log.debug(dumps({"event": event, **kwargs}))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ========== Requests ==========

    async def request(
        self,
        subject: str,
        payload: Dict[str, Any],
        *,
        action: Optional[str] = None,
        correlation_id: Optional[str] = None,
        success_signals: Iterable[str] = (),
        timeout_sec: Optional[float] = None,
    ) -> CorrelationResult:
        """
        Publish `payload` on `subject` and wait for the matching response.

        The payload's correlation_id is used when present, else one is
        generated and written into it.
        """
        cid = correlation_id or payload.get("correlation_id") or make_correlation_id("req")
        payload = {**payload, "correlation_id": cid}
        action = action or subject.rsplit("/", 1)[-1]
        response_subject = response_for(subject)
        timeout = self.timeout_sec if timeout_sec is None else timeout_sec

        loop = asyncio.get_running_loop()
        pending = _PendingRequest(
            correlation_id=cid,
            action=action,
            response_subject=response_subject,
            future=loop.create_future(),
            started_ms=now_ms(),
            success_signals=frozenset(success_signals),
        )
        self._stats["requests"] += 1

        # Subscribe before publishing so a fast response is not missed
        try:
            await self._acquire(response_subject)
        except TransportError as e:
            return self._finish(pending, self._failure(pending, CorrelationStatus.TRANSPORT_ERROR, str(e)))

        self._pending[cid] = pending
        self._set_pending_gauge()
        try:
            try:
                await self.transport.publish(subject, payload)
            except TransportError as e:
                self._settle(pending, self._failure(pending, CorrelationStatus.TRANSPORT_ERROR, str(e)))
            else:
                self._log_event("correlation_published", correlation_id=cid, subject=subject, action=action)

            try:
                result = await asyncio.wait_for(asyncio.shield(pending.future), timeout)
            except asyncio.TimeoutError:
                self._settle(pending, self._failure(pending, CorrelationStatus.TIMEOUT, "timed out"))
                result = pending.future.result()
        finally:
            self._pending.pop(cid, None)
            self._resolved.add(cid)
            self._set_pending_gauge()
            await self._release(response_subject)

        return self._finish(pending, result)

    def cancel(self, correlation_id: str) -> bool:
        """Abandon a wait. Returns False if nothing was waiting."""
        pending = self._pending.get(correlation_id)
        if pending is None:
            return False
        return self._settle(pending, self._failure(pending, CorrelationStatus.CANCELLED, "cancelled"))

    def cancel_all(self) -> int:
        return sum(1 for cid in list(self._pending) if self.cancel(cid))

    # ========== Internals ==========

    def _failure(self, pending: _PendingRequest, status: CorrelationStatus, error: str) -> CorrelationResult:
        return CorrelationResult(
            status=status,
            correlation_id=pending.correlation_id,
            error=error,
            latency_ms=now_ms() - pending.started_ms,
        )

    def _settle(self, pending: _PendingRequest, result: CorrelationResult) -> bool:
        """Resolve once; later attempts are no-ops."""
        if pending.future.done():
            return False
        pending.future.set_result(result)
        return True

    def _finish(self, pending: _PendingRequest, result: CorrelationResult) -> CorrelationResult:
        self._stats[result.status.value] += 1
        if self.metrics:
            self.metrics.correlation_requests.labels(action=pending.action, status=result.status.value).inc()
            if result.status in (CorrelationStatus.SUCCESS, CorrelationStatus.IDEMPOTENT, CorrelationStatus.REJECTED):
                self.metrics.correlation_latency_ms.labels(action=pending.action).observe(result.latency_ms)
        self._log_event(
            "correlation_resolved",
            correlation_id=pending.correlation_id,
            action=pending.action,
            status=result.status.value,
            latency_ms=result.latency_ms,
            error=result.error,
        )
        return result

    async def _on_message(self, message: Message) -> None:
        response_id = response_correlation_id(message.payload)
        if response_id is None:
            return

        pending = self._pending.get(response_id)
        if pending is None:
            pending = next(
                (
                    p for p in self._pending.values()
                    if p.response_subject == message.subject and ids_match(p.correlation_id, response_id)
                ),
                None,
            )

        if pending is None or pending.future.done():
            if pending is not None or response_id in self._resolved:
                self._stats["late_responses"] += 1
                if self.metrics:
                    action = pending.action if pending else message.subject.rsplit("/", 1)[-1]
                    self.metrics.late_responses.labels(action=action).inc()
                self._log_event("correlation_late_response", correlation_id=response_id, subject=message.subject)
            return

        result = interpret_response(
            message.payload,
            pending.correlation_id,
            pending.success_signals,
            latency_ms=now_ms() - pending.started_ms,
        )
        self._settle(pending, result)

    async def _acquire(self, subject: str) -> None:
        count = self._subscriptions.get(subject, 0)
        self._subscriptions[subject] = count + 1
        if count:
            return
        try:
            await self.transport.subscribe(subject, self._on_message)
        except TransportError:
            self._subscriptions.pop(subject, None)
            raise

    async def _release(self, subject: str) -> None:
        count = self._subscriptions.get(subject, 0) - 1
        if count > 0:
            self._subscriptions[subject] = count
            return
        self._subscriptions.pop(subject, None)
        try:
            await self.transport.unsubscribe(subject, self._on_message)
        except TransportError as e:
            self._log_event("correlation_unsubscribe_failed", subject=subject, error=str(e))

    async def _rearm(self) -> None:
        for subject in list(self._subscriptions):
            try:
                await self.transport.subscribe(subject, self._on_message)
                self._stats["rearms"] += 1
            except TransportError as e:
                self._log_event("correlation_rearm_failed", subject=subject, error=str(e))
        self._log_event("correlation_rearmed", subjects=len(self._subscriptions), pending=len(self._pending))

    def _set_pending_gauge(self) -> None:
        if self.metrics:
            self.metrics.correlation_pending.set(len(self._pending))

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "pending": len(self._pending),
            "subscriptions": dict(self._subscriptions),
        }
