"""
Publish/subscribe transport contract and an in-memory broker.

The engine only needs publish, subscribe and unsubscribe with MQTT-style
wildcards, plus a hook fired after reconnect. Delivery order and
at-most-once are not assumed.

InMemoryBroker models one client connection to a clean-session broker:
on disconnect the broker forgets this client's subscriptions, so callers
must re-subscribe from their on_reconnect hooks. Backend behavior is
simulated with responders attached to request subjects.

Usage:
    broker = InMemoryBroker()
    broker.add_responder("emit/uxi/+/plan/+/identify_customer", respond)
    await broker.subscribe("echo/abs/attendant/plan/P1/identify_customer", handler)
    await broker.publish("emit/uxi/attendant/plan/P1/identify_customer", payload)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    Union,
    runtime_checkable,
)

from swapflow.core.errors import SwapflowError
from swapflow.core.json_utils import dumps, dumps_bytes, loads
from swapflow.core.topics import topic_matches
from swapflow.core.utils import now_ms

log = logging.getLogger("swapflow")


class TransportError(SwapflowError):
    """Raised when the transport cannot publish or subscribe."""
    pass


@dataclass
class Message:
    """A delivered message."""
    subject: str
    payload: Dict[str, Any]
    received_ms: int = field(default_factory=now_ms)


# Handler type: async function or sync function taking Message
MessageHandler = Union[
    Callable[[Message], Coroutine[Any, Any, None]],
    Callable[[Message], None],
]

ReconnectHook = Callable[[], Awaitable[None]]

# Responder: (subject, payload) -> list of (subject, payload) replies
Responder = Callable[[str, Dict[str, Any]], Awaitable[List[Tuple[str, Dict[str, Any]]]]]


@runtime_checkable
class Transport(Protocol):
    """What the correlation client needs from a bus."""

    @property
    def connected(self) -> bool: ...

    async def publish(self, subject: str, payload: Dict[str, Any]) -> None: ...

    async def subscribe(self, subject: str, handler: MessageHandler) -> None: ...

    async def unsubscribe(self, subject: str, handler: Optional[MessageHandler] = None) -> None: ...

    def on_reconnect(self, hook: ReconnectHook) -> None: ...


class InMemoryBroker:
    """
    Loopback broker implementing Transport.

    Thread-safety: single event loop only.
    """

    def __init__(self, log_event: Optional[Callable[..., None]] = None) -> None:
        self._log = log_event or self._default_log
        self._connected = True
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._reconnect_hooks: List[ReconnectHook] = []
        self._responders: List[Tuple[str, Responder]] = []
        self._pending_tasks: set[asyncio.Task] = set()
        self.published: List[Message] = []
        self._stats = {
            "published": 0,
            "delivered": 0,
            "dropped_disconnected": 0,
            "handler_errors": 0,
            "reconnects": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        """Default logging when no callback provided."""
        log.debug(dumps({"event": event, **kwargs}))

    @property
    def connected(self) -> bool:
        return self._connected

    # -------------------------------------------------------------------------
    # Transport contract
    # -------------------------------------------------------------------------

    async def publish(self, subject: str, payload: Dict[str, Any]) -> None:
        if not self._connected:
            raise TransportError(f"not connected, cannot publish to {subject}")
        wire = loads(dumps_bytes(payload))
        self.published.append(Message(subject=subject, payload=wire))
        self._stats["published"] += 1

        for pattern, responder in list(self._responders):
            if topic_matches(pattern, subject):
                task = asyncio.create_task(self._run_responder(responder, subject, wire))
                self._pending_tasks.add(task)
                task.add_done_callback(self._pending_tasks.discard)

        await self.deliver(subject, wire)

    async def subscribe(self, subject: str, handler: MessageHandler) -> None:
        if not self._connected:
            raise TransportError(f"not connected, cannot subscribe to {subject}")
        handlers = self._handlers.setdefault(subject, [])
        if handler not in handlers:
            handlers.append(handler)
        self._log("transport_subscribe", subject=subject, handlers=len(handlers))

    async def unsubscribe(self, subject: str, handler: Optional[MessageHandler] = None) -> None:
        handlers = self._handlers.get(subject)
        if not handlers:
            return
        if handler is None:
            del self._handlers[subject]
        else:
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                del self._handlers[subject]
        self._log("transport_unsubscribe", subject=subject)

    def on_reconnect(self, hook: ReconnectHook) -> None:
        self._reconnect_hooks.append(hook)

    # -------------------------------------------------------------------------
    # Simulation controls
    # -------------------------------------------------------------------------

    def add_responder(self, pattern: str, responder: Responder) -> None:
        """Attach a simulated backend to request subjects matching pattern."""
        self._responders.append((pattern, responder))

    def clear_responders(self) -> None:
        self._responders.clear()

    async def deliver(self, subject: str, payload: Dict[str, Any]) -> int:
        """Deliver a message to matching subscribers. Returns handler count."""
        if not self._connected:
            self._stats["dropped_disconnected"] += 1
            return 0
        message = Message(subject=subject, payload=payload)
        count = 0
        for pattern, handlers in list(self._handlers.items()):
            if not topic_matches(pattern, subject):
                continue
            for handler in list(handlers):
                count += 1
                try:
                    result = handler(message)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    self._stats["handler_errors"] += 1
                    log.exception(f"Transport handler error on {subject}: {e}")
        self._stats["delivered"] += count
        return count

    def disconnect(self) -> None:
        """Drop the connection; the broker forgets this client's subscriptions."""
        self._connected = False
        self._handlers.clear()
        self._log("transport_disconnected")

    async def reconnect(self) -> None:
        self._connected = True
        self._stats["reconnects"] += 1
        self._log("transport_reconnect", hooks=len(self._reconnect_hooks))
        for hook in list(self._reconnect_hooks):
            try:
                await hook()
            except Exception as e:
                self._stats["handler_errors"] += 1
                log.exception(f"Reconnect hook failed: {e}")

    def subscription_count(self, subject: Optional[str] = None) -> int:
        if subject is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(subject, []))

    async def drain(self) -> None:
        """Wait for in-flight responders (tests)."""
        while self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "subjects": len(self._handlers)}

    async def _run_responder(self, responder: Responder, subject: str, payload: Dict[str, Any]) -> None:
        try:
            replies = await responder(subject, payload)
        except Exception as e:
            log.exception(f"Responder failed for {subject}: {e}")
            return
        for reply_subject, reply_payload in replies or []:
            await self.deliver(reply_subject, loads(dumps_bytes(reply_payload)))
