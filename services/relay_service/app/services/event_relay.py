"""Relay one upstream event queue to one browser as a server-sent event stream.

State machine::

    REGISTERING -> STREAMING <-> POLLING_ERROR
         |             |              |
         +-------------+--------------+--> CLOSED

``STREAMING`` issues one long-poll, forwards its events in order and loops.
Transient poll failures go through ``POLLING_ERROR`` (fixed delay, cursor
kept). An invalid queue, rejected credentials, client disconnect or
cancellation end in ``CLOSED``; the relay never re-registers by itself.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import anyio
from loguru import logger

from shared.errors import InternalError, ServiceError, TransientNetworkError, UpstreamError

from ..context import RequestContext
from ..metrics import relay_active_connections, relay_frames_total, relay_poll_failures_total
from .upstream import BAD_EVENT_QUEUE_ID, UpstreamIdentity

RELEASE_TIMEOUT_SECONDS = 5.0


class EventQueuePoller(Protocol):
    async def register_queue(
        self,
        identity: UpstreamIdentity,
        *,
        event_types: Sequence[str],
        fetch_event_types: Sequence[str] = (),
    ) -> dict[str, Any]: ...

    async def get_events(self, identity: UpstreamIdentity, queue_id: str, last_event_id: int) -> dict[str, Any]: ...

    async def delete_queue(self, identity: UpstreamIdentity, queue_id: str) -> None: ...


class RelayState(str, Enum):
    registering = "registering"
    streaming = "streaming"
    polling_error = "polling_error"
    closed = "closed"


TRANSITIONS: dict[RelayState, frozenset[RelayState]] = {
    RelayState.registering: frozenset({RelayState.streaming, RelayState.closed}),
    RelayState.streaming: frozenset({RelayState.polling_error, RelayState.closed}),
    RelayState.polling_error: frozenset({RelayState.streaming, RelayState.closed}),
    RelayState.closed: frozenset(),
}


class PollOutcome(str, Enum):
    events = "events"
    transient_failure = "transient_failure"
    queue_invalid = "queue_invalid"
    fatal = "fatal"


@dataclass
class PollResult:
    outcome: PollOutcome
    events: list[dict[str, Any]] = field(default_factory=list)
    reason: str | None = None


class RelayRegistrationError(InternalError):
    """The upstream event queue could not be opened."""


def encode_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n"


def classify_poll_error(exc: ServiceError) -> PollResult:
    if isinstance(exc, TransientNetworkError):
        return PollResult(PollOutcome.transient_failure, reason=exc.message)
    if isinstance(exc, UpstreamError):
        if exc.code == BAD_EVENT_QUEUE_ID:
            return PollResult(PollOutcome.queue_invalid, reason=exc.message)
        status = exc.upstream_status or 0
        if status == 429 or status >= 500:
            return PollResult(PollOutcome.transient_failure, reason=exc.message)
    return PollResult(PollOutcome.fatal, reason=exc.message)


class EventRelay:
    """One browser connection's view of one upstream event queue.

    Instances are never shared between connections; all state lives here.
    """

    def __init__(
        self,
        poller: EventQueuePoller,
        identity: UpstreamIdentity,
        *,
        base_url: str,
        retry_delay: float = 2.0,
        event_types: Sequence[str] = ("message",),
        fetch_event_types: Sequence[str] = ("message", "unread_msgs"),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._poller = poller
        self._identity = identity
        self.base_url = base_url
        self.retry_delay = retry_delay
        self.event_types = tuple(event_types)
        self.fetch_event_types = tuple(fetch_event_types)
        self._sleep = sleep

        self.state = RelayState.registering
        self.queue_id: str | None = None
        self.last_event_id: int = -1
        self.history: list[RelayState] = [RelayState.registering]
        self.close_reason: str | None = None
        self._queue_valid = False

    def _transition(self, target: RelayState, reason: str | None = None) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InternalError(f"Illegal relay transition {self.state.value} -> {target.value}")
        logger.debug(f"Relay queue={self.queue_id} {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)
        if target is RelayState.closed:
            self.close_reason = reason

    def close(self, reason: str) -> None:
        if self.state is not RelayState.closed:
            self._transition(RelayState.closed, reason)

    async def open(self) -> dict[str, Any]:
        """REGISTERING: open the upstream queue and return the metadata event."""
        try:
            registration = await self._poller.register_queue(
                self._identity,
                event_types=self.event_types,
                fetch_event_types=self.fetch_event_types,
            )
            queue_id = registration["queue_id"]
            last_event_id = int(registration["last_event_id"])
        except (ServiceError, KeyError, TypeError, ValueError) as exc:
            self.close("registration_failed")
            logger.error(f"Failed to register upstream event queue: {exc}")
            raise RelayRegistrationError("Failed to register upstream event queue") from exc

        self.queue_id = queue_id
        self.last_event_id = last_event_id
        self._queue_valid = True
        self._transition(RelayState.streaming)
        logger.info(f"Relay connected: queue_id={queue_id} last_event_id={last_event_id}")
        return {
            "type": "metadata",
            "unread_msgs": registration.get("unread_msgs") or {},
            "upstream_base_url": self.base_url,
            "zulip_base_url": self.base_url,
        }

    async def poll_once(self) -> PollResult:
        """Issue one long-poll for events after the current cursor."""
        try:
            payload = await self._poller.get_events(self._identity, self.queue_id, self.last_event_id)
        except ServiceError as exc:
            return classify_poll_error(exc)
        return PollResult(PollOutcome.events, events=list(payload.get("events") or []))

    def advance(self, event: dict[str, Any]) -> None:
        event_id = event.get("id")
        if isinstance(event_id, int) and event_id > self.last_event_id:
            self.last_event_id = event_id

    async def stream(self, ctx: RequestContext, metadata: dict[str, Any] | None = None) -> AsyncIterator[str]:
        """Yield SSE frames until the relay reaches CLOSED.

        Cancellation from the transport propagates into the in-flight poll;
        the upstream queue is released on every exit path.
        """
        if self.state is not RelayState.streaming:
            raise InternalError("Relay must be opened before streaming")
        relay_active_connections.inc()
        try:
            if metadata is not None:
                yield encode_frame(metadata)
            while self.state is not RelayState.closed:
                if await ctx.is_disconnected():
                    self.close("client_disconnected")
                    break
                result = await self.poll_once()
                if await ctx.is_disconnected():
                    self.close("client_disconnected")
                    break
                if result.outcome is PollOutcome.events:
                    for event in result.events:
                        self.advance(event)
                        relay_frames_total.inc()
                        yield encode_frame(event)
                elif result.outcome is PollOutcome.transient_failure:
                    relay_poll_failures_total.labels(reason=result.outcome.value).inc()
                    self._transition(RelayState.polling_error)
                    logger.warning(
                        f"Relay queue={self.queue_id} poll failed ({result.reason}); retrying in {self.retry_delay:.1f}s"
                    )
                    await self._sleep(self.retry_delay)
                    self._transition(RelayState.streaming)
                else:
                    relay_poll_failures_total.labels(reason=result.outcome.value).inc()
                    if result.outcome is PollOutcome.queue_invalid:
                        self._queue_valid = False
                    logger.info(f"Relay queue={self.queue_id} stopping: {result.outcome.value} ({result.reason})")
                    self.close(result.outcome.value)
        except asyncio.CancelledError:
            self.close("cancelled")
            raise
        finally:
            self.close("stream_ended")
            relay_active_connections.dec()
            await self._release()

    async def _release(self) -> None:
        if not self._queue_valid or self.queue_id is None:
            return
        self._queue_valid = False
        with anyio.move_on_after(RELEASE_TIMEOUT_SECONDS, shield=True):
            try:
                await self._poller.delete_queue(self._identity, self.queue_id)
            except ServiceError as exc:
                logger.warning(f"Could not delete upstream queue {self.queue_id}: {exc}")
