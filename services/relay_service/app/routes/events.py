"""Real-time event routes.

``GET /events/stream`` registers an upstream queue for the caller and keeps the
response open as ``text/event-stream``; each upstream event becomes one
``data: <json>`` frame. Registration failures are reported before the stream
starts, so the client sees a plain 500.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..context import RequestContext
from ..dependencies import get_credential_resolver, get_request_context, get_session, get_settings, get_upstream_client
from ..schemas import EventQueueResponse
from ..services.credentials import CredentialResolver
from ..services.event_relay import EventRelay
from ..services.upstream import UpstreamClient
from ..settings import RelaySettings

router = APIRouter(prefix="/events")

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


@router.get("/register", response_model=EventQueueResponse)
async def register_queue(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
    credentials: CredentialResolver = Depends(get_credential_resolver),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> EventQueueResponse:
    identity = await credentials.resolve(session, ctx)
    registration = await upstream.register_queue(
        identity,
        event_types=("message", "reaction", "presence", "typing"),
    )
    return EventQueueResponse(queue_id=registration["queue_id"], last_event_id=registration["last_event_id"])


@router.get("/stream")
async def stream_events(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
    credentials: CredentialResolver = Depends(get_credential_resolver),
    upstream: UpstreamClient = Depends(get_upstream_client),
    settings: RelaySettings = Depends(get_settings),
) -> StreamingResponse:
    identity = await credentials.resolve(session, ctx)
    # The stream can live for hours; give the connection back to the pool now.
    await session.close()

    relay = EventRelay(
        upstream,
        identity,
        base_url=upstream.base_url,
        retry_delay=settings.relay_retry_delay_seconds,
    )
    metadata = await relay.open()
    return StreamingResponse(
        relay.stream(ctx, metadata),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
