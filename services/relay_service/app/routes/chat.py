"""Authenticated pass-through routes to the upstream chat API.

Each handler resolves the caller's upstream identity, forwards one call through
the shared upstream client policy and reshapes the answer into a small,
stable JSON body. No chat state is kept locally.
"""

import json

from fastapi import APIRouter, Body, Depends, File, Query, Response, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import ValidationError

from ..context import RequestContext
from ..dependencies import get_credential_resolver, get_request_context, get_session, get_upstream_client
from ..schemas import (
    MemberList,
    MessageList,
    MessageSummary,
    OkResponse,
    SendMessageRequest,
    SendMessageResponse,
    StreamList,
    StreamMember,
    StreamSummary,
    TopicList,
    TopicSummary,
    UploadResponse,
)
from ..services.credentials import CredentialResolver
from ..services.upstream import UpstreamClient, UpstreamIdentity

router = APIRouter()

ALLOWED_IMAGE_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"})
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


async def _identity(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
    credentials: CredentialResolver = Depends(get_credential_resolver),
) -> UpstreamIdentity:
    return await credentials.resolve(session, ctx)


@router.get("/streams", response_model=StreamList)
async def list_streams(
    identity: UpstreamIdentity = Depends(_identity),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> StreamList:
    payload = await upstream.get("/api/v1/users/me/subscriptions", identity, {"include_subscribers": "false"})
    return StreamList(
        streams=[
            StreamSummary(id=sub["stream_id"], name=sub.get("name") or "")
            for sub in payload.get("subscriptions", [])
        ]
    )


@router.get("/streams/{stream_id}/topics", response_model=TopicList)
async def list_topics(
    stream_id: int,
    identity: UpstreamIdentity = Depends(_identity),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> TopicList:
    payload = await upstream.get(f"/api/v1/users/me/{stream_id}/topics", identity)
    return TopicList(
        topics=[
            TopicSummary(
                name=topic.get("name") or "",
                max_message_id=topic.get("max_id", topic.get("max_message_id", 0)),
            )
            for topic in payload.get("topics", [])
        ]
    )


@router.get("/streams/{stream_id}/members", response_model=MemberList)
async def list_members(
    stream_id: int,
    identity: UpstreamIdentity = Depends(_identity),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> MemberList:
    stream = await upstream.get(f"/api/v1/streams/{stream_id}", identity)
    subscriber_ids = set(stream.get("stream", {}).get("subscribers", []))
    if not subscriber_ids:
        return MemberList(subscribers=[])
    users = await upstream.get("/api/v1/users", identity)
    return MemberList(
        subscribers=[
            StreamMember(user_id=member["user_id"], full_name=member.get("full_name"), email=member.get("email"))
            for member in users.get("members", [])
            if member.get("user_id") in subscriber_ids
        ]
    )


@router.get("/messages", response_model=MessageList)
async def list_messages(
    stream_id: int = Query(alias="streamId", gt=0),
    topic: str = Query(min_length=1, max_length=200),
    anchor: str = "latest",
    num_before: int = Query(50, alias="numBefore", ge=0, le=1000),
    num_after: int = Query(0, alias="numAfter", ge=0, le=1000),
    identity: UpstreamIdentity = Depends(_identity),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> MessageList:
    narrow = [
        {"operator": "stream", "operand": stream_id},
        {"operator": "topic", "operand": topic},
    ]
    payload = await upstream.get(
        "/api/v1/messages",
        identity,
        {
            "anchor": anchor,
            "num_before": str(num_before),
            "num_after": str(num_after),
            "narrow": json.dumps(narrow),
            "apply_markdown": "true",
        },
    )
    return MessageList(
        messages=[
            MessageSummary(
                id=message["id"],
                sender_full_name=message.get("sender_full_name") or "",
                sender_email=message.get("sender_email") or "",
                timestamp=message.get("timestamp") or 0,
                content=message.get("rendered_content") or message.get("content") or "",
            )
            for message in payload.get("messages", [])
        ]
    )


@router.post("/messages", response_model=SendMessageResponse)
async def send_message(
    payload: SendMessageRequest,
    identity: UpstreamIdentity = Depends(_identity),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> SendMessageResponse:
    result = await upstream.post_form(
        "/api/v1/messages",
        identity,
        {
            "type": "stream",
            "to": payload.stream_name or str(payload.stream_id),
            "topic": payload.topic,
            "content": payload.content,
        },
    )
    return SendMessageResponse(message_id=result.get("id", result.get("message_id")))


@router.post("/messages/flags/read", response_model=OkResponse)
async def mark_read(
    message_ids: list[int] = Body(...),
    identity: UpstreamIdentity = Depends(_identity),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> OkResponse:
    await upstream.post_form(
        "/api/v1/messages/flags",
        identity,
        {"messages": json.dumps(message_ids), "op": "add", "flag": "read"},
    )
    return OkResponse()


@router.get("/proxy/image")
async def proxy_image(
    url: str = Query(min_length=1),
    identity: UpstreamIdentity = Depends(_identity),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> Response:
    upstream_response = await upstream.fetch_media(identity, url)
    return Response(
        content=upstream_response.content,
        media_type=upstream_response.headers.get("content-type", "image/png"),
        headers={"Cache-Control": "private, max-age=3600"},
    )


@router.post("/upload/image", response_model=UploadResponse)
async def upload_image(
    file: UploadFile = File(...),
    identity: UpstreamIdentity = Depends(_identity),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> UploadResponse:
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("Invalid file type. Only images are allowed.")
    content = await file.read(MAX_UPLOAD_BYTES + 1)
    if not content:
        raise ValidationError("No file provided")
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValidationError("File too large. Maximum size is 10MB.")
    uri = await upstream.upload_file(identity, file.filename or "upload", content, file.content_type)
    return UploadResponse(uri=uri)
