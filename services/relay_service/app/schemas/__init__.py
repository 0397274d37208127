from .auth import (
    LoginRequest,
    MeResponse,
    OkResponse,
    RefreshRequest,
    RegisterRequest,
    TokenPair,
    UpdateCredentialRequest,
)
from .chat import (
    EventQueueResponse,
    MemberList,
    MessageList,
    MessageSummary,
    SendMessageRequest,
    SendMessageResponse,
    StreamList,
    StreamMember,
    StreamSummary,
    TopicList,
    TopicSummary,
    UploadResponse,
)

__all__ = [
    "EventQueueResponse",
    "LoginRequest",
    "MeResponse",
    "MemberList",
    "MessageList",
    "MessageSummary",
    "OkResponse",
    "RefreshRequest",
    "RegisterRequest",
    "SendMessageRequest",
    "SendMessageResponse",
    "StreamList",
    "StreamMember",
    "StreamSummary",
    "TokenPair",
    "TopicList",
    "TopicSummary",
    "UpdateCredentialRequest",
    "UploadResponse",
]
