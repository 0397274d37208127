from pydantic import BaseModel, Field


class SendMessageRequest(BaseModel):
    stream_id: int = Field(gt=0)
    topic: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1, max_length=5000)
    stream_name: str | None = None


class SendMessageResponse(BaseModel):
    message_id: int


class StreamSummary(BaseModel):
    id: int
    name: str


class StreamList(BaseModel):
    streams: list[StreamSummary]


class TopicSummary(BaseModel):
    name: str
    max_message_id: int = 0


class TopicList(BaseModel):
    topics: list[TopicSummary]


class MessageSummary(BaseModel):
    id: int
    sender_full_name: str = ""
    sender_email: str = ""
    timestamp: int = 0
    content: str = ""


class MessageList(BaseModel):
    messages: list[MessageSummary]


class StreamMember(BaseModel):
    user_id: int
    full_name: str | None = None
    email: str | None = None


class MemberList(BaseModel):
    subscribers: list[StreamMember]


class EventQueueResponse(BaseModel):
    queue_id: str
    last_event_id: int


class UploadResponse(BaseModel):
    uri: str
