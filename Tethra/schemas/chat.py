from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


# Plain text part; assistant turns carry state="done" once the stream has terminated
class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str
    state: Optional[str] = None


# Image part (URL or data URI)
class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    image: str


# State marker placed before each generated step of an assistant turn
class StepStartPart(BaseModel):
    type: Literal["step-start"] = "step-start"


MessagePart = Annotated[Union[TextPart, ImagePart, StepStartPart], Field(discriminator="type")]
MessageContent = Union[str, List[MessagePart]]

_CONTENT_ADAPTER: TypeAdapter = TypeAdapter(MessageContent)


def encode_content(content: MessageContent) -> str:
    """Serialize message content (plain string or typed parts) for storage."""
    return _CONTENT_ADAPTER.dump_json(content, exclude_none=True).decode("utf-8")


def decode_content(raw: str) -> MessageContent:
    # Rows written before structured content existed hold bare text
    try:
        return _CONTENT_ADAPTER.validate_json(raw)
    except ValidationError:
        return raw


def content_text(content: MessageContent) -> str:
    """Concatenated text of a message, ignoring non-text parts."""
    if isinstance(content, str):
        return content
    return "".join(part.text for part in content if isinstance(part, TextPart))


def user_parts(text: str) -> List[MessagePart]:
    return [TextPart(text=text)]


def assistant_parts(text: str) -> List[MessagePart]:
    return [StepStartPart(), TextPart(text=text, state="done")]


# Live events pushed to subscribers, ordered per conversation
class StreamStarted(BaseModel):
    event: Literal["stream_started"] = "stream_started"
    conversation_id: str
    message_id: str


class StreamToken(BaseModel):
    event: Literal["stream_token"] = "stream_token"
    conversation_id: str
    token: str


class StreamEnded(BaseModel):
    event: Literal["stream_ended"] = "stream_ended"
    conversation_id: str
    message_id: str
    full_text: str
    error: Optional[str] = None


class ConversationRetitled(BaseModel):
    event: Literal["conversation_retitled"] = "conversation_retitled"
    conversation_id: str
    title: str


ChatEvent = Annotated[
    Union[StreamStarted, StreamToken, StreamEnded, ConversationRetitled],
    Field(discriminator="event"),
]


# Request body for the chat streaming endpoint
class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    user_message: str
    conversation_id: Optional[str] = None
    model: Optional[str] = None


# Returned once a chat request has been accepted; results arrive on the event stream
class SubmitResponse(BaseModel):
    accepted: bool = True
    conversation_id: str
    message_id: str


class ConversationCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")
    title: Optional[str] = None
    model: Optional[str] = None


class ConversationTitleUpdate(BaseModel):
    title: str


class ConversationArchiveUpdate(BaseModel):
    archived: bool


class TitleGenerateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    model: Optional[str] = None


class ConversationOut(BaseModel):
    id: str
    title: str
    created_at: Optional[str] = None
    archived: bool = False
    model: Optional[str] = None


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: MessageContent
    created_at: Optional[str] = None


# Model catalog row (model id + provider label + whether it is usable right now)
class ListedModel(BaseModel):
    model: str
    adapter_kind: str
    enabled: bool
