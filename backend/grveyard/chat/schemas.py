"""Wire-level shapes exchanged over the chat WebSocket.

Inbound frames are JSON objects.  The ``event_type`` field selects the shape:

    absent / "message"  -> ChatMessage
    "message_read"      -> ReadReceipt
    "ping" / "pong"     -> Heartbeat

Outbound frames are ChatMessage (to the receiver), Acknowledgement and
ErrorResponse (to the sender), ReadReceiptNotification (to original senders)
and Heartbeat pings from the write loop.
"""
from enum import Enum, IntEnum
from typing import Any, List, Literal, Optional, Union

from pydantic import AwareDatetime, BaseModel, Field, ValidationError, field_validator

from .errors import MessageValidationError

MESSAGE_EVENT = "message"
READ_EVENT = "message_read"
PING_EVENT = "ping"
PONG_EVENT = "pong"


class MessageKind(IntEnum):
    """Kind of a direct message, stored as SMALLINT."""
    TEXT = 0
    IMAGE = 1
    FILE = 2
    SYSTEM = 3


class AckStatus(str, Enum):
    """Delivery outcome reported back to a message's sender.

    Attributes:
        SENT: Receiver was online and the message was queued on its connection.
        QUEUED: Receiver was offline; the message is persisted for history.
        ERROR: Persistence or delivery failed.
    """
    SENT = "sent"
    QUEUED = "queued"
    ERROR = "error"


class ChatMessage(BaseModel):
    """A direct message between two identities.

    ``sender_id`` is always overwritten with the authenticated identity of
    the connection it arrived on, and client values for ``is_read`` and
    ``store_id`` are discarded.  ``id``/``timestamp`` are filled in by the
    server when the client leaves them out; a client timestamp without a UTC
    offset is rejected.  ``store_id`` is the numeric id assigned by
    persistence and is what read receipts refer to.
    """
    sender_id: str = Field(default="", description="Sender identity (server-assigned)")
    receiver_id: str = Field(default="", description="Receiver identity")
    content: str = Field(default="", description="Message body")
    timestamp: Optional[AwareDatetime] = Field(default=None, description="Send time; must carry a UTC offset")
    id: str = Field(default="", description="Client-supplied or server-generated message id")
    message_type: MessageKind = Field(default=MessageKind.TEXT, description="0=text,1=image,2=file,3=system")
    is_read: bool = Field(default=False)
    store_id: Optional[int] = Field(default=None, description="Persisted message id")


class Acknowledgement(BaseModel):
    """Sent once to the sender for every processed message."""
    message_id: str
    status: AckStatus
    error: Optional[str] = None
    store_id: Optional[int] = None


class ErrorResponse(BaseModel):
    """Client-visible error for a frame that could not be processed."""
    error: str
    code: Optional[str] = None


class ReadReceipt(BaseModel):
    """Sent by a receiver to mark messages as read."""
    event_type: Literal["message_read"] = READ_EVENT
    message_ids: List[str] = Field(default_factory=list)

    @field_validator("message_ids", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        # Store ids are numeric; accept them either as JSON numbers or strings.
        if isinstance(value, list):
            return [str(item) for item in value if isinstance(item, (str, int)) and not isinstance(item, bool)]
        return value


class ReadReceiptNotification(BaseModel):
    """Pushed to an online original sender when the receiver reads messages."""
    event_type: Literal["message_read"] = READ_EVENT
    message_ids: List[str]
    read_by: str


class Heartbeat(BaseModel):
    """Application-level liveness check."""
    event_type: Literal["ping", "pong"]


InboundEvent = Union[ChatMessage, ReadReceipt, Heartbeat]

PING = Heartbeat(event_type=PING_EVENT)


def decode_event(raw: Any) -> InboundEvent:
    """Decode a parsed JSON frame into exactly one inbound event shape.

    Raises:
        MessageValidationError: If the frame is not an object, names an
            unknown ``event_type`` or does not fit the selected shape.
    """
    if not isinstance(raw, dict):
        raise MessageValidationError("invalid message format")

    event_type = raw.get("event_type")
    if event_type is None or event_type == MESSAGE_EVENT:
        model = ChatMessage
    elif event_type == READ_EVENT:
        model = ReadReceipt
    elif event_type in (PING_EVENT, PONG_EVENT):
        model = Heartbeat
    else:
        raise MessageValidationError(f"unknown event_type: {event_type}")

    try:
        return model.model_validate(raw)
    except ValidationError:
        raise MessageValidationError("invalid message format")


def to_wire(payload: BaseModel) -> dict:
    """Serialize an outbound model to a JSON-ready dict, dropping unset optionals."""
    return payload.model_dump(mode="json", exclude_none=True)
