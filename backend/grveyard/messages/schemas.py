"""Pydantic schemas for persisted direct messages.

These schemas are used by:
    - MessageStore implementations (rows returned from history queries)
    - GET /messages: conversation history
"""
from pydantic import BaseModel, Field


class MessageRecord(BaseModel):
    """A direct message as stored.

    Attributes:
        id: Numeric store id (referenced by read receipts).
        sender_id: Sender identity.
        receiver_id: Receiver identity.
        content: Message body.
        message_type: 0=text, 1=image, 2=file, 3=system.
        is_read: Whether the receiver has marked the message read.
        messaged_at: Epoch seconds of the message timestamp.
    """
    id: int = Field(..., description="Store id")
    sender_id: str = Field(..., description="Sender identity")
    receiver_id: str = Field(..., description="Receiver identity")
    content: str = Field(..., description="Message body")
    message_type: int = Field(default=0, ge=0, le=3, description="Message kind")
    is_read: bool = Field(default=False)
    messaged_at: int = Field(..., description="Epoch seconds")
