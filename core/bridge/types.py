"""
Bridge message types

Normalized shapes that flow between the webhook, the router and the agent
gateway. Platform payloads are converted into these once and never mutated.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageKind(str, Enum):
    """Platform message type, as far as the bridge cares."""
    TEXT = "text"
    IMAGE = "image"
    RICH_POST = "post"
    OTHER = "other"

    @classmethod
    def from_platform(cls, message_type: Optional[str]) -> "MessageKind":
        for kind in (cls.TEXT, cls.IMAGE, cls.RICH_POST):
            if message_type == kind.value:
                return kind
        return cls.OTHER


class Mention(BaseModel):
    """A user mentioned in the message (the bot included)."""
    key: str = Field("", description="Placeholder token in the text, e.g. '@_user_1'")
    name: Optional[str] = None
    open_id: Optional[str] = None


class InboundEvent(BaseModel):
    """
    One message-receive event, normalized.

    `content` is the raw JSON string the platform sends; the router decodes it
    according to `kind`.
    """
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    event_id: str = ""
    kind: MessageKind = MessageKind.OTHER
    message_type: str = ""
    content: str = ""
    chat_type: str = ""
    mentions: List[Mention] = Field(default_factory=list)

    @property
    def is_group(self) -> bool:
        return self.chat_type == "group"


class ExtractedContent(BaseModel):
    """Text and (at most one) local media file pulled out of an event."""
    text: str = ""
    media_path: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.media_path


class AttachmentPayload(BaseModel):
    """Media embedded inline in a chat submission."""
    type: str = "image"
    mime_type: str = Field("image/png", serialization_alias="mimeType")
    file_name: str = Field("", serialization_alias="fileName")
    content: str = Field(..., description="base64 encoded bytes")


class ExchangeRequest(BaseModel):
    """One chat submission to the agent gateway."""
    model_config = ConfigDict(frozen=True)

    session_key: str
    message: str
    idempotency_key: str
    attachments: List[AttachmentPayload] = Field(default_factory=list)


class ExchangeReply(BaseModel):
    """Assembled agent reply."""
    text: str = ""
    media_refs: List[str] = Field(default_factory=list)
