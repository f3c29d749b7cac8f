from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class InboundEvent(BaseModel):
    """Inbound message event delivered by the WhatsApp gateway."""

    sender_id: str = Field(validation_alias=AliasChoices("senderId", "sender_id", "from"))
    chat_id: str = Field(validation_alias=AliasChoices("chatId", "chat_id"))
    is_group: bool = Field(default=False, validation_alias=AliasChoices("isGroup", "is_group"))
    body: Optional[str] = None
    media_ref: Optional[str] = Field(default=None, validation_alias=AliasChoices("mediaRef", "media_ref"))
    media_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("mediaType", "media_type"))
    quoted_message_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("quotedMessageId", "quoted_message_id"),
    )
    quoted_body: Optional[str] = Field(default=None, validation_alias=AliasChoices("quotedBody", "quoted_body"))
    sender_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("senderName", "sender_name"))
    from_me: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))

    @property
    def text(self) -> str:
        return (self.body or "").strip()

    @property
    def has_media(self) -> bool:
        return bool(self.media_ref)


class WebhookResponse(BaseModel):
    success: bool
    message: str
    route: Optional[str] = None
