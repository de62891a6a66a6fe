from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class IntentCommandItem(BaseModel):
    command: str = Field(min_length=1)
    description: str = ""


class IntentReply(BaseModel):
    type: Literal["question", "command"]
    content: str = ""
    commands: list[IntentCommandItem] = Field(default_factory=list)
    plan: str | None = None


class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: str = ""
    username: str | None = None


class TelegramChat(BaseModel):
    id: int
    type: str = "private"


class TelegramMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: int
    chat: TelegramChat
    from_user: TelegramUser | None = Field(default=None, alias="from")
    text: str | None = None
    author_signature: str | None = None


class TelegramUpdate(BaseModel):
    update_id: int
    message: TelegramMessage | None = None
    channel_post: TelegramMessage | None = None

    def payload(self) -> TelegramMessage | None:
        return self.message or self.channel_post


class WebhookAck(BaseModel):
    ok: bool = True
    accepted: bool


class JobResponse(BaseModel):
    job_id: int
    chat_id: int
    message_id: int
    phase: str
    started_at: str
    text: str


class SkillResponse(BaseModel):
    id: str
    name: str
    description: str
    has_install_notes: bool
    triggers: list[str] = Field(default_factory=list)
