from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _as_text(value: object) -> object:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class BrevoWebhookEvent(BaseModel):
    """Transactional email event as posted by Brevo; every field may be missing."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event: str | None = None
    email: str | None = None
    id: int | str | None = None
    date: str | None = None
    message_id: str | None = Field(default=None, alias="message-id")
    reason: str | None = None
    tag: str | None = None
    ts_event: int | float | None = None

    @field_validator("event", "message_id", "reason", "date", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> object:
        return _as_text(value)


class AisensyError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str | None = None
    message: str | None = None

    @field_validator("code", "message", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> object:
        return _as_text(value)


class AisensyWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    messageId: str | None = None
    status: str | None = None
    destination: str | None = None
    timestamp: str | int | float | None = None
    error: AisensyError | None = None

    @field_validator("error", mode="before")
    @classmethod
    def _coerce_error(cls, value: object) -> object:
        if isinstance(value, str):
            return {"message": value}
        return value

    @field_validator("messageId", "status", "destination", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> object:
        return _as_text(value)


class WebhookEventResult(BaseModel):
    message_id: str | None = None
    event: str | None = None
    result: str
    status: str | None = None


class BrevoWebhookResponse(BaseModel):
    success: bool
    processed: int
    results: list[WebhookEventResult]


class AisensyWebhookResponse(BaseModel):
    received: bool
    status: str | None = None
    result: str
