from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict


class DeliveryRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    interview_id: str
    message_id: str | None = None
    status: str
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EmailMessageRecord(DeliveryRecord):
    recipient_email: str
    opened_at: datetime | None = None
    bounced_at: datetime | None = None
    complained_at: datetime | None = None
    unsubscribed_at: datetime | None = None


class WhatsAppMessageRecord(DeliveryRecord):
    candidate_phone: str
    read_at: datetime | None = None


class DeliveryStatusSummary(BaseModel):
    label: str
    description: str
    headline_event: str
    headline_at: datetime | None = None


class DeliveryStatusItem(BaseModel):
    interview_id: str
    record: EmailMessageRecord | WhatsAppMessageRecord
    summary: DeliveryStatusSummary


class DeliveryStatusListResponse(BaseModel):
    channel: Literal["email", "whatsapp"]
    requested: int
    found: int
    items: list[DeliveryStatusItem]
