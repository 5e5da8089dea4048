from __future__ import annotations

from pydantic import BaseModel, Field


class ProviderWebhookMetrics(BaseModel):
    channel: str
    requests_received: int = 0
    requests_rejected: int = 0
    events_received: int = 0
    events_failed: int = 0
    # ingestion result -> count, e.g. {"updated": 3, "stale_ignored": 1}
    results: dict[str, int] = Field(default_factory=dict)


class ChannelStreamMetrics(BaseModel):
    streams_opened: int = 0
    streams_closed: int = 0
    subscribe_failed: int = 0
    seed_failed: int = 0
    updates_applied: int = 0
    streams_active: int = 0


class DeliveryMetricsResponse(BaseModel):
    webhooks: dict[str, ProviderWebhookMetrics]
    streams: dict[str, ChannelStreamMetrics]
    active_streams: int
    counters: dict[str, int]
