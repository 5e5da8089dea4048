from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from src.config import settings
from src.domain.normalization import VOCABULARIES
from src.models.observability import ChannelStreamMetrics, DeliveryMetricsResponse, ProviderWebhookMetrics
from src.observability import incr_metric, log_event, metrics_snapshot, reset_metrics, split_metric_key


router = APIRouter(prefix="/api/internal/observability", tags=["internal-observability"])

_PROVIDER_CHANNELS = {vocabulary.provider_slug: vocabulary.channel for vocabulary in VOCABULARIES.values()}

_WEBHOOK_TOTALS = {
    "webhook.requests.received": "requests_received",
    "webhook.requests.rejected": "requests_rejected",
    "webhook.events.received": "events_received",
    "webhook.events.failed": "events_failed",
}
_WEBHOOK_OUTCOMES = {"webhook.events.updated", "webhook.events.stale", "webhook.events.skipped"}
_STREAM_TOTALS = {
    "delivery_status.stream.opened": "streams_opened",
    "delivery_status.stream.closed": "streams_closed",
    "delivery_status.stream.subscribe_failed": "subscribe_failed",
    "projection.seed.failed": "seed_failed",
    "projection.updates.applied": "updates_applied",
}


def require_internal_secret(
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
) -> None:
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not x_internal_scheduler_secret or not hmac.compare_digest(
        x_internal_scheduler_secret,
        configured_secret,
    ):
        incr_metric("internal.auth_failed")
        log_event("internal_auth_failed", request_id=getattr(request.state, "request_id", None))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )


def summarize_delivery_metrics(counters: dict[str, int]) -> DeliveryMetricsResponse:
    webhooks = {
        provider: ProviderWebhookMetrics(channel=channel) for provider, channel in _PROVIDER_CHANNELS.items()
    }
    streams = {channel: ChannelStreamMetrics() for channel in VOCABULARIES}

    for key, count in counters.items():
        name, labels = split_metric_key(key)
        provider_metrics = webhooks.get(labels.get("provider_slug", ""))
        if provider_metrics is not None and name in _WEBHOOK_TOTALS:
            field_name = _WEBHOOK_TOTALS[name]
            setattr(provider_metrics, field_name, getattr(provider_metrics, field_name) + count)
        elif provider_metrics is not None and name in _WEBHOOK_OUTCOMES:
            result = labels.get("result", "unknown")
            provider_metrics.results[result] = provider_metrics.results.get(result, 0) + count
        elif name in _STREAM_TOTALS and labels.get("channel") in streams:
            channel_metrics = streams[labels["channel"]]
            field_name = _STREAM_TOTALS[name]
            setattr(channel_metrics, field_name, getattr(channel_metrics, field_name) + count)

    for channel_metrics in streams.values():
        channel_metrics.streams_active = max(0, channel_metrics.streams_opened - channel_metrics.streams_closed)

    return DeliveryMetricsResponse(
        webhooks=webhooks,
        streams=streams,
        active_streams=sum(channel_metrics.streams_active for channel_metrics in streams.values()),
        counters=counters,
    )


@router.get(
    "/delivery-metrics",
    response_model=DeliveryMetricsResponse,
    dependencies=[Depends(require_internal_secret)],
)
async def get_delivery_metrics(request: Request, reset: bool = False):
    summary = summarize_delivery_metrics(metrics_snapshot())
    if reset:
        reset_metrics()
        log_event(
            "delivery_metrics_reset",
            request_id=getattr(request.state, "request_id", None),
            counter_count=len(summary.counters),
        )
    return summary
