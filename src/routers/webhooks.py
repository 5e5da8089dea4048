from __future__ import annotations

import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.config import settings
from src.db import supabase
from src.domain.delivery_store import DeliveryRecordStore
from src.domain.ingestion import DeliveryEvent, IngestionOutcome, apply_delivery_event, event_timestamp
from src.domain.ingestion_errors import (
    DeliveryStoreError,
    IngestionError,
    MalformedPayloadError,
    MissingConfigurationError,
    WebhookAuthError,
    ingestion_error_body,
    ingestion_error_http_status,
)
from src.domain.normalization import EMAIL_VOCABULARY, WHATSAPP_VOCABULARY, ChannelVocabulary
from src.models.webhooks import (
    AisensyWebhookPayload,
    AisensyWebhookResponse,
    BrevoWebhookEvent,
    BrevoWebhookResponse,
    WebhookEventResult,
)
from src.observability import incr_metric, log_event


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

# Providers call from their own infrastructure, so any origin is allowed.
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-webhook-secret",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

_OUTCOME_METRICS = {
    "updated": "webhook.events.updated",
    "stale_ignored": "webhook.events.stale",
    "unknown_message": "webhook.events.skipped",
    "missing_message_id": "webhook.events.skipped",
    "unmapped_event": "webhook.events.skipped",
    "malformed_event": "webhook.events.skipped",
}


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _json_response(content: dict[str, Any], status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(content=content, status_code=status_code, headers=CORS_HEADERS)


def _error_response(*, provider: str, exc: IngestionError, request_id: str | None) -> JSONResponse:
    status_code = ingestion_error_http_status(exc)
    incr_metric("webhook.requests.rejected", provider_slug=provider, category=exc.category)
    log_event(
        "webhook_rejected",
        level=logging.ERROR if status_code >= 500 else logging.WARNING,
        request_id=request_id,
        provider_slug=provider,
        category=exc.category,
        status_code=status_code,
        error=str(exc),
    )
    return _json_response(ingestion_error_body(provider=provider, exc=exc), status_code=status_code)


def _delivery_store() -> DeliveryRecordStore:
    if supabase is None:
        raise MissingConfigurationError("Missing backend environment configuration")
    return DeliveryRecordStore(supabase)


def _verify_shared_secret_or_raise(request: Request, secret: str | None) -> None:
    if not secret:
        return
    # Brevo cannot send custom headers, so the secret may also ride in the URL.
    provided = request.headers.get("X-Webhook-Secret") or request.query_params.get("token")
    if not provided:
        raise WebhookAuthError("Missing webhook secret")
    if not hmac.compare_digest(provided, secret):
        raise WebhookAuthError("Invalid webhook secret")


def _parse_json_or_raise(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("Invalid JSON payload") from exc


def _brevo_items(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return [payload]
    raise MalformedPayloadError("Expected a JSON object or an array of events")


def _record_outcome(
    *,
    provider: str,
    outcome: IngestionOutcome,
    request_id: str | None,
) -> None:
    incr_metric(_OUTCOME_METRICS[outcome.result], provider_slug=provider, result=outcome.result)
    log_event(
        "webhook_event_updated" if outcome.result == "updated" else "webhook_event_skipped",
        request_id=request_id,
        provider_slug=provider,
        result=outcome.result,
        message_id=outcome.message_id,
        event_type=outcome.event,
        status=outcome.status,
        record_id=outcome.record_id,
    )


def _apply(
    store: DeliveryRecordStore,
    vocabulary: ChannelVocabulary,
    event: DeliveryEvent,
    request_id: str | None,
) -> IngestionOutcome:
    outcome = apply_delivery_event(
        store,
        vocabulary,
        event,
        max_attempts=settings.delivery_update_max_attempts,
    )
    _record_outcome(provider=vocabulary.provider_slug, outcome=outcome, request_id=request_id)
    return outcome


def _brevo_event(item: BrevoWebhookEvent) -> DeliveryEvent:
    return DeliveryEvent(
        message_id=(item.message_id or "").strip() or None,
        event=item.event,
        occurred_at=event_timestamp(item.date, item.ts_event),
        reason=item.reason,
    )


@router.options("/brevo")
async def brevo_webhook_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)


@router.post("/brevo")
async def ingest_brevo_webhook(request: Request):
    req_id = _request_id(request)
    provider = EMAIL_VOCABULARY.provider_slug
    incr_metric("webhook.requests.received", provider_slug=provider)
    try:
        _verify_shared_secret_or_raise(request, settings.brevo_webhook_secret)
        store = _delivery_store()
        items = _brevo_items(_parse_json_or_raise(await request.body()))
    except IngestionError as exc:
        return _error_response(provider=provider, exc=exc, request_id=req_id)

    log_event("webhook_received", request_id=req_id, provider_slug=provider, event_count=len(items))

    results: list[WebhookEventResult] = []
    failure: IngestionError | None = None
    for item in items:
        incr_metric("webhook.events.received", provider_slug=provider)
        try:
            parsed = BrevoWebhookEvent.model_validate(item)
        except ValidationError as exc:
            incr_metric(_OUTCOME_METRICS["malformed_event"], provider_slug=provider, result="malformed_event")
            log_event(
                "webhook_event_malformed",
                level=logging.WARNING,
                request_id=req_id,
                provider_slug=provider,
                error_count=exc.error_count(),
            )
            results.append(WebhookEventResult(result="malformed_event"))
            continue

        event = _brevo_event(parsed)
        try:
            outcome = _apply(store, EMAIL_VOCABULARY, event, req_id)
        except Exception as exc:
            # Sibling events still run; the batch is answered with a 5xx afterwards.
            failure = exc if isinstance(exc, IngestionError) else DeliveryStoreError(str(exc))
            incr_metric("webhook.events.failed", provider_slug=provider)
            log_event(
                "webhook_event_failed",
                level=logging.ERROR,
                request_id=req_id,
                provider_slug=provider,
                message_id=event.message_id,
                event_type=event.event,
                error=str(exc),
            )
            results.append(WebhookEventResult(message_id=event.message_id, event=event.event, result="failed"))
            continue
        results.append(
            WebhookEventResult(
                message_id=outcome.message_id,
                event=outcome.event,
                result=outcome.result,
                status=outcome.status,
            )
        )

    if failure is not None:
        return _error_response(provider=provider, exc=failure, request_id=req_id)

    body = BrevoWebhookResponse(success=True, processed=len(results), results=results)
    return _json_response(body.model_dump())


@router.options("/aisensy")
async def aisensy_webhook_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)


@router.post("/aisensy")
async def ingest_aisensy_webhook(request: Request):
    req_id = _request_id(request)
    provider = WHATSAPP_VOCABULARY.provider_slug
    incr_metric("webhook.requests.received", provider_slug=provider)
    try:
        _verify_shared_secret_or_raise(request, settings.aisensy_webhook_secret)
        store = _delivery_store()
        payload = _parse_json_or_raise(await request.body())
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Expected a JSON object")
        try:
            parsed = AisensyWebhookPayload.model_validate(payload)
        except ValidationError as exc:
            raise MalformedPayloadError(f"Invalid Aisensy payload: {exc.error_count()} errors") from exc
    except IngestionError as exc:
        return _error_response(provider=provider, exc=exc, request_id=req_id)

    incr_metric("webhook.events.received", provider_slug=provider)
    status_value = parsed.status.strip().lower() if parsed.status else None
    event = DeliveryEvent(
        message_id=(parsed.messageId or "").strip() or None,
        event=status_value,
        occurred_at=event_timestamp(parsed.timestamp),
        reason=parsed.error.message if parsed.error else None,
    )
    log_event(
        "webhook_received",
        request_id=req_id,
        provider_slug=provider,
        message_id=event.message_id,
        event_type=status_value,
    )

    try:
        outcome = _apply(store, WHATSAPP_VOCABULARY, event, req_id)
    except Exception as exc:
        failure = exc if isinstance(exc, IngestionError) else DeliveryStoreError(str(exc))
        incr_metric("webhook.events.failed", provider_slug=provider)
        return _error_response(provider=provider, exc=failure, request_id=req_id)

    body = AisensyWebhookResponse(received=True, status=status_value, result=outcome.result)
    return _json_response(body.model_dump())
