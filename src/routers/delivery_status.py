from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status

from src.config import settings
from src.db import create_async_supabase, supabase
from src.domain.delivery_store import DeliveryRecordStore
from src.domain.ingestion_errors import DeliveryStoreError, MissingConfigurationError
from src.domain.normalization import VOCABULARIES, ChannelVocabulary
from src.domain.status_display import summarize
from src.models.delivery import DeliveryRecord, DeliveryStatusItem, DeliveryStatusListResponse
from src.observability import incr_metric, log_event
from src.realtime.change_feed import ChangeFeed, SupabaseChangeFeed
from src.realtime.projection import DeliveryStatusProjection


router = APIRouter(prefix="/api/delivery-status", tags=["delivery-status"])

_WS_UNKNOWN_CHANNEL = 4404
_WS_UNAVAILABLE = 1011


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _vocabulary_or_404(channel: str) -> ChannelVocabulary:
    vocabulary = VOCABULARIES.get(channel)
    if vocabulary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown channel: {channel}")
    return vocabulary


def _delivery_store() -> DeliveryRecordStore:
    if supabase is None:
        raise MissingConfigurationError("Missing backend environment configuration")
    return DeliveryRecordStore(supabase)


def _bounded_conversation_ids(values: list[Any]) -> list[str]:
    limit = settings.delivery_status_max_conversations
    ids: dict[str, None] = {}
    for value in values:
        text = str(value).strip() if value is not None else ""
        if not text or text in ids:
            continue
        if len(ids) >= limit:
            raise ValueError(f"At most {limit} conversation ids can be tracked")
        ids[text] = None
    return list(ids)


def _status_item(channel: str, conversation_id: str, record: DeliveryRecord) -> DeliveryStatusItem:
    return DeliveryStatusItem(interview_id=conversation_id, record=record, summary=summarize(channel, record))


async def get_change_feed(app: FastAPI) -> ChangeFeed:
    feed = getattr(app.state, "change_feed", None)
    if feed is not None:
        return feed
    client = await create_async_supabase()
    if client is None:
        raise MissingConfigurationError("Missing backend environment configuration")
    feed = SupabaseChangeFeed(client, schema=settings.realtime_schema)
    app.state.change_feed = feed
    return feed


@router.get("/{channel}", response_model=DeliveryStatusListResponse)
async def list_delivery_status(
    channel: str,
    request: Request,
    conversation_id: list[str] = Query(default=[]),
):
    req_id = _request_id(request)
    vocabulary = _vocabulary_or_404(channel)
    try:
        ids = _bounded_conversation_ids(conversation_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        latest = _delivery_store().bulk_fetch_latest_by_conversation(vocabulary.channel, ids)
    except (DeliveryStoreError, MissingConfigurationError) as exc:
        log_event(
            "delivery_status_fetch_failed",
            level=logging.ERROR,
            request_id=req_id,
            channel=vocabulary.channel,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"type": exc.category, "channel": vocabulary.channel, "message": str(exc)},
        ) from exc

    items = [
        _status_item(vocabulary.channel, conversation, latest[conversation])
        for conversation in ids
        if conversation in latest
    ]
    return DeliveryStatusListResponse(
        channel=vocabulary.channel,
        requested=len(ids),
        found=len(items),
        items=items,
    )


def _snapshot_message(projection: DeliveryStatusProjection) -> dict[str, Any]:
    records = projection.snapshot()
    return {
        "type": "snapshot",
        "channel": projection.channel,
        "loading": projection.loading,
        "error": projection.error,
        "tracked": sorted(projection.tracked),
        "items": [
            _status_item(projection.channel, conversation, records[conversation]).model_dump(mode="json")
            for conversation in sorted(records)
        ],
    }


def _update_message(channel: str, conversation_id: str, record: DeliveryRecord) -> dict[str, Any]:
    return {
        "type": "update",
        "channel": channel,
        "item": _status_item(channel, conversation_id, record).model_dump(mode="json"),
    }


def _parse_track_request(raw: str) -> list[str]:
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid JSON message") from exc
    if not isinstance(message, dict) or not isinstance(message.get("conversation_ids"), list):
        raise ValueError("Expected {\"conversation_ids\": [...]}")
    return _bounded_conversation_ids(message["conversation_ids"])


async def _retrack(projection: DeliveryStatusProjection, ids: list[str]) -> dict[str, Any]:
    """Re-point the projection at `ids`; a feed failure leaves the viewer connected without live status."""
    try:
        await projection.track(ids)
    except Exception as exc:
        incr_metric("delivery_status.stream.subscribe_failed", channel=projection.channel)
        log_event(
            "delivery_status_stream_subscribe_failed",
            level=logging.ERROR,
            channel=projection.channel,
            conversation_count=len(ids),
            error=str(exc),
        )
        return {"type": "error", "message": "Live delivery status is unavailable"}
    return _snapshot_message(projection)


@router.websocket("/{channel}/stream")
async def stream_delivery_status(websocket: WebSocket, channel: str):
    await websocket.accept()
    vocabulary = VOCABULARIES.get(channel)
    if vocabulary is None:
        await websocket.close(code=_WS_UNKNOWN_CHANNEL, reason=f"Unknown channel: {channel}")
        return
    try:
        store = _delivery_store()
        feed = await get_change_feed(websocket.app)
    except MissingConfigurationError as exc:
        log_event("delivery_status_stream_unavailable", level=logging.ERROR, channel=channel, error=str(exc))
        await websocket.close(code=_WS_UNAVAILABLE, reason=str(exc))
        return

    updates: asyncio.Queue[tuple[str, DeliveryRecord]] = asyncio.Queue()
    projection = DeliveryStatusProjection(
        vocabulary=vocabulary,
        store=store,
        feed=feed,
        on_update=lambda conversation, record: updates.put_nowait((conversation, record)),
    )
    incr_metric("delivery_status.stream.opened", channel=channel)
    log_event("delivery_status_stream_opened", channel=channel)

    receiver = asyncio.create_task(websocket.receive_text())
    sender = asyncio.create_task(updates.get())
    try:
        while True:
            done, _ = await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
            if sender in done:
                conversation, record = sender.result()
                await websocket.send_json(_update_message(channel, conversation, record))
                sender = asyncio.create_task(updates.get())
            if receiver in done:
                raw = receiver.result()
                try:
                    ids = _parse_track_request(raw)
                except ValueError as exc:
                    await websocket.send_json({"type": "error", "message": str(exc)})
                else:
                    # Updates for the previous id set, queued or already taken by
                    # the sender, are superseded by the new snapshot.
                    sender.cancel()
                    await asyncio.gather(sender, return_exceptions=True)
                    reply = await _retrack(projection, ids)
                    while not updates.empty():
                        updates.get_nowait()
                    sender = asyncio.create_task(updates.get())
                    await websocket.send_json(reply)
                receiver = asyncio.create_task(websocket.receive_text())
    except WebSocketDisconnect:
        log_event("delivery_status_stream_disconnected", channel=channel)
    finally:
        for task in (receiver, sender):
            task.cancel()
        await asyncio.gather(receiver, sender, return_exceptions=True)
        await projection.close()
        incr_metric("delivery_status.stream.closed", channel=channel)
