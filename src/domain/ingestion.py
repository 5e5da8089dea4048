from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from src.domain.delivery_store import DeliveryRecordStore
from src.domain.ingestion_errors import DeliveryStoreError
from src.domain.normalization import ChannelVocabulary, StatusTransition
from src.models.delivery import DeliveryRecord


IngestionResult = Literal[
    "updated",
    "stale_ignored",
    "unknown_message",
    "missing_message_id",
    "unmapped_event",
]


@dataclass(frozen=True)
class DeliveryEvent:
    """A provider event reduced to what the state machine needs."""

    message_id: str | None
    event: str | None
    occurred_at: str
    reason: str | None = None


@dataclass(frozen=True)
class IngestionOutcome:
    result: IngestionResult
    message_id: str | None
    event: str | None
    status: str | None = None
    record_id: str | None = None


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def epoch_to_iso(raw: Any) -> str | None:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    # Millisecond epochs are 13 digits.
    if value > 1e11:
        value = value / 1000.0
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def text_to_iso(text: str) -> str | None:
    # Brevo sends "YYYY-MM-DD HH:MM:SS" without an offset; those are taken as UTC.
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc).isoformat()
    return text


def event_timestamp(*candidates: Any) -> str:
    """
    First usable provider timestamp.

    Offset-aware ISO strings pass through, naive ones are stamped UTC, epochs
    are converted. Anything unparseable is skipped so it never reaches a
    timestamp column.
    """
    for raw in candidates:
        if raw is None or isinstance(raw, bool):
            continue
        if isinstance(raw, (int, float)):
            converted = epoch_to_iso(raw)
        else:
            text = str(raw).strip()
            if not text:
                continue
            if text.replace(".", "", 1).isdigit():
                converted = epoch_to_iso(text)
            else:
                converted = text_to_iso(text)
        if converted:
            return converted
    return now_iso()


def build_update(
    vocabulary: ChannelVocabulary,
    record: DeliveryRecord,
    transition: StatusTransition,
    occurred_at: str,
) -> dict[str, Any]:
    fields: dict[str, Any] = {"status": transition.status, "updated_at": now_iso()}
    if transition.timestamp_field and getattr(record, transition.timestamp_field, None) is None:
        fields[transition.timestamp_field] = occurred_at
    if transition.error_message is not None:
        fields["error_message"] = transition.error_message
    return fields


def apply_delivery_event(
    store: DeliveryRecordStore,
    vocabulary: ChannelVocabulary,
    event: DeliveryEvent,
    *,
    max_attempts: int = 3,
) -> IngestionOutcome:
    """
    Apply one provider event to the record it references.

    The update is guarded by the status the decision was made against, so a
    concurrent delivery for the same message cannot slip a stale status in
    between read and write. A lost race re-reads and decides again.
    """
    if not event.message_id:
        return IngestionOutcome("missing_message_id", None, event.event)

    transition = vocabulary.normalize(event.event, event.reason)
    if transition is None:
        return IngestionOutcome("unmapped_event", event.message_id, event.event)

    for _ in range(max(1, max_attempts)):
        record = store.find_by_external_id(vocabulary.channel, event.message_id)
        if record is None:
            return IngestionOutcome("unknown_message", event.message_id, transition.event)
        if not vocabulary.should_apply(record.status, transition):
            return IngestionOutcome(
                "stale_ignored",
                event.message_id,
                transition.event,
                status=record.status,
                record_id=record.id,
            )
        fields = build_update(vocabulary, record, transition, event.occurred_at)
        if store.update_by_id(vocabulary.channel, record.id, fields, expected_status=record.status):
            return IngestionOutcome(
                "updated",
                event.message_id,
                transition.event,
                status=transition.status,
                record_id=record.id,
            )

    raise DeliveryStoreError(
        f"{vocabulary.table} record for message {event.message_id} kept changing; "
        f"gave up after {max_attempts} attempts"
    )
