from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from src.domain.ingestion_errors import DeliveryStoreError
from src.domain.normalization import ChannelVocabulary, vocabulary_for
from src.models.delivery import DeliveryRecord, EmailMessageRecord, WhatsAppMessageRecord
from src.observability import log_event


_RECORD_MODELS: dict[str, type[DeliveryRecord]] = {
    "email": EmailMessageRecord,
    "whatsapp": WhatsAppMessageRecord,
}


def record_model_for(channel: str) -> type[DeliveryRecord]:
    vocabulary_for(channel)
    return _RECORD_MODELS[channel]


def parse_record(channel: str, row: dict[str, Any]) -> DeliveryRecord:
    try:
        return record_model_for(channel).model_validate(row)
    except ValidationError as exc:
        raise DeliveryStoreError(f"Malformed {channel} delivery record: {exc.error_count()} errors") from exc


class DeliveryRecordStore:
    """
    Delivery records kept in the `email_messages` / `whatsapp_messages` tables.

    Every lookup is scoped to one channel's table: provider message ids are
    only unique within a provider. Client failures are raised as
    DeliveryStoreError.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    def _table(self, vocabulary: ChannelVocabulary):
        return self._client.table(vocabulary.table)

    def find_by_external_id(self, channel: str, external_message_id: str) -> DeliveryRecord | None:
        vocabulary = vocabulary_for(channel)
        try:
            result = (
                self._table(vocabulary)
                .select("*")
                .eq(vocabulary.external_id_column, external_message_id)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise DeliveryStoreError(f"{vocabulary.table} lookup failed: {exc}") from exc
        if not result.data:
            return None
        return parse_record(channel, result.data[0])

    def update_by_id(
        self,
        channel: str,
        record_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> bool:
        """
        Apply `fields` in one UPDATE statement.

        With `expected_status` the row only changes while its status is still
        the one the caller decided against; False means no row matched.
        """
        vocabulary = vocabulary_for(channel)
        query = self._table(vocabulary).update(fields).eq("id", record_id)
        if expected_status is not None:
            query = query.eq("status", expected_status)
        try:
            result = query.execute()
        except Exception as exc:
            raise DeliveryStoreError(f"{vocabulary.table} update failed: {exc}") from exc
        return bool(result.data)

    def bulk_fetch_latest_by_conversation(
        self,
        channel: str,
        conversation_ids: Iterable[str],
    ) -> dict[str, DeliveryRecord]:
        vocabulary = vocabulary_for(channel)
        ids = sorted({str(value) for value in conversation_ids if value})
        if not ids:
            return {}
        try:
            result = (
                self._table(vocabulary)
                .select("*")
                .in_(vocabulary.conversation_column, ids)
                .order("created_at", desc=True)
                .execute()
            )
        except Exception as exc:
            raise DeliveryStoreError(f"{vocabulary.table} bulk fetch failed: {exc}") from exc

        latest: dict[str, DeliveryRecord] = {}
        seen: set[str] = set()
        # Rows arrive newest first; the first one seen per conversation wins.
        for row in result.data or []:
            conversation_id = row.get(vocabulary.conversation_column)
            if conversation_id is None or conversation_id in seen:
                continue
            seen.add(conversation_id)
            try:
                latest[conversation_id] = parse_record(channel, row)
            except DeliveryStoreError as exc:
                log_event(
                    "delivery_record_skipped",
                    level=logging.WARNING,
                    channel=channel,
                    record_id=row.get("id"),
                    error=str(exc),
                )
        return latest
