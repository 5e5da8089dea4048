from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from functools import partial
from types import MappingProxyType

from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from src.domain.delivery_store import DeliveryRecordStore, record_model_for
from src.domain.ingestion_errors import DeliveryStoreError
from src.domain.normalization import ChannelVocabulary
from src.models.delivery import DeliveryRecord
from src.observability import incr_metric, log_event
from src.realtime.change_feed import ChangeFeed, ChangeSubscription, RecordChange


UpdateListener = Callable[[str, DeliveryRecord], None]


class DeliveryStatusProjection:
    """
    Latest delivery record per conversation for one viewer.

    Owned by the viewer: `track` acquires a change subscription for the given
    conversation ids and `close` releases it. Each change replaces exactly one
    entry; readers get an immutable snapshot of the mapping.
    """

    def __init__(
        self,
        *,
        vocabulary: ChannelVocabulary,
        store: DeliveryRecordStore,
        feed: ChangeFeed,
        on_update: UpdateListener | None = None,
    ) -> None:
        self._vocabulary = vocabulary
        self._store = store
        self._feed = feed
        self._on_update = on_update
        self._record_model = record_model_for(vocabulary.channel)
        self._records: dict[str, DeliveryRecord] = {}
        self._pending: dict[str, DeliveryRecord] = {}
        self._tracked: frozenset[str] = frozenset()
        self._subscription: ChangeSubscription | None = None
        self._generation = 0
        self._loading = False
        self._error: str | None = None

    @property
    def channel(self) -> str:
        return self._vocabulary.channel

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def tracked(self) -> frozenset[str]:
        return self._tracked

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    def snapshot(self) -> Mapping[str, DeliveryRecord]:
        return MappingProxyType(self._records)

    async def track(self, conversation_ids: Iterable[str]) -> None:
        ids = frozenset(str(value) for value in conversation_ids if value)
        if ids == self._tracked and (self._subscription is not None or not ids):
            return

        await self._detach()
        self._generation += 1
        generation = self._generation
        self._tracked = ids
        self._records = {}
        self._pending = {}
        self._error = None
        if not ids:
            self._loading = False
            return

        self._loading = True
        try:
            self._subscription = await self._feed.subscribe(
                table=self._vocabulary.table,
                conversation_column=self._vocabulary.conversation_column,
                conversation_ids=ids,
                server_side_filter=self._vocabulary.server_side_filter,
                on_change=partial(self._apply_change, generation),
            )
        except Exception:
            self._tracked = frozenset()
            self._loading = False
            raise
        try:
            seeded = await run_in_threadpool(
                self._store.bulk_fetch_latest_by_conversation,
                self._vocabulary.channel,
                ids,
            )
        except DeliveryStoreError as exc:
            seeded = {}
            if generation == self._generation:
                self._error = str(exc)
            incr_metric("projection.seed.failed", channel=self.channel)
            log_event(
                "projection_seed_failed",
                level=logging.WARNING,
                channel=self.channel,
                conversation_count=len(ids),
                error=str(exc),
            )

        if generation != self._generation:
            return
        # Changes that arrived while the fetch was outstanding are newer than it.
        merged = dict(seeded)
        merged.update(self._pending)
        self._pending = {}
        self._records = merged
        self._loading = False
        log_event(
            "projection_seeded",
            channel=self.channel,
            conversation_count=len(ids),
            found=len(merged),
        )

    def _apply_change(self, generation: int, change: RecordChange) -> None:
        if generation != self._generation:
            return
        if change.event_type not in {"INSERT", "UPDATE"}:
            return
        conversation_id = change.record.get(self._vocabulary.conversation_column)
        if conversation_id not in self._tracked:
            return
        try:
            record = self._record_model.model_validate(change.record)
        except ValidationError as exc:
            log_event(
                "projection_change_invalid",
                level=logging.WARNING,
                channel=self.channel,
                record_id=change.record.get("id"),
                error_count=exc.error_count(),
            )
            return

        if self._loading:
            self._pending[conversation_id] = record
            return
        updated = dict(self._records)
        updated[conversation_id] = record
        self._records = updated
        incr_metric("projection.updates.applied", channel=self.channel)
        if self._on_update is not None:
            self._on_update(conversation_id, record)

    async def _detach(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    async def close(self) -> None:
        self._generation += 1
        self._tracked = frozenset()
        self._pending = {}
        self._loading = False
        await self._detach()

    async def __aenter__(self) -> DeliveryStatusProjection:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
