from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import uuid4

from src.observability import incr_metric, log_event


@dataclass(frozen=True)
class RecordChange:
    table: str | None
    event_type: str
    record: dict[str, Any]


ChangeHandler = Callable[[RecordChange], None]


class ChangeSubscription(Protocol):
    async def close(self) -> None: ...


class ChangeFeed(Protocol):
    async def subscribe(
        self,
        *,
        table: str,
        conversation_column: str,
        conversation_ids: Collection[str],
        server_side_filter: bool,
        on_change: ChangeHandler,
    ) -> ChangeSubscription: ...


def parse_postgres_change(payload: Any) -> RecordChange | None:
    """
    Reduce a Realtime `postgres_changes` message to the changed row.

    Tolerates both the raw wire envelope (`{"data": {"type", "record"}}`)
    and the client-shaped form (`{"eventType", "new"}`).
    """
    if not isinstance(payload, dict):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    event_type = data.get("type") or data.get("eventType")
    record = data.get("record")
    if not isinstance(record, dict):
        record = data.get("new")
    if not event_type or not isinstance(record, dict):
        return None
    return RecordChange(table=data.get("table"), event_type=str(event_type).upper(), record=record)


REALTIME_IN_FILTER_LIMIT = 100


def in_filter(column: str, values: Collection[str]) -> str:
    return f"{column}=in.({','.join(sorted(values))})"


class SupabaseRealtimeSubscription:
    def __init__(self, client: Any, channel: Any, topic: str) -> None:
        self._client = client
        self._channel = channel
        self.topic = topic
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.remove_channel(self._channel)
        incr_metric("realtime.subscriptions.closed")
        log_event("realtime_subscription_closed", topic=self.topic)


class SupabaseChangeFeed:
    """Change notifications from Supabase Realtime, one channel per subscription."""

    def __init__(self, client: Any, *, schema: str = "public") -> None:
        self._client = client
        self._schema = schema

    async def subscribe(
        self,
        *,
        table: str,
        conversation_column: str,
        conversation_ids: Collection[str],
        server_side_filter: bool,
        on_change: ChangeHandler,
    ) -> SupabaseRealtimeSubscription:
        tracked = frozenset(conversation_ids)
        topic = f"{table}-status-{uuid4().hex[:12]}"
        # Realtime rejects `in` filters over its value limit without raising here.
        server_side_filter = server_side_filter and len(tracked) <= REALTIME_IN_FILTER_LIMIT
        row_filter = in_filter(conversation_column, tracked) if server_side_filter else None

        def _dispatch(payload: Any) -> None:
            change = parse_postgres_change(payload)
            if change is None:
                log_event("realtime_change_unparsed", level=logging.WARNING, topic=topic)
                return
            # Tables without a server-side IN filter deliver every row change.
            if change.record.get(conversation_column) not in tracked:
                return
            on_change(change)

        channel = self._client.channel(topic)
        channel.on_postgres_changes(
            "*",
            callback=_dispatch,
            table=table,
            schema=self._schema,
            filter=row_filter,
        )
        await channel.subscribe()
        incr_metric("realtime.subscriptions.opened", table=table)
        log_event(
            "realtime_subscription_opened",
            topic=topic,
            table=table,
            conversation_count=len(tracked),
            server_side_filter=server_side_filter,
        )
        return SupabaseRealtimeSubscription(self._client, channel, topic)
