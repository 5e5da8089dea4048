from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


Channel = Literal["email", "whatsapp"]
CHANNELS: tuple[Channel, ...] = ("email", "whatsapp")

EmailStatus = Literal["sent", "delivered", "opened", "bounced", "failed", "spam", "unsubscribed"]
WhatsAppStatus = Literal["pending", "sent", "delivered", "read", "failed"]


@dataclass(frozen=True)
class StatusRule:
    """One canonical status of a channel's state machine."""

    status: str
    stage: int
    timestamp_field: str | None = None
    default_reason: str | None = None
    terminal: bool = False

    @property
    def is_failure(self) -> bool:
        return self.default_reason is not None


@dataclass(frozen=True)
class StatusTransition:
    channel: Channel
    event: str
    status: str
    timestamp_field: str | None = None
    error_message: str | None = None
    mapped: bool = True


@dataclass(frozen=True)
class ChannelVocabulary:
    """
    Declarative status table for one channel.

    `events` maps lower-cased provider event names to canonical statuses.
    Unmapped events either produce a verbatim best-effort transition
    (`record_unmapped`) or nothing at all.
    """

    channel: Channel
    provider_slug: str
    table: str
    recipient_column: str
    initial_status: str
    statuses: dict[str, StatusRule]
    events: dict[str, str]
    record_unmapped: bool
    server_side_filter: bool
    conversation_column: str = "interview_id"
    external_id_column: str = "message_id"
    timestamp_fields: tuple[str, ...] = field(default=())

    def rule_for(self, status: str | None) -> StatusRule | None:
        if not status:
            return None
        return self.statuses.get(status)

    def normalize(self, event_name: str | None, reason: str | None = None) -> StatusTransition | None:
        key = str(event_name or "").strip().lower()
        status = self.events.get(key)
        if status is None:
            if not self.record_unmapped:
                return None
            return StatusTransition(
                channel=self.channel,
                event=key,
                status=key or "unknown",
                mapped=False,
            )
        rule = self.statuses[status]
        error_message = None
        if rule.is_failure:
            cleaned = str(reason).strip() if reason is not None else ""
            error_message = cleaned or rule.default_reason
        return StatusTransition(
            channel=self.channel,
            event=key,
            status=rule.status,
            timestamp_field=rule.timestamp_field,
            error_message=error_message,
        )

    def should_apply(self, current_status: str | None, transition: StatusTransition) -> bool:
        """Forward-only check of `transition` against the stored status."""
        current = self.rule_for(current_status)
        if not transition.mapped:
            if transition.status == current_status:
                return False
            if current is None:
                return True
            initial = self.statuses[self.initial_status]
            return not current.terminal and current.stage <= initial.stage
        target = self.statuses[transition.status]
        if current is None:
            return True
        if current.terminal:
            return False
        return target.stage > current.stage


EMAIL_VOCABULARY = ChannelVocabulary(
    channel="email",
    provider_slug="brevo",
    table="email_messages",
    recipient_column="recipient_email",
    initial_status="sent",
    statuses={
        "sent": StatusRule("sent", 0, "sent_at"),
        "delivered": StatusRule("delivered", 1, "delivered_at"),
        # Recipients still complain or unsubscribe after opening.
        "opened": StatusRule("opened", 2, "opened_at"),
        "bounced": StatusRule("bounced", 3, "bounced_at", "Email bounced", terminal=True),
        "failed": StatusRule("failed", 3, "failed_at", "Email failed to send", terminal=True),
        "spam": StatusRule("spam", 3, "complained_at", "Marked as spam by recipient", terminal=True),
        "unsubscribed": StatusRule("unsubscribed", 3, "unsubscribed_at", terminal=True),
    },
    events={
        "request": "sent",
        "delivered": "delivered",
        "opened": "opened",
        "unique_opened": "opened",
        "hard_bounce": "bounced",
        "soft_bounce": "bounced",
        "blocked": "failed",
        "invalid_email": "failed",
        "error": "failed",
        "spam": "spam",
        "complaint": "spam",
        "unsubscribed": "unsubscribed",
    },
    record_unmapped=False,
    server_side_filter=True,
    timestamp_fields=(
        "sent_at",
        "delivered_at",
        "opened_at",
        "bounced_at",
        "failed_at",
        "complained_at",
        "unsubscribed_at",
    ),
)

WHATSAPP_VOCABULARY = ChannelVocabulary(
    channel="whatsapp",
    provider_slug="aisensy",
    table="whatsapp_messages",
    recipient_column="candidate_phone",
    initial_status="sent",
    statuses={
        "pending": StatusRule("pending", 0),
        "sent": StatusRule("sent", 1, "sent_at"),
        "delivered": StatusRule("delivered", 2, "delivered_at"),
        "read": StatusRule("read", 3, "read_at", terminal=True),
        "failed": StatusRule("failed", 4, "failed_at", "Delivery failed", terminal=True),
    },
    events={
        "pending": "pending",
        "sent": "sent",
        "delivered": "delivered",
        "read": "read",
        "failed": "failed",
        "undelivered": "failed",
    },
    record_unmapped=True,
    server_side_filter=False,
    timestamp_fields=("sent_at", "delivered_at", "read_at", "failed_at"),
)

VOCABULARIES: dict[str, ChannelVocabulary] = {
    EMAIL_VOCABULARY.channel: EMAIL_VOCABULARY,
    WHATSAPP_VOCABULARY.channel: WHATSAPP_VOCABULARY,
}


def vocabulary_for(channel: str) -> ChannelVocabulary:
    try:
        return VOCABULARIES[channel]
    except KeyError:
        raise ValueError(f"Unknown delivery channel: {channel}") from None


def normalize_email_event(event_name: str | None, reason: str | None = None) -> StatusTransition | None:
    return EMAIL_VOCABULARY.normalize(event_name, reason)


def normalize_whatsapp_status(status: str | None, reason: str | None = None) -> StatusTransition | None:
    return WHATSAPP_VOCABULARY.normalize(status, reason)
