from __future__ import annotations

from src.models.delivery import DeliveryRecord, DeliveryStatusSummary


# status -> (label, description); failure descriptions give way to the stored error_message.
_EMAIL_LABELS: dict[str, tuple[str, str]] = {
    "sent": ("Sent", "Email sent to server"),
    "delivered": ("Delivered", "Email delivered to inbox"),
    "opened": ("Opened", "Recipient opened the email"),
    "bounced": ("Bounced", "Email bounced"),
    "failed": ("Failed", "Email failed to send"),
    "spam": ("Spam", "Marked as spam by recipient"),
    "unsubscribed": ("Unsubscribed", "Recipient unsubscribed"),
}
_EMAIL_ERROR_STATUSES = {"bounced", "failed"}
_EMAIL_HEADLINE_ORDER = (
    ("opened", "opened_at"),
    ("delivered", "delivered_at"),
    ("bounced", "bounced_at"),
    ("failed", "failed_at"),
    ("spam", "complained_at"),
    ("unsubscribed", "unsubscribed_at"),
)

_WHATSAPP_LABELS: dict[str, tuple[str, str]] = {
    "sent": ("Sent", "Message sent"),
    "delivered": ("Delivered", "Message delivered"),
    "read": ("Read", "Message read"),
    "failed": ("Failed", "Message failed to send"),
}
_WHATSAPP_ERROR_STATUSES = {"failed"}
_WHATSAPP_HEADLINE_ORDER = (
    ("read", "read_at"),
    ("delivered", "delivered_at"),
    ("failed", "failed_at"),
)


def _headline(record: DeliveryRecord, order: tuple[tuple[str, str], ...]) -> tuple[str, object]:
    for name, field_name in order:
        value = getattr(record, field_name, None)
        if value is not None:
            return name, value
    return "sent", record.sent_at


def summarize_email(record: DeliveryRecord) -> DeliveryStatusSummary:
    label, description = _EMAIL_LABELS.get(record.status, (record.status, "Unknown status"))
    if record.status in _EMAIL_ERROR_STATUSES and record.error_message:
        description = record.error_message
    event, at = _headline(record, _EMAIL_HEADLINE_ORDER)
    return DeliveryStatusSummary(label=label, description=description, headline_event=event, headline_at=at)


def summarize_whatsapp(record: DeliveryRecord) -> DeliveryStatusSummary:
    label, description = _WHATSAPP_LABELS.get(record.status, ("Pending", "Waiting for status update"))
    if record.status in _WHATSAPP_ERROR_STATUSES and record.error_message:
        description = record.error_message
    event, at = _headline(record, _WHATSAPP_HEADLINE_ORDER)
    return DeliveryStatusSummary(label=label, description=description, headline_event=event, headline_at=at)


def summarize(channel: str, record: DeliveryRecord) -> DeliveryStatusSummary:
    if channel == "email":
        return summarize_email(record)
    return summarize_whatsapp(record)
