import pytest

from src.domain.normalization import (
    EMAIL_VOCABULARY,
    WHATSAPP_VOCABULARY,
    normalize_email_event,
    normalize_whatsapp_status,
    vocabulary_for,
)


def test_email_event_normalization_contract():
    assert normalize_email_event("delivered").status == "delivered"
    assert normalize_email_event("opened").status == "opened"
    assert normalize_email_event("unique_opened").status == "opened"
    assert normalize_email_event("hard_bounce").status == "bounced"
    assert normalize_email_event("soft_bounce").status == "bounced"
    assert normalize_email_event("blocked").status == "failed"
    assert normalize_email_event("invalid_email").status == "failed"
    assert normalize_email_event("error").status == "failed"
    assert normalize_email_event("spam").status == "spam"
    assert normalize_email_event("complaint").status == "spam"
    assert normalize_email_event("unsubscribed").status == "unsubscribed"
    assert normalize_email_event("click") is None
    assert normalize_email_event(None) is None


def test_every_known_email_event_stamps_exactly_one_timestamp():
    for event_name in EMAIL_VOCABULARY.events:
        transition = normalize_email_event(event_name)
        assert transition is not None
        assert transition.mapped
        assert transition.timestamp_field in EMAIL_VOCABULARY.timestamp_fields


def test_hard_bounce_targets_bounced_at_only():
    transition = normalize_email_event("hard_bounce", "mailbox does not exist")
    assert transition.status == "bounced"
    assert transition.timestamp_field == "bounced_at"
    assert transition.error_message == "mailbox does not exist"


def test_email_failure_reason_falls_back_per_status():
    assert normalize_email_event("soft_bounce").error_message == "Email bounced"
    assert normalize_email_event("blocked", "  ").error_message == "Email failed to send"
    assert normalize_email_event("complaint").error_message == "Marked as spam by recipient"
    assert normalize_email_event("delivered", "ignored").error_message is None
    assert normalize_email_event("unsubscribed", "ignored").error_message is None


def test_email_event_names_are_case_insensitive():
    assert normalize_email_event("Hard_Bounce") == normalize_email_event("hard_bounce")


@pytest.mark.parametrize("status", ["pending", "sent", "delivered", "read", "failed"])
def test_whatsapp_status_case_is_ignored(status):
    assert normalize_whatsapp_status(status.upper()) == normalize_whatsapp_status(status)


def test_whatsapp_status_normalization_contract():
    assert normalize_whatsapp_status("READ").status == "read"
    assert normalize_whatsapp_status("read").timestamp_field == "read_at"
    undelivered = normalize_whatsapp_status("undelivered", "no network")
    assert undelivered.status == "failed"
    assert undelivered.timestamp_field == "failed_at"
    assert undelivered.error_message == "no network"
    assert normalize_whatsapp_status("failed").error_message == "Delivery failed"


def test_unmapped_whatsapp_status_is_kept_verbatim():
    transition = normalize_whatsapp_status("Enqueued")
    assert transition.status == "enqueued"
    assert transition.mapped is False
    assert transition.timestamp_field is None
    assert normalize_whatsapp_status(None).status == "unknown"


def test_forward_only_transitions():
    delivered = normalize_whatsapp_status("delivered")
    sent = normalize_whatsapp_status("sent")
    assert WHATSAPP_VOCABULARY.should_apply("sent", delivered)
    assert not WHATSAPP_VOCABULARY.should_apply("delivered", sent)
    assert not WHATSAPP_VOCABULARY.should_apply("delivered", delivered)
    assert not WHATSAPP_VOCABULARY.should_apply("read", normalize_whatsapp_status("failed"))
    assert WHATSAPP_VOCABULARY.should_apply("delivered", normalize_whatsapp_status("failed"))

    assert EMAIL_VOCABULARY.should_apply("sent", normalize_email_event("opened"))
    assert not EMAIL_VOCABULARY.should_apply("opened", normalize_email_event("delivered"))
    assert EMAIL_VOCABULARY.should_apply("opened", normalize_email_event("complaint"))
    assert not EMAIL_VOCABULARY.should_apply("bounced", normalize_email_event("opened"))
    assert not EMAIL_VOCABULARY.should_apply("delivered", normalize_email_event("request"))


def test_unmapped_status_never_overrides_progressed_record():
    enqueued = normalize_whatsapp_status("enqueued")
    assert WHATSAPP_VOCABULARY.should_apply("sent", enqueued)
    assert WHATSAPP_VOCABULARY.should_apply("pending", enqueued)
    assert not WHATSAPP_VOCABULARY.should_apply("delivered", enqueued)
    assert not WHATSAPP_VOCABULARY.should_apply("enqueued", enqueued)
    # A known status always moves a record out of an unrecognised one.
    assert WHATSAPP_VOCABULARY.should_apply("enqueued", normalize_whatsapp_status("sent"))


def test_vocabulary_lookup():
    assert vocabulary_for("email").table == "email_messages"
    assert vocabulary_for("whatsapp").table == "whatsapp_messages"
    assert EMAIL_VOCABULARY.server_side_filter is True
    assert WHATSAPP_VOCABULARY.server_side_filter is False
    with pytest.raises(ValueError):
        vocabulary_for("sms")
