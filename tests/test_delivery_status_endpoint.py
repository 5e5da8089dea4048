import pytest
from fastapi.testclient import TestClient

from src.config import settings
from src.main import app
from src.routers import delivery_status as delivery_status_router
from tests.realtime_fakes import FakeChangeFeed
from tests.supabase_fakes import FakeSupabase, email_row, whatsapp_row


@pytest.fixture
def feed(monkeypatch):
    fake_feed = FakeChangeFeed()
    monkeypatch.setattr(app.state, "change_feed", fake_feed, raising=False)
    return fake_feed


def _client(monkeypatch, tables):
    fake = FakeSupabase(tables)
    monkeypatch.setattr(delivery_status_router, "supabase", fake)
    return fake, TestClient(app)


def test_list_returns_latest_record_per_conversation(monkeypatch):
    _, client = _client(
        monkeypatch,
        {
            "email_messages": [
                email_row(id="a-old", interview_id="A", status="bounced", created_at="2024-01-01T00:00:01+00:00"),
                email_row(
                    id="a-new",
                    interview_id="A",
                    status="delivered",
                    delivered_at="2024-01-01T00:00:04+00:00",
                    created_at="2024-01-01T00:00:03+00:00",
                ),
                email_row(
                    id="b1",
                    interview_id="B",
                    status="bounced",
                    bounced_at="2024-01-01T00:00:02+00:00",
                    error_message="mailbox full",
                ),
            ]
        },
    )

    response = client.get("/api/delivery-status/email?conversation_id=A&conversation_id=B&conversation_id=C")

    assert response.status_code == 200
    body = response.json()
    assert body["channel"] == "email"
    assert body["requested"] == 3
    assert body["found"] == 2
    first, second = body["items"]
    assert first["interview_id"] == "A"
    assert first["record"]["id"] == "a-new"
    assert first["summary"]["label"] == "Delivered"
    assert first["summary"]["headline_event"] == "delivered"
    assert second["summary"]["label"] == "Bounced"
    assert second["summary"]["description"] == "mailbox full"


def test_list_whatsapp_uses_whatsapp_table(monkeypatch):
    _, client = _client(monkeypatch, {"whatsapp_messages": [whatsapp_row(status="read", read_at="2024-01-01T00:00:00Z")]})

    response = client.get("/api/delivery-status/whatsapp?conversation_id=int-1")

    assert response.status_code == 200
    item = response.json()["items"][0]
    assert item["record"]["candidate_phone"] == "919000011111"
    assert item["summary"]["label"] == "Read"


def test_unknown_channel_is_404(monkeypatch):
    _, client = _client(monkeypatch, {})

    assert client.get("/api/delivery-status/sms?conversation_id=A").status_code == 404


def test_too_many_conversations_is_400(monkeypatch):
    _, client = _client(monkeypatch, {"email_messages": []})
    monkeypatch.setattr(settings, "delivery_status_max_conversations", 2)

    response = client.get("/api/delivery-status/email?conversation_id=A&conversation_id=B&conversation_id=C")
    many = "&".join(f"conversation_id=id-{index}" for index in range(1000))
    flood = client.get(f"/api/delivery-status/email?{many}")

    assert response.status_code == 400
    assert flood.status_code == 400
    assert "At most 2" in flood.json()["detail"]


def test_store_failure_is_500(monkeypatch):
    fake, client = _client(monkeypatch, {"email_messages": [email_row()]})
    fake.failing_tables.add("email_messages")

    response = client.get("/api/delivery-status/email?conversation_id=int-1")

    assert response.status_code == 500
    assert response.json()["detail"]["type"] == "downstream_failure"


def test_stream_sends_snapshot_then_updates_and_releases_subscription(monkeypatch, feed):
    _, client = _client(
        monkeypatch,
        {
            "email_messages": [
                email_row(id="a1", interview_id="A", message_id="ma"),
                email_row(id="b1", interview_id="B", message_id="mb", status="opened"),
            ]
        },
    )

    with client.websocket_connect("/api/delivery-status/email/stream") as ws:
        ws.send_json({"conversation_ids": ["A", "B"]})
        snapshot = ws.receive_json()
        assert snapshot["type"] == "snapshot"
        assert snapshot["loading"] is False
        assert snapshot["tracked"] == ["A", "B"]
        assert [item["record"]["status"] for item in snapshot["items"]] == ["sent", "opened"]

        feed.emit_threadsafe(
            "email_messages",
            email_row(id="a1", interview_id="A", message_id="ma", status="delivered"),
        )
        update = ws.receive_json()
        assert update["type"] == "update"
        assert update["item"]["interview_id"] == "A"
        assert update["item"]["record"]["status"] == "delivered"
        assert update["item"]["summary"]["label"] == "Delivered"
        assert len(feed.active) == 1

    assert feed.active == []


def test_stream_rejects_bad_track_message(monkeypatch, feed):
    _, client = _client(monkeypatch, {"email_messages": []})

    with client.websocket_connect("/api/delivery-status/email/stream") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"
        ws.send_json({"ids": ["A"]})
        assert ws.receive_json()["type"] == "error"

    assert feed.subscribe_calls == []


def test_stream_stays_open_when_subscription_fails(monkeypatch, feed):
    _, client = _client(monkeypatch, {"email_messages": [email_row(id="a1", interview_id="A")]})
    feed.fail_subscribe = True

    with client.websocket_connect("/api/delivery-status/email/stream") as ws:
        ws.send_json({"conversation_ids": ["A"]})
        failure = ws.receive_json()
        assert failure["type"] == "error"
        assert failure["message"] == "Live delivery status is unavailable"

        feed.fail_subscribe = False
        ws.send_json({"conversation_ids": ["A"]})
        snapshot = ws.receive_json()
        assert snapshot["type"] == "snapshot"
        assert snapshot["tracked"] == ["A"]
        assert len(feed.active) == 1

    assert feed.active == []


def test_stream_drops_updates_from_previous_id_set(monkeypatch, feed):
    _, client = _client(
        monkeypatch,
        {
            "email_messages": [
                email_row(id="a1", interview_id="A", message_id="ma"),
                email_row(id="b1", interview_id="B", message_id="mb"),
            ]
        },
    )

    with client.websocket_connect("/api/delivery-status/email/stream") as ws:
        ws.send_json({"conversation_ids": ["A"]})
        assert ws.receive_json()["tracked"] == ["A"]

        feed.change_on_close = ("email_messages", email_row(id="a1", interview_id="A", status="opened"))
        ws.send_json({"conversation_ids": ["B"]})
        snapshot = ws.receive_json()
        assert snapshot["type"] == "snapshot"
        assert snapshot["tracked"] == ["B"]

        feed.change_on_close = None
        feed.emit_threadsafe("email_messages", email_row(id="b1", interview_id="B", status="delivered"))
        update = ws.receive_json()
        assert update["type"] == "update"
        assert update["item"]["interview_id"] == "B"


def test_duplicate_ids_do_not_count_toward_the_limit(monkeypatch):
    _, client = _client(monkeypatch, {"email_messages": [email_row(id="a1", interview_id="A")]})
    monkeypatch.setattr(settings, "delivery_status_max_conversations", 2)

    response = client.get(
        "/api/delivery-status/email?conversation_id=A&conversation_id=A&conversation_id=B&conversation_id=A"
    )

    assert response.status_code == 200
    assert response.json()["requested"] == 2


def test_stream_retrack_replaces_subscription(monkeypatch, feed):
    _, client = _client(
        monkeypatch,
        {"whatsapp_messages": [whatsapp_row(id="wa-1", interview_id="A"), whatsapp_row(id="wa-2", interview_id="B")]},
    )

    with client.websocket_connect("/api/delivery-status/whatsapp/stream") as ws:
        ws.send_json({"conversation_ids": ["A"]})
        assert ws.receive_json()["tracked"] == ["A"]
        ws.send_json({"conversation_ids": ["B"]})
        snapshot = ws.receive_json()
        assert snapshot["tracked"] == ["B"]
        assert [item["interview_id"] for item in snapshot["items"]] == ["B"]
        assert feed.subscriptions[0].closed
        assert len(feed.active) == 1

    assert feed.active == []
