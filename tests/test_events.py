import logging

import pytest
import requests

from events import EventBroadcaster, EventSinkError, LoggingEventSink, WebhookEventSink


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


def test_failing_subscriber_does_not_block_others():
    events = EventBroadcaster()
    received = []

    def broken(name, payload):
        raise RuntimeError("dashboard offline")

    events.subscribe(broken)
    events.subscribe(lambda name, payload: received.append((name, payload)))

    events.emit("ready", {"display_name": "Acme"})

    assert received == [("ready", {"display_name": "Acme"})]


def test_unsubscribe_stops_delivery():
    events = EventBroadcaster()
    received = []
    unsubscribe = events.subscribe(lambda name, payload: received.append(name))

    events.emit("initializing")
    unsubscribe()
    unsubscribe()
    events.emit("ready")

    assert received == ["initializing"]


def test_emit_without_subscribers_is_a_no_op():
    EventBroadcaster().emit("qr", "2@abc")


def test_logging_sink_hides_pairing_payload(caplog):
    sink = LoggingEventSink()
    with caplog.at_level(logging.INFO, logger="taskdash_whatsapp"):
        sink("qr", "2@secret-pairing-payload")
        sink("disconnected", "NAVIGATION")

    assert "secret-pairing-payload" not in caplog.text
    assert "pairing payload (24 chars)" in caplog.text
    assert "event disconnected: NAVIGATION" in caplog.text


def test_webhook_sink_posts_event_body(monkeypatch):
    sink = WebhookEventSink("http://dashboard.local/events", timeout_sec=3)
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json, timeout))
        return FakeResponse()

    monkeypatch.setattr(sink.session, "post", fake_post)
    sink("work-completed", {"work_id": "t1"})

    url, body, timeout = calls[0]
    assert url == "http://dashboard.local/events"
    assert timeout == 3
    assert body["source"] == "whatsapp"
    assert body["event"] == "work-completed"
    assert body["payload"] == {"work_id": "t1"}
    assert body["emitted_at"].endswith("+00:00")


@pytest.mark.parametrize(
    "behaviour",
    [
        lambda url, json=None, timeout=None: FakeResponse(502),
        lambda url, json=None, timeout=None: (_ for _ in ()).throw(requests.ConnectionError("refused")),
    ],
)
def test_webhook_failures_raise_sink_error(monkeypatch, behaviour):
    sink = WebhookEventSink("http://dashboard.local/events")
    monkeypatch.setattr(sink.session, "post", behaviour)

    with pytest.raises(EventSinkError):
        sink.post("ready", None)


def test_webhook_failure_is_isolated_by_broadcaster(monkeypatch):
    events = EventBroadcaster()
    sink = WebhookEventSink("http://dashboard.local/events")
    monkeypatch.setattr(sink.session, "post", lambda url, json=None, timeout=None: FakeResponse(500))
    received = []
    events.subscribe(sink)
    events.subscribe(lambda name, payload: received.append(name))

    events.emit("error", {"type": "timeout"})

    assert received == ["error"]
