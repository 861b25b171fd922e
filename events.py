from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable

import requests


LOG = logging.getLogger("taskdash_whatsapp")

EventSubscriber = Callable[[str, Any], None]


class EventSinkError(Exception):
    pass


class EventBroadcaster:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[EventSubscriber] = []

    def subscribe(self, subscriber: EventSubscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def emit(self, name: str, payload: Any = None) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(name, payload)
            except Exception as exc:
                LOG.warning("Event subscriber failed for %s: %s", name, exc)


class LoggingEventSink:
    def __call__(self, name: str, payload: Any) -> None:
        if name == "qr":
            LOG.info("event %s: pairing payload (%d chars)", name, len(str(payload or "")))
            return
        LOG.info("event %s: %s", name, payload)


class WebhookEventSink:
    def __init__(self, url: str, timeout_sec: int = 10, source: str = "whatsapp"):
        self.url = url
        self.timeout_sec = timeout_sec
        self.source = source
        self.session = requests.Session()

    def post(self, name: str, payload: Any) -> None:
        body = {
            "source": self.source,
            "event": name,
            "payload": payload,
            "emitted_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        }
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout_sec)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise EventSinkError(f"Failed to push event {name}: {exc}") from exc

    def __call__(self, name: str, payload: Any) -> None:
        self.post(name, payload)
