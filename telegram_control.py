from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from state_store import StateStore


LOG = logging.getLogger("taskdash_whatsapp")
NAV_BUTTON_ROWS = (
    ("Init", "Restart"),
    ("Status", "Reset"),
    ("Debug", "Help"),
)
BUTTON_COMMAND_ALIASES = {
    "init": "/init",
    "restart": "/restart",
    "reset": "/reset",
    "status": "/status",
    "debug": "/debug",
    "help": "/help",
}
UNKNOWN_COMMAND_MESSAGE = "Unknown command. Use the buttons below or send /help."


def build_navigation_reply_markup() -> dict[str, Any]:
    return {
        "keyboard": [list(row) for row in NAV_BUTTON_ROWS],
        "resize_keyboard": True,
        "is_persistent": True,
        "one_time_keyboard": False,
        "input_field_placeholder": "Choose an action",
    }


class TelegramApiError(Exception):
    pass


@dataclass(frozen=True)
class OperatorCallbacks:
    on_init: Callable[[], str]
    on_restart: Callable[[], str]
    on_reset: Callable[[], str]
    on_status: Callable[[], str]
    on_debug: Callable[[], str]
    on_help: Callable[[], str]


class TelegramClient:
    def __init__(self, token: str, timeout_sec: int = 10, api_base_url: str = "https://api.telegram.org"):
        self.token = token
        self.timeout_sec = timeout_sec
        self.api_base_url = api_base_url.rstrip("/")
        self.session = requests.Session()

    @property
    def _base(self) -> str:
        return f"{self.api_base_url}/bot{self.token}"

    def _call(self, method: str, payload: dict[str, Any], timeout: float) -> Any:
        try:
            response = self.session.post(f"{self._base}/{method}", json=payload, timeout=timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TelegramApiError(f"{method} failed: {exc}") from exc
        if not data.get("ok"):
            raise TelegramApiError(f"Telegram returned non-ok {method} response: {data}")
        return data.get("result")

    def get_updates(self, offset: int | None, timeout: int = 30) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        return self._call("getUpdates", payload, self.timeout_sec + timeout) or []

    def send_message(self, chat_id: int, text: str, reply_markup: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        self._call("sendMessage", payload, self.timeout_sec)


def normalize_command(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        return ""
    if cleaned.startswith("/"):
        first_token = cleaned.split()[0]
        return first_token.split("@", 1)[0].lower()
    return BUTTON_COMMAND_ALIASES.get(cleaned.lower(), "")


class TelegramController:
    """Long-polls the bot and answers commands from the one authorized chat."""

    def __init__(
        self,
        client: TelegramClient,
        state_store: StateStore,
        authorized_chat_id: int,
        callbacks: OperatorCallbacks,
    ):
        self.client = client
        self.state_store = state_store
        self.authorized_chat_id = authorized_chat_id
        self.callbacks = callbacks

    def _dispatch(self, command: str) -> str | None:
        handlers = {
            "/init": self.callbacks.on_init,
            "/restart": self.callbacks.on_restart,
            "/reset": self.callbacks.on_reset,
            "/status": self.callbacks.on_status,
            "/debug": self.callbacks.on_debug,
            "/help": self.callbacks.on_help,
            "/start": self.callbacks.on_help,
        }
        handler = handlers.get(command)
        return handler() if handler is not None else None

    def _send_response(self, text: str) -> None:
        self.client.send_message(
            chat_id=self.authorized_chat_id,
            text=text,
            reply_markup=build_navigation_reply_markup(),
        )

    def poll_once(self, timeout: int = 30) -> None:
        offset = self.state_store.load().get("telegram_update_offset")
        for update in self.client.get_updates(offset=offset, timeout=timeout):
            update_id = update.get("update_id")
            message = update.get("message") or {}
            text = message.get("text", "")
            chat_id = message.get("chat", {}).get("id")

            if isinstance(chat_id, int) and chat_id == self.authorized_chat_id:
                command = normalize_command(text)
                if command:
                    self._send_response(self._dispatch(command) or UNKNOWN_COMMAND_MESSAGE)
                elif isinstance(text, str) and text.strip():
                    self._send_response(UNKNOWN_COMMAND_MESSAGE)
            elif chat_id is not None:
                LOG.info("Ignoring Telegram message from unauthorized chat %s", chat_id)

            if isinstance(update_id, int):
                self.state_store.patch({"telegram_update_offset": update_id + 1})

    def run_forever(
        self,
        stop_event,
        on_iteration: Callable[[], None] | None = None,
        on_poll_error: Callable[[Exception], None] | None = None,
    ) -> None:
        while not stop_event.is_set():
            try:
                self.poll_once(timeout=30)
            except TelegramApiError as exc:
                LOG.warning("Telegram polling failed: %s", exc)
                if on_poll_error is not None:
                    on_poll_error(exc)
                time.sleep(2.0)
            except Exception as exc:
                LOG.exception("Unexpected error in Telegram polling loop")
                if on_poll_error is not None:
                    on_poll_error(exc)
                time.sleep(2.0)
            finally:
                if on_iteration is not None:
                    on_iteration()


def format_alert(name: str, payload: Any) -> str | None:
    if name == "ready":
        display_name = (payload or {}).get("display_name") if isinstance(payload, dict) else None
        return f"WhatsApp connected as {display_name}." if display_name else "WhatsApp connected."
    if name == "disconnected":
        return f"WhatsApp disconnected: {payload}"
    if name == "disabled":
        return f"WhatsApp disabled: {payload}"
    if name == "error" and isinstance(payload, dict):
        text = (
            f"WhatsApp error ({payload.get('type')}): {payload.get('message')}\n"
            f"attempt {payload.get('attempt')}/{payload.get('max_retries')}"
        )
        if payload.get("final"):
            text += "\nFallback mode: notifications are suppressed. Send /restart to try again."
        return text
    if name == "status-update" and isinstance(payload, dict) and payload.get("status") == "qr-ready":
        return "WhatsApp QR code is ready. Open the dashboard and scan it with your phone."
    return None


class OperatorAlertSink:
    def __init__(self, client: TelegramClient, chat_id: int):
        self.client = client
        self.chat_id = chat_id

    def __call__(self, name: str, payload: Any) -> None:
        text = format_alert(name, payload)
        if text is None:
            return
        try:
            self.client.send_message(
                chat_id=self.chat_id,
                text=text,
                reply_markup=build_navigation_reply_markup(),
            )
        except TelegramApiError as exc:
            LOG.warning("Failed to send operator alert for %s: %s", name, exc)
