from __future__ import annotations

import logging
import queue
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from urllib.parse import quote

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page, sync_playwright

from lifecycle import (
    ChannelDisconnected,
    ChannelReady,
    Event,
    LaunchFailed,
    MessageReceived,
    PairingPayloadReceived,
)
from page_parser import (
    PAGE_QR,
    PAGE_READY,
    IncomingMessage,
    extract_incoming_messages,
    parse_page_state,
)


LOG = logging.getLogger("taskdash_whatsapp")
WHATSAPP_WEB_URL = "https://web.whatsapp.com/"
CONSERVATIVE_LAUNCH_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-zygote",
    "--single-process",
    "--disable-extensions",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
)
CHROMIUM_CANDIDATE_PATHS = (
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/bin/google-chrome-stable",
    "/usr/bin/google-chrome",
)
UNREAD_BADGE_SELECTOR = "#pane-side span[aria-label*='unread message']"
COMPOSER_SELECTOR = "footer div[contenteditable='true'][role='textbox']"
SEEN_MESSAGE_LIMIT = 2000


class ChannelError(Exception):
    pass


def build_launch_args(extra: tuple[str, ...] = ()) -> list[str]:
    args = list(CONSERVATIVE_LAUNCH_ARGS)
    args.extend(arg for arg in extra if arg not in args)
    return args


def find_chromium_executable(explicit_path: str = "") -> str | None:
    if explicit_path:
        return explicit_path
    found = shutil.which("chromium")
    if found:
        return found
    for candidate in CHROMIUM_CANDIDATE_PATHS:
        if Path(candidate).exists():
            return candidate
    # None lets playwright fall back to its bundled browser.
    return None


@dataclass(frozen=True)
class ChannelOptions:
    session_dir: Path
    headless: bool = True
    executable_path: str | None = None
    poll_interval_sec: float = 1.0
    send_timeout_sec: float = 30.0
    navigation_timeout_sec: float = 60.0
    extra_launch_args: tuple[str, ...] = ()
    url: str = WHATSAPP_WEB_URL


class _SendRequest:
    def __init__(self, chat_id: str, text: str):
        self.chat_id = chat_id
        self.text = text
        self.done = threading.Event()
        self.error: str | None = None


class WhatsAppWebChannel:
    def __init__(self, generation: int, options: ChannelOptions, on_event: Callable[[Event], None]):
        self.generation = generation
        self.options = options
        self._on_event = on_event
        self._stop = threading.Event()
        self._outbox: queue.Queue[_SendRequest] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._ready = False
        self._seen_ids: dict[str, None] = {}
        self._known_chats: set[str] = set()
        self._pending_unread = 0
        self._open_chat: str | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        # The sync playwright API is bound to the thread that starts it.
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"whatsapp-channel-{self.generation}",
        )
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_ready(self) -> bool:
        return self._ready and self.is_alive()

    def close(self, timeout_sec: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout_sec)
            if self._thread.is_alive():
                LOG.warning("WhatsApp channel %s did not stop within %.1fs", self.generation, timeout_sec)

    def send_message(self, chat_id: str, text: str) -> None:
        if not self.is_ready:
            raise ChannelError("WhatsApp channel is not ready")
        request = _SendRequest(chat_id, text)
        self._outbox.put(request)
        if not request.done.wait(self.options.send_timeout_sec):
            raise ChannelError(f"Timed out after {self.options.send_timeout_sec:g}s sending to {chat_id}")
        if request.error is not None:
            raise ChannelError(request.error)

    def _emit(self, event: Event) -> None:
        if self._stop.is_set():
            return
        try:
            self._on_event(event)
        except Exception:
            LOG.exception("WhatsApp channel event handler failed")

    def _run(self) -> None:
        try:
            with sync_playwright() as playwright:
                self.options.session_dir.mkdir(parents=True, exist_ok=True)
                context = playwright.chromium.launch_persistent_context(
                    user_data_dir=str(self.options.session_dir),
                    headless=self.options.headless,
                    executable_path=self.options.executable_path,
                    args=build_launch_args(self.options.extra_launch_args),
                )
                try:
                    page = context.pages[0] if context.pages else context.new_page()
                    page.goto(
                        self.options.url,
                        wait_until="domcontentloaded",
                        timeout=self.options.navigation_timeout_sec * 1000,
                    )
                    self._watch(page)
                finally:
                    context.close()
        except (PlaywrightError, OSError) as exc:
            self._report_failure(str(exc))
        except Exception as exc:
            LOG.exception("Unexpected error in WhatsApp channel %s", self.generation)
            self._report_failure(str(exc))
        finally:
            self._ready = False
            self._fail_pending_sends("WhatsApp channel closed")

    def _report_failure(self, message: str) -> None:
        if self._stop.is_set():
            return
        LOG.warning("WhatsApp channel %s failed: %s", self.generation, message)
        if self._ready:
            self._emit(ChannelDisconnected(self.generation, message))
        else:
            self._emit(LaunchFailed(self.generation, message))

    def _watch(self, page: Page) -> None:
        last_qr: str | None = None
        while not self._stop.is_set():
            snapshot = parse_page_state(page.content())
            if snapshot.kind == PAGE_QR:
                if self._ready:
                    self._ready = False
                    self._emit(ChannelDisconnected(self.generation, "LOGOUT"))
                    return
                if snapshot.qr_payload != last_qr:
                    last_qr = snapshot.qr_payload
                    LOG.info("WhatsApp QR code generated (%d chars)", len(last_qr or ""))
                    self._emit(PairingPayloadReceived(self.generation, last_qr or ""))
            elif snapshot.kind == PAGE_READY:
                if not self._ready:
                    self._ready = True
                    display_name = self._display_name(page)
                    LOG.info("WhatsApp connected as: %s", display_name or "unknown")
                    self._emit(ChannelReady(self.generation, display_name))
                opened_unread = self._open_first_unread(page) if snapshot.unread_chats else 0
                self._collect_messages(page, opened_unread)
            self._drain_outbox(page)
            self._stop.wait(self.options.poll_interval_sec)

    def _display_name(self, page: Page) -> str | None:
        try:
            raw = page.evaluate(
                "() => window.localStorage.getItem('last-wid-md') || window.localStorage.getItem('last-wid')"
            )
        except PlaywrightError:
            return None
        if not raw:
            return None
        return str(raw).strip('"').split(":", 1)[0].split("@", 1)[0] or None

    def _open_first_unread(self, page: Page) -> int:
        badge = page.locator(UNREAD_BADGE_SELECTOR).first
        try:
            if badge.count() == 0:
                return 0
            label = badge.get_attribute("aria-label") or ""
            badge.click()
            page.wait_for_timeout(500)
        except PlaywrightError as exc:
            LOG.warning("Could not open unread chat: %s", exc)
            return 0
        digits = "".join(ch for ch in label.split(" ", 1)[0] if ch.isdigit())
        return int(digits) if digits else 1

    def _collect_messages(self, page: Page, opened_unread: int) -> None:
        if opened_unread:
            # Held until the clicked conversation actually renders.
            self._pending_unread = opened_unread
        visible = extract_incoming_messages(page.content())
        switched = bool(visible) and visible[-1].chat_id != self._open_chat
        if visible:
            self._open_chat = visible[-1].chat_id

        fresh = [m for m in visible if m.message_id not in self._seen_ids]
        for message in fresh:
            self._seen_ids[message.message_id] = None
        while len(self._seen_ids) > SEEN_MESSAGE_LIMIT:
            self._seen_ids.pop(next(iter(self._seen_ids)))

        by_chat: dict[str, list[IncomingMessage]] = {}
        for message in fresh:
            by_chat.setdefault(message.chat_id, []).append(message)

        for chat_id, messages in by_chat.items():
            if chat_id in self._known_chats:
                if switched:
                    self._pending_unread = 0
                emitted = messages
            else:
                # First render of a chat: its history predates this session
                # except for the unread tail that made us open it.
                self._known_chats.add(chat_id)
                emitted = messages[-self._pending_unread:] if self._pending_unread else []
                self._pending_unread = 0
            for message in emitted:
                self._emit(MessageReceived(self.generation, message))

    def _drain_outbox(self, page: Page) -> None:
        while True:
            try:
                request = self._outbox.get_nowait()
            except queue.Empty:
                return
            try:
                if not self._ready:
                    request.error = "WhatsApp channel is not ready"
                else:
                    self._send_via_page(page, request)
            except PlaywrightError as exc:
                request.error = f"Send failed: {exc}"
            finally:
                request.done.set()

    def _send_via_page(self, page: Page, request: _SendRequest) -> None:
        phone = request.chat_id.split("@", 1)[0]
        timeout_ms = self.options.send_timeout_sec * 1000
        page.goto(
            f"{self.options.url}send?phone={phone}&text={quote(request.text)}",
            wait_until="domcontentloaded",
            timeout=timeout_ms,
        )
        composer = page.locator(COMPOSER_SELECTOR)
        composer.wait_for(timeout=timeout_ms)
        composer.click()
        page.keyboard.press("Enter")
        page.wait_for_timeout(500)
        # The send navigation replaced whatever conversation a badge click opened.
        self._pending_unread = 0

    def _fail_pending_sends(self, reason: str) -> None:
        while True:
            try:
                request = self._outbox.get_nowait()
            except queue.Empty:
                return
            request.error = reason
            request.done.set()
