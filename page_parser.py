from __future__ import annotations

import re
from dataclasses import dataclass

from bs4 import BeautifulSoup


PAGE_QR = "qr"
PAGE_READY = "ready"
PAGE_LOADING = "loading"
PAGE_UNKNOWN = "unknown"

DIRECT_CHAT_SUFFIX = "@c.us"
GROUP_CHAT_SUFFIX = "@g.us"

_READY_SELECTORS = (
    "#pane-side",
    "[data-testid='chat-list']",
    "div[aria-label='Chat list']",
)
_LOADING_SELECTORS = (
    "progress",
    "[data-testid='startup']",
    "[data-testid='intro-md-beta-logo-dark']",
    "[data-testid='intro-md-beta-logo-light']",
)
_LOADING_TEXT_PATTERN = re.compile(r"loading (?:your )?chats|end-to-end encrypted", re.IGNORECASE)
_UNREAD_BADGE_PATTERN = re.compile(r"\d+\s+unread message", re.IGNORECASE)
_MESSAGE_ID_PATTERN = re.compile(
    r"^(?P<from_me>true|false)_(?P<chat>[^_]+@(?:c|g)\.us)_(?P<key>[^_]+)(?:_(?P<participant>[^_]+@c\.us))?$"
)


@dataclass(frozen=True)
class PageSnapshot:
    kind: str
    qr_payload: str | None = None
    unread_chats: int = 0


@dataclass(frozen=True)
class IncomingMessage:
    message_id: str
    chat_id: str
    sender: str
    body: str
    kind: str = "chat"

    @property
    def is_group(self) -> bool:
        return self.chat_id.endswith(GROUP_CHAT_SUFFIX)

    @property
    def sender_phone(self) -> str:
        return self.sender.split("@", 1)[0]


def parse_page_state(html: str) -> PageSnapshot:
    soup = BeautifulSoup(html, "html.parser")

    # A visible pairing code wins: after a logout the chat pane may linger in the DOM.
    qr_node = soup.select_one("div[data-ref]")
    if qr_node is not None:
        payload = str(qr_node.attrs.get("data-ref", "")).strip()
        if payload:
            return PageSnapshot(kind=PAGE_QR, qr_payload=payload)

    for selector in _READY_SELECTORS:
        if soup.select_one(selector) is not None:
            unread = sum(
                1
                for node in soup.select("span[aria-label]")
                if _UNREAD_BADGE_PATTERN.search(str(node.attrs.get("aria-label", "")))
            )
            return PageSnapshot(kind=PAGE_READY, unread_chats=unread)

    for selector in _LOADING_SELECTORS:
        if soup.select_one(selector) is not None:
            return PageSnapshot(kind=PAGE_LOADING)
    if _LOADING_TEXT_PATTERN.search(soup.get_text(" ", strip=True)):
        return PageSnapshot(kind=PAGE_LOADING)

    return PageSnapshot(kind=PAGE_UNKNOWN)


def parse_message_id(raw: str) -> tuple[bool, str, str, str | None] | None:
    match = _MESSAGE_ID_PATTERN.match((raw or "").strip())
    if match is None:
        return None
    return (
        match.group("from_me") == "true",
        match.group("chat"),
        match.group("key"),
        match.group("participant"),
    )


def extract_incoming_messages(html: str) -> list[IncomingMessage]:
    """Messages from other people currently rendered in the open conversation."""
    soup = BeautifulSoup(html, "html.parser")
    messages: list[IncomingMessage] = []
    for node in soup.select("[data-id]"):
        raw_id = str(node.attrs.get("data-id", ""))
        parsed = parse_message_id(raw_id)
        if parsed is None:
            continue
        from_me, chat_id, _key, participant = parsed
        if from_me:
            continue

        text_node = node.select_one("span.selectable-text")
        body = text_node.get_text("", strip=True) if text_node is not None else ""
        messages.append(
            IncomingMessage(
                message_id=raw_id,
                chat_id=chat_id,
                sender=participant or chat_id,
                body=body,
                kind="chat" if text_node is not None else "media",
            )
        )
    return messages
