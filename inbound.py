"""Completion replies arriving over WhatsApp.

A member closes their task by replying with a completion word ("done",
"completed", "khatam", ...) anywhere in a direct message. Policy: only the
sender's single most recently created open task is completed; with several
open tasks the older ones stay open until further replies.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from events import EventBroadcaster
from gateway import OutboundGateway
from messages import (
    format_assigner_completion_notice,
    format_completion_confirmation,
    format_no_pending_tasks,
)
from page_parser import GROUP_CHAT_SUFFIX, IncomingMessage
from task_store import TaskRepository


LOG = logging.getLogger("taskdash_whatsapp")
COMPLETION_KEYWORDS = ("completed", "complete", "done", "finished", "finish", "khatam", "mukammal")


def is_completion_message(text: str) -> bool:
    normalized = (text or "").lower().strip()
    return any(keyword in normalized for keyword in COMPLETION_KEYWORDS)


class InboundCommandInterpreter:
    def __init__(
        self,
        repository: TaskRepository,
        gateway: OutboundGateway,
        events: EventBroadcaster,
        brand_name: str,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.events = events
        self.brand_name = brand_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def on_incoming_message(self, message: IncomingMessage) -> str:
        if message.kind != "chat" or GROUP_CHAT_SUFFIX in message.sender or message.is_group:
            return "ignored"
        if not is_completion_message(message.body):
            return "no_keyword"

        sender_phone = message.sender_phone
        LOG.info("Completion message received from %s: %s", sender_phone, message.body[:50])

        user = self.repository.find_user_by_phone(sender_phone)
        if user is None:
            LOG.info("User not found for phone: %s", sender_phone)
            return "unknown_sender"

        task = self.repository.find_most_recent_open_task_for_user(user.id)
        if task is None:
            self.gateway.send(user.phone, format_no_pending_tasks(self.brand_name))
            return "no_open_task"

        completed_at = self._clock()
        self.repository.update_task_status(task.id, "completed", completed_at.isoformat())
        LOG.info('Work "%s" marked as completed by %s', task.title, user.name)

        self.gateway.send(user.phone, format_completion_confirmation(self.brand_name, title=task.title))
        assigner = self.repository.find_assigner_for_task(task.id)
        if assigner is not None:
            self.gateway.send(
                assigner.phone,
                format_assigner_completion_notice(
                    self.brand_name,
                    title=task.title,
                    completer_name=user.name,
                    completed_at=completed_at,
                ),
            )
        else:
            LOG.info("No assigner found for task %s", task.id)

        self.events.emit(
            "work-completed",
            {"work_id": task.id, "title": task.title, "completed_by": user.name},
        )
        return f"completed:{task.id}"
