from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from events import EventBroadcaster
from gateway import OutboundGateway
from inbound import InboundCommandInterpreter, is_completion_message
from lifecycle import Phase
from page_parser import IncomingMessage
from task_store import JsonTaskStore, Task, User


FIXED_NOW = datetime(2026, 1, 2, 10, 30, tzinfo=timezone.utc)


class FakeHost:
    phase = Phase.READY

    def __init__(self):
        self.sent = []

    def channel_send(self, chat_id, text):
        self.sent.append((chat_id, text))


class RecordingRepository:
    """Counts every persistence call; answers from fixed data."""

    def __init__(self, user=None, task=None, assigner=None):
        self.user = user
        self.task = task
        self.assigner = assigner
        self.calls = []

    def find_user_by_phone(self, pattern):
        self.calls.append(("find_user_by_phone", pattern))
        return self.user

    def find_most_recent_open_task_for_user(self, user_id):
        self.calls.append(("find_most_recent_open_task_for_user", user_id))
        return self.task

    def update_task_status(self, task_id, status, completed_at):
        self.calls.append(("update_task_status", task_id, status, completed_at))
        return self.task

    def find_assigner_for_task(self, task_id):
        self.calls.append(("find_assigner_for_task", task_id))
        return self.assigner


def _message(body, sender="919876543210@c.us", kind="chat", chat_id=None):
    return IncomingMessage(
        message_id=f"false_{chat_id or sender}_KEY",
        chat_id=chat_id or sender,
        sender=sender,
        body=body,
        kind=kind,
    )


def _interpreter(repository):
    host = FakeHost()
    events = EventBroadcaster()
    emitted = []
    events.subscribe(lambda name, payload: emitted.append((name, payload)))
    interpreter = InboundCommandInterpreter(
        repository, OutboundGateway(host), events, "Acme", clock=lambda: FIXED_NOW
    )
    return interpreter, host, emitted


@pytest.mark.parametrize(
    "body",
    ["completed", "Task completed, thanks!", "  DONE  ", "I have finished it", "kaam khatam", "mukammal ho gaya"],
)
def test_completion_keywords_match_anywhere(body):
    assert is_completion_message(body) is True


@pytest.mark.parametrize("body", ["", "hello", "will start tomorrow", "ok"])
def test_other_text_is_not_completion(body):
    assert is_completion_message(body) is False


def test_completion_with_open_task_has_exactly_one_of_each_side_effect():
    member = User(id="u1", name="Ravi", phone="9876543210")
    manager = User(id="m1", name="Asha", phone="9812345678", role="manager")
    task = Task(id="t1", title="Prepare report", assigned_to="u1", assigned_by="m1")
    repository = RecordingRepository(user=member, task=task, assigner=manager)
    interpreter, host, emitted = _interpreter(repository)

    result = interpreter.on_incoming_message(_message("Task completed, thanks!"))

    assert result == "completed:t1"
    assert [c for c in repository.calls if c[0] == "update_task_status"] == [
        ("update_task_status", "t1", "completed", FIXED_NOW.isoformat())
    ]
    assert [chat_id for chat_id, _ in host.sent] == ["919876543210@c.us", "919812345678@c.us"]
    confirmation, notice = (text for _, text in host.sent)
    assert "Task Completed Successfully" in confirmation
    assert "👤 Completed by: Ravi" in notice
    assert "🔄 Status: COMPLETED" in notice
    assert emitted == [("work-completed", {"work_id": "t1", "title": "Prepare report", "completed_by": "Ravi"})]


def test_unknown_sender_has_no_side_effects():
    repository = RecordingRepository(user=None)
    interpreter, host, emitted = _interpreter(repository)

    assert interpreter.on_incoming_message(_message("done")) == "unknown_sender"
    assert repository.calls == [("find_user_by_phone", "919876543210")]
    assert host.sent == []
    assert emitted == []


def test_no_open_task_sends_information_only():
    member = User(id="u1", name="Ravi", phone="9876543210")
    repository = RecordingRepository(user=member, task=None)
    interpreter, host, emitted = _interpreter(repository)

    assert interpreter.on_incoming_message(_message("done")) == "no_open_task"
    assert len(host.sent) == 1
    assert "No pending tasks found" in host.sent[0][1]
    assert not any(c[0] == "update_task_status" for c in repository.calls)
    assert emitted == []


@pytest.mark.parametrize(
    "message",
    [
        _message("done", kind="media"),
        _message("done", kind="ptt"),
        _message("done", sender="919812345678@c.us", chat_id="120363041234567890@g.us"),
        _message("done", sender="120363041234567890@g.us"),
    ],
)
def test_group_and_non_text_messages_are_ignored(message):
    repository = RecordingRepository(user=User(id="u1", name="Ravi", phone="9876543210"))
    interpreter, host, emitted = _interpreter(repository)

    assert interpreter.on_incoming_message(message) == "ignored"
    assert repository.calls == []
    assert host.sent == []


def test_non_keyword_text_is_not_looked_up():
    repository = RecordingRepository()
    interpreter, _host, _emitted = _interpreter(repository)
    assert interpreter.on_incoming_message(_message("good morning")) == "no_keyword"
    assert repository.calls == []


def test_repeat_completion_message_against_json_store(tmp_path: Path):
    store = JsonTaskStore(tmp_path / "tasks.json")
    manager = store.add_user("Asha", "9812345678", role="manager")
    member = store.add_user("Ravi", "+91 98765 43210")
    store.add_task("Older", member.id, manager.id, created_at="2026-01-01T09:00:00+00:00")
    newest = store.add_task("Newest", member.id, manager.id, created_at="2026-01-02T09:00:00+00:00")
    interpreter, host, emitted = _interpreter(store)

    assert interpreter.on_incoming_message(_message("Task completed, thanks!")) == f"completed:{newest.id}"
    assert store.get_task(newest.id).status == "completed"
    assert store.get_task(newest.id).completed_at == FIXED_NOW.isoformat()
    assert len(host.sent) == 2
    assert len(emitted) == 1

    # The older task is next in line; a third reply finds nothing left.
    second = interpreter.on_incoming_message(_message("done"))
    assert second.startswith("completed:")
    third = interpreter.on_incoming_message(_message("Task completed, thanks!"))
    assert third == "no_open_task"
    assert "No pending tasks found" in host.sent[-1][1]
    assert len(emitted) == 2
