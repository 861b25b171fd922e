from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from app import (
    DAEMON_EXIT_HEARTBEAT_STALE,
    DAEMON_EXIT_LOCK_HELD,
    DAEMON_EXIT_THREAD_DIED,
    HeartbeatTracker,
    OperatorCommands,
    build_runtime,
    evaluate_health_state,
    evaluate_watchdog,
    run_clear_session,
    run_daemon,
    run_healthcheck,
)
from config import Config
from gateway import SendOutcome
from lifecycle import ChannelReady, MessageReceived, Phase
from messages import notify_assignment
from page_parser import IncomingMessage
from process_lock import SessionLock
from state_store import StateStore


def _make_config(tmp_path: Path, **overrides) -> Config:
    values = dict(
        disable_whatsapp=False,
        production_environment=False,
        enable_in_production=False,
        max_retries=3,
        init_timeout_sec=60,
        reconnect_delay_sec=5,
        retry_delay_sec=10,
        restart_delay_sec=2,
        session_dir=(tmp_path / ".wwebjs_auth"),
        cache_dir=(tmp_path / ".wwebjs_cache"),
        headless=True,
        chromium_executable_path="",
        send_timeout_sec=30,
        poll_interval_sec=1,
        default_country_code="91",
        brand_name="Acme",
        state_file=(tmp_path / "state.json"),
        task_db_file=(tmp_path / "tasks.json"),
        session_lock_file=(tmp_path / "session.lock"),
        event_webhook_url="",
        http_timeout_sec=5,
        telegram_bot_token="",
        telegram_chat_id=None,
        telegram_api_base_url="https://api.telegram.org",
        watchdog_check_sec=10,
        watchdog_stale_sec=120,
    )
    values.update(overrides)
    return Config(**values)


class FakeChannel:
    def __init__(self, generation, on_event):
        self.generation = generation
        self.on_event = on_event
        self.alive = False
        self.sent = []

    def start(self):
        self.alive = True

    def close(self):
        self.alive = False

    def is_alive(self):
        return self.alive

    def send_message(self, chat_id, text):
        self.sent.append((chat_id, text))


def _fresh_heartbeats(now_dt: datetime) -> dict[str, str]:
    return {
        "events_last_heartbeat_ts": now_dt.isoformat(),
        "scheduler_last_heartbeat_ts": now_dt.isoformat(),
        "inbound_last_heartbeat_ts": now_dt.isoformat(),
    }


def test_watchdog_accepts_live_threads_with_fresh_heartbeats():
    now_dt = datetime.now(timezone.utc)
    assert evaluate_watchdog(
        now_dt=now_dt,
        stale_sec=120,
        thread_alive={"events": True, "scheduler": True, "inbound": True},
        heartbeats=_fresh_heartbeats(now_dt),
    ) == (None, None)


def test_watchdog_detects_dead_inbound_thread():
    now_dt = datetime.now(timezone.utc)
    exit_code, reason = evaluate_watchdog(
        now_dt=now_dt,
        stale_sec=120,
        thread_alive={"events": True, "scheduler": True, "inbound": False},
        heartbeats=_fresh_heartbeats(now_dt),
    )
    assert exit_code == DAEMON_EXIT_THREAD_DIED
    assert reason == "inbound_thread_dead"


def test_watchdog_detects_missing_and_stale_heartbeats():
    now_dt = datetime.now(timezone.utc)
    alive = {"events": True, "scheduler": True, "inbound": True}

    heartbeats = _fresh_heartbeats(now_dt)
    heartbeats["events_last_heartbeat_ts"] = None
    assert evaluate_watchdog(now_dt=now_dt, stale_sec=120, thread_alive=alive, heartbeats=heartbeats) == (
        DAEMON_EXIT_HEARTBEAT_STALE,
        "events_heartbeat_missing",
    )

    heartbeats = _fresh_heartbeats(now_dt)
    heartbeats["scheduler_last_heartbeat_ts"] = (now_dt - timedelta(seconds=300)).isoformat()
    exit_code, reason = evaluate_watchdog(
        now_dt=now_dt, stale_sec=120, thread_alive=alive, heartbeats=heartbeats
    )
    assert exit_code == DAEMON_EXIT_HEARTBEAT_STALE
    assert reason == "scheduler_heartbeat_stale:300s"


def test_health_state_requires_started_daemon_and_fresh_heartbeats():
    now_dt = datetime.now(timezone.utc)
    assert evaluate_health_state(state={}, now_dt=now_dt, stale_sec=120) == (False, "daemon_not_initialized")

    state = {"daemon_started_ts": now_dt.isoformat(), "daemon_last_heartbeat_ts": now_dt.isoformat()}
    state.update(_fresh_heartbeats(now_dt))
    assert evaluate_health_state(state=state, now_dt=now_dt, stale_sec=120) == (True, "ok")

    state["inbound_last_heartbeat_ts"] = "not-a-timestamp"
    assert evaluate_health_state(state=state, now_dt=now_dt, stale_sec=120) == (
        False,
        "inbound_last_heartbeat_ts_missing_or_invalid",
    )


def test_heartbeat_tracker_persists_marks(tmp_path: Path):
    store = StateStore(tmp_path / "state.json")
    tracker = HeartbeatTracker(store)
    tracker.initialize("2026-01-01T00:00:00+00:00")
    tracker.mark("inbound", "2026-01-01T00:00:05+00:00")

    state = store.load()
    assert state["daemon_last_heartbeat_ts"] == "2026-01-01T00:00:00+00:00"
    assert state["inbound_last_heartbeat_ts"] == "2026-01-01T00:00:05+00:00"
    assert tracker.snapshot()["inbound_last_heartbeat_ts"] == "2026-01-01T00:00:05+00:00"
    with pytest.raises(ValueError):
        tracker.mark("telegram")


def test_healthcheck_reports_fresh_and_stale_state(tmp_path: Path, capsys):
    config = _make_config(tmp_path)
    store = StateStore(config.state_file)
    now_dt = datetime.now(timezone.utc)
    state = {"daemon_started_ts": now_dt.isoformat(), "daemon_last_heartbeat_ts": now_dt.isoformat(), "phase": "ready"}
    state.update(_fresh_heartbeats(now_dt))
    store.save(state)

    assert run_healthcheck(config) == 0
    assert "healthy" in capsys.readouterr().out

    store.patch({"daemon_last_heartbeat_ts": (now_dt - timedelta(seconds=600)).isoformat()})
    assert run_healthcheck(config) == 1
    assert "daemon_heartbeat_stale" in capsys.readouterr().out


def test_run_daemon_exits_when_lock_already_held(tmp_path: Path):
    config = _make_config(tmp_path)
    lock = SessionLock(config.session_lock_file)
    lock.acquire()
    try:
        with pytest.raises(SystemExit) as exc:
            run_daemon(config)
        assert exc.value.code == DAEMON_EXIT_LOCK_HELD
    finally:
        lock.release()


def test_clear_session_refuses_while_daemon_owns_lock(tmp_path: Path, capsys):
    config = _make_config(tmp_path)
    config.session_dir.mkdir()
    (config.session_dir / "session-data").write_text("x", encoding="utf-8")
    lock = SessionLock(config.session_lock_file)
    lock.acquire()
    try:
        assert run_clear_session(config) == 1
        assert "refusing to clear session" in capsys.readouterr().out
        assert config.session_dir.exists()
    finally:
        lock.release()

    assert run_clear_session(config) == 0
    assert "session cleared" in capsys.readouterr().out
    assert not config.session_dir.exists()


def test_operator_commands_drive_connection_manager(tmp_path: Path):
    channels = []

    def factory(generation, on_event):
        channel = FakeChannel(generation, on_event)
        channels.append(channel)
        return channel

    runtime = build_runtime(_make_config(tmp_path), channel_factory=factory)
    commands = OperatorCommands(runtime)
    try:
        assert commands.command_init() == "Initialize requested. Phase: initializing."
        assert commands.command_init() == "Initialize ignored: initialization already in progress."
        assert len(channels) == 1

        status = commands.command_status()
        assert "- phase: initializing (Starting WhatsApp service...)" in status
        assert "- attempts: 1/3" in status
        assert "- last completion: never" in status

        debug = commands.command_debug()
        assert "- channel_alive: True" in debug
        assert "- pending_timers: ['init_timeout']" in debug
        assert "qr_code" not in debug

        assert "in 2s" in commands.command_restart()
        assert channels[0].alive is False

        assert commands.command_reset().startswith("Service reset")
        assert runtime.manager.phase == Phase.UNINITIALIZED
        assert "/restart" in commands.command_help()
    finally:
        runtime.manager.close()


def test_runtime_routes_completion_reply_through_task_store(tmp_path: Path):
    channels = []

    def factory(generation, on_event):
        channel = FakeChannel(generation, on_event)
        channels.append(channel)
        return channel

    runtime = build_runtime(_make_config(tmp_path), channel_factory=factory)
    try:
        manager_user = runtime.task_store.add_user("Asha", "9812345678", role="manager")
        member = runtime.task_store.add_user("Ravi", "9876543210")
        task = runtime.task_store.add_task("Prepare report", member.id, manager_user.id)

        runtime.manager.initialize()
        channels[0].on_event(ChannelReady(channels[0].generation, "Acme"))
        reply = IncomingMessage(
            message_id="false_919876543210@c.us_AAA",
            chat_id="919876543210@c.us",
            sender="919876543210@c.us",
            body="done",
        )
        channels[0].on_event(MessageReceived(channels[0].generation, reply))
        runtime.manager.process_pending()
        assert runtime.manager.phase == Phase.READY
        assert runtime.manager.process_inbound_pending() == 1
    finally:
        runtime.manager.close()

    assert runtime.task_store.get_task(task.id).status == "completed"
    assert [chat_id for chat_id, _ in channels[0].sent] == ["919876543210@c.us", "919812345678@c.us"]
    assert runtime.state_store.load()["last_completion_ts"] is not None


def _wait_for(predicate, timeout_sec=3.0):
    waiter = threading.Event()
    for _ in range(int(timeout_sec / 0.02)):
        if predicate():
            return True
        waiter.wait(0.02)
    return predicate()


def test_embedded_runtime_sends_notifications_from_host_flows(tmp_path: Path):
    channels = []

    def factory(generation, on_event):
        channel = FakeChannel(generation, on_event)
        channels.append(channel)
        return channel

    runtime = build_runtime(_make_config(tmp_path), channel_factory=factory)
    assert runtime.send_notification("9876543210", "early") == SendOutcome.NOT_READY

    runtime.start()
    try:
        assert set(runtime.thread_alive()) == {"events", "scheduler", "inbound"}
        assert all(runtime.thread_alive().values())
        assert len(channels) == 1

        channels[0].on_event(ChannelReady(channels[0].generation, "Acme"))
        assert _wait_for(lambda: runtime.manager.phase == Phase.READY)

        outcome = notify_assignment(
            runtime.gateway,
            runtime.config.brand_name,
            phone="9876543210",
            title="Prepare report",
            description="Quarterly numbers",
            assigner_name="Asha",
            priority="high",
            due_date=None,
        )
        assert outcome == SendOutcome.SENT
        assert runtime.send_notification("98-765 43210", "Reminder") == SendOutcome.SENT
        assert [chat_id for chat_id, _ in channels[0].sent] == ["919876543210@c.us", "919876543210@c.us"]
    finally:
        runtime.stop()

    assert not any(runtime.thread_alive().values())
    assert channels[0].alive is False
