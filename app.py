from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from config import Config, ConfigError, load_config
from connection_manager import ChannelFactory, ConnectionManager, utc_now_iso
from events import EventBroadcaster, LoggingEventSink, WebhookEventSink
from gateway import OutboundGateway, SendOutcome
from inbound import InboundCommandInterpreter
from lifecycle import LifecycleSettings
from process_lock import SessionLock, SessionLockHeldError, read_lock_holder
from scheduler import DelayedScheduler
from session_store import SessionStore
from state_store import StateStore
from task_store import JsonTaskStore
from telegram_control import (
    OperatorAlertSink,
    OperatorCallbacks,
    TelegramClient,
    TelegramController,
)
from whatsapp_channel import ChannelOptions, WhatsAppWebChannel, find_chromium_executable

LOG = logging.getLogger("taskdash_whatsapp")
DAEMON_EXIT_LOCK_HELD = 10
DAEMON_EXIT_THREAD_DIED = 20
DAEMON_EXIT_HEARTBEAT_STALE = 21
WATCHED_WORKERS = ("events", "scheduler", "inbound")
HEARTBEAT_COMPONENTS = ("daemon",) + WATCHED_WORKERS


def parse_iso(ts: str | None) -> datetime | None:
    if not ts:
        return None
    try:
        return datetime.fromisoformat(ts)
    except ValueError:
        return None


def heartbeat_key(component: str) -> str:
    return f"{component}_last_heartbeat_ts"


def seconds_since(now_dt: datetime, ts: str | None) -> float | None:
    value = parse_iso(ts)
    if value is None:
        return None
    return (now_dt - value).total_seconds()


def describe_age(now_dt: datetime, ts: str | None) -> str:
    """Operator-facing age such as "3m 12s ago"."""
    age = seconds_since(now_dt, ts)
    if age is None:
        return "never"
    if age < 1:
        return "just now"
    hours, rest = divmod(int(age), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m ago"
    if minutes:
        return f"{minutes}m {secs}s ago"
    return f"{secs}s ago"


def _stale_reason(component: str, age: float | None, stale_sec: int) -> str | None:
    if age is None:
        return f"{component}_heartbeat_missing"
    if age > stale_sec:
        return f"{component}_heartbeat_stale:{int(age)}s"
    return None


def evaluate_watchdog(
    *,
    now_dt: datetime,
    stale_sec: int,
    thread_alive: dict[str, bool],
    heartbeats: dict[str, str | None],
    workers: tuple[str, ...] = WATCHED_WORKERS,
) -> tuple[int | None, str | None]:
    dead = [worker for worker in workers if not thread_alive.get(worker, False)]
    if dead:
        return DAEMON_EXIT_THREAD_DIED, f"{dead[0]}_thread_dead"

    for worker in workers:
        age = seconds_since(now_dt, heartbeats.get(heartbeat_key(worker)))
        reason = _stale_reason(worker, None if age is None else max(0.0, age), stale_sec)
        if reason is not None:
            return DAEMON_EXIT_HEARTBEAT_STALE, reason
    return None, None


def evaluate_health_state(*, state: dict, now_dt: datetime, stale_sec: int) -> tuple[bool, str]:
    if parse_iso(state.get("daemon_started_ts")) is None:
        return False, "daemon_not_initialized"

    for component in HEARTBEAT_COMPONENTS:
        key = heartbeat_key(component)
        age = seconds_since(now_dt, state.get(key))
        if age is None:
            return False, f"{key}_missing_or_invalid"
        reason = _stale_reason(component, max(0.0, age), stale_sec)
        if reason is not None:
            return False, reason
    return True, "ok"


class HeartbeatTracker:
    def __init__(self, state_store: StateStore, components: tuple[str, ...] = HEARTBEAT_COMPONENTS):
        self.state_store = state_store
        self.components = components
        self._lock = threading.Lock()
        self._beats: dict[str, str | None] = dict.fromkeys(components)

    def initialize(self, now_iso: str) -> None:
        with self._lock:
            self._beats = dict.fromkeys(self.components, now_iso)
        self.state_store.patch(self.snapshot())

    def mark(self, component: str, now_iso: str | None = None) -> str:
        if component not in self._beats:
            raise ValueError(f"Unknown heartbeat component: {component}")
        beat = now_iso or utc_now_iso()
        with self._lock:
            self._beats[component] = beat
        self.state_store.patch({heartbeat_key(component): beat})
        return beat

    def snapshot(self) -> dict[str, str | None]:
        with self._lock:
            return {heartbeat_key(component): beat for component, beat in self._beats.items()}


def lifecycle_settings(config: Config) -> LifecycleSettings:
    return LifecycleSettings(
        init_timeout_sec=config.init_timeout_sec,
        reconnect_delay_sec=config.reconnect_delay_sec,
        retry_delay_sec=config.retry_delay_sec,
        restart_delay_sec=config.restart_delay_sec,
    )


def default_channel_factory(config: Config) -> ChannelFactory:
    options = ChannelOptions(
        session_dir=config.session_dir,
        headless=config.headless,
        executable_path=find_chromium_executable(config.chromium_executable_path),
        poll_interval_sec=config.poll_interval_sec,
        send_timeout_sec=config.send_timeout_sec,
        navigation_timeout_sec=config.init_timeout_sec,
    )
    LOG.info("Using browser executable: %s", options.executable_path or "playwright bundled chromium")

    def _factory(generation: int, on_event) -> WhatsAppWebChannel:
        return WhatsAppWebChannel(generation, options, on_event)

    return _factory


@dataclass
class Runtime:
    config: Config
    state_store: StateStore
    session_store: SessionStore
    events: EventBroadcaster
    scheduler: DelayedScheduler
    manager: ConnectionManager
    gateway: OutboundGateway
    task_store: JsonTaskStore
    interpreter: InboundCommandInterpreter
    telegram_client: TelegramClient | None = None
    threads: dict[str, threading.Thread] = field(default_factory=dict)
    stop_event: threading.Event = field(default_factory=threading.Event)

    def start(self, heartbeats: HeartbeatTracker | None = None) -> None:
        """Start the worker threads and the first initialize.

        Hosts embedding the service must own ``SessionLock`` for the session
        directory while it runs, the way ``run_daemon`` does.
        """
        if self.threads:
            return

        def _beat(component: str) -> Callable[[], Any] | None:
            if heartbeats is None:
                return None
            return lambda: heartbeats.mark(component)

        workers = {
            "events": (self.manager.run_forever, "lifecycle-events"),
            "scheduler": (self.scheduler.run, "timer-scheduler"),
            "inbound": (self.manager.run_inbound_worker, "inbound-worker"),
        }
        for component, (target, thread_name) in workers.items():
            self.threads[component] = threading.Thread(
                target=target,
                kwargs={"stop_event": self.stop_event, "on_iteration": _beat(component)},
                daemon=True,
                name=thread_name,
            )
        if self.telegram_client is not None:
            controller = TelegramController(
                client=self.telegram_client,
                state_store=self.state_store,
                authorized_chat_id=self.config.telegram_chat_id,
                callbacks=OperatorCommands(self).callbacks(),
            )
            self.threads["telegram"] = threading.Thread(
                target=controller.run_forever,
                kwargs={
                    "stop_event": self.stop_event,
                    "on_poll_error": lambda exc: _increment_telegram_poll_error(self.state_store, exc),
                },
                daemon=True,
                name="telegram-controller",
            )
        for thread in self.threads.values():
            thread.start()
        LOG.info("Runtime started. Initializing WhatsApp channel.")
        self.manager.initialize()

    def stop(self, timeout_sec: float = 2.0) -> None:
        self.stop_event.set()
        self.manager.close()
        for thread in self.threads.values():
            thread.join(timeout=timeout_sec)

    def thread_alive(self) -> dict[str, bool]:
        return {name: thread.is_alive() for name, thread in self.threads.items()}

    def send_notification(self, phone: str, body: str) -> SendOutcome:
        return self.gateway.send(phone, body)


def build_runtime(config: Config, channel_factory: ChannelFactory | None = None) -> Runtime:
    state_store = StateStore(config.state_file)
    state_store.load()
    session_store = SessionStore(config.session_dir, config.cache_dir)
    events = EventBroadcaster()
    events.subscribe(LoggingEventSink())
    if config.event_webhook_url:
        events.subscribe(WebhookEventSink(config.event_webhook_url, timeout_sec=config.http_timeout_sec))

    def _record_completion(name: str, _payload: Any) -> None:
        if name == "work-completed":
            state_store.patch({"last_completion_ts": utc_now_iso()})

    events.subscribe(_record_completion)

    scheduler = DelayedScheduler()
    manager = ConnectionManager(
        lifecycle_settings(config),
        session_store,
        events,
        scheduler,
        channel_factory or default_channel_factory(config),
        max_attempts=config.max_retries,
        disabled_reason=config.disabled_reason,
        state_store=state_store,
    )
    gateway = OutboundGateway(manager, country_code=config.default_country_code)
    task_store = JsonTaskStore(config.task_db_file)
    interpreter = InboundCommandInterpreter(task_store, gateway, events, config.brand_name)
    manager.inbound_handler = interpreter.on_incoming_message

    telegram_client = None
    if config.telegram_enabled:
        telegram_client = TelegramClient(
            token=config.telegram_bot_token,
            timeout_sec=config.http_timeout_sec,
            api_base_url=config.telegram_api_base_url,
        )
        events.subscribe(OperatorAlertSink(telegram_client, config.telegram_chat_id))

    return Runtime(
        config=config,
        state_store=state_store,
        session_store=session_store,
        events=events,
        scheduler=scheduler,
        manager=manager,
        gateway=gateway,
        task_store=task_store,
        interpreter=interpreter,
        telegram_client=telegram_client,
    )


class OperatorCommands:
    def __init__(self, runtime: Runtime):
        self.runtime = runtime

    @property
    def manager(self) -> ConnectionManager:
        return self.runtime.manager

    def command_init(self) -> str:
        result = self.manager.initialize()
        if not result.accepted:
            return f"Initialize ignored: {result.note}."
        return f"Initialize requested. Phase: {self.manager.phase.value}."

    def command_restart(self) -> str:
        self.manager.force_restart()
        return f"Restart requested. A fresh initialize follows in {self.runtime.config.restart_delay_sec}s."

    def command_reset(self) -> str:
        self.manager.reset_service()
        return "Service reset and session cleared. Send /init to start again."

    def command_status(self) -> str:
        status = self.manager.get_status()
        state = self.runtime.state_store.load()
        now_dt = datetime.now(timezone.utc)
        return (
            "WhatsApp status:\n"
            f"- phase: {status['phase']} ({status['status']})\n"
            f"- attempts: {status['attempt']}/{status['max_retries']}\n"
            f"- qr pending: {'yes' if status['has_qr'] else 'no'}\n"
            f"- last change: {describe_age(now_dt, state.get('last_transition_at'))}\n"
            f"- last completion: {describe_age(now_dt, state.get('last_completion_ts'))}"
        )

    def command_debug(self) -> str:
        details = self.manager.get_detailed_status()
        details.pop("qr_code", None)
        state = self.runtime.state_store.load()
        for component in HEARTBEAT_COMPONENTS:
            key = heartbeat_key(component)
            details[key] = state.get(key)
        details["telegram_poll_error_count"] = state.get("telegram_poll_error_count")
        details["last_watchdog_reason"] = state.get("last_watchdog_reason")
        return "WhatsApp debug status:\n" + "\n".join(f"- {key}: {value}" for key, value in details.items())

    def command_help(self) -> str:
        return (
            "Quick actions: Init, Restart, Status, Reset, Debug, Help.\n"
            "Commands:\n"
            "/init - start the WhatsApp channel\n"
            "/restart - clear the session and start again (needs a new QR scan)\n"
            "/reset - stop everything and clear all counters\n"
            "/status - compact status summary\n"
            "/debug - full technical diagnostics\n"
            "/help - show this help"
        )

    def callbacks(self) -> OperatorCallbacks:
        return OperatorCallbacks(
            on_init=self.command_init,
            on_restart=self.command_restart,
            on_reset=self.command_reset,
            on_status=self.command_status,
            on_debug=self.command_debug,
            on_help=self.command_help,
        )


def _increment_telegram_poll_error(state_store: StateStore, error: Exception) -> None:
    def _mutator(state: dict) -> dict:
        state["telegram_poll_error_count"] = int(state.get("telegram_poll_error_count", 0)) + 1
        return state

    state_store.mutate(_mutator)
    LOG.debug("Telegram poll error recorded: %s", error)


def _run_daemon_worker(config: Config, stop_event: threading.Event) -> int:
    runtime: Runtime | None = None

    try:
        runtime = build_runtime(config)
        state_store = runtime.state_store
        heartbeat_tracker = HeartbeatTracker(state_store)
        now_iso = utc_now_iso()
        state_store.patch({"daemon_started_ts": now_iso, "last_watchdog_reason": "none"})
        heartbeat_tracker.initialize(now_iso)
        runtime.start(heartbeat_tracker)

        while not stop_event.wait(config.watchdog_check_sec):
            now_iso = heartbeat_tracker.mark("daemon")
            now_dt = parse_iso(now_iso) or datetime.now(timezone.utc)
            exit_code, reason = evaluate_watchdog(
                now_dt=now_dt,
                stale_sec=config.watchdog_stale_sec,
                thread_alive=runtime.thread_alive(),
                heartbeats=heartbeat_tracker.snapshot(),
            )
            if exit_code is not None:
                state_store.patch({"last_watchdog_reason": reason})
                LOG.error("Watchdog stopping daemon: %s", reason)
                return exit_code
        return 0
    finally:
        if runtime is not None:
            runtime.stop()


def run_daemon(config: Config) -> None:
    lock = SessionLock(config.session_lock_file)
    try:
        lock.acquire()
    except SessionLockHeldError as exc:
        LOG.warning("Daemon already running: %s", exc)
        raise SystemExit(DAEMON_EXIT_LOCK_HELD)

    stop_event = threading.Event()

    def _stop_handler(_signum, _frame):
        stop_event.set()

    signal.signal(signal.SIGINT, _stop_handler)
    signal.signal(signal.SIGTERM, _stop_handler)

    try:
        exit_code = _run_daemon_worker(config, stop_event)
    finally:
        lock.release()
    if exit_code != 0:
        raise SystemExit(exit_code)


def show_local_status(config: Config) -> None:
    state = StateStore(config.state_file).load()
    print(json.dumps(state, indent=2, sort_keys=True))


def run_healthcheck(config: Config) -> int:
    state = StateStore(config.state_file).load()
    healthy, reason = evaluate_health_state(
        state=state,
        now_dt=datetime.now(timezone.utc),
        stale_sec=config.watchdog_stale_sec,
    )
    if healthy:
        print(f"healthy: daemon heartbeat is fresh (phase {state.get('phase')})")
        return 0
    print(f"unhealthy: {reason}")
    return 1


def run_clear_session(config: Config) -> int:
    lock = SessionLock(config.session_lock_file)
    try:
        lock.acquire()
    except SessionLockHeldError:
        holder = read_lock_holder(config.session_lock_file)
        print(f"refusing to clear session: daemon is running (pid {holder})")
        return 1
    try:
        result = SessionStore(config.session_dir, config.cache_dir).clear()
    finally:
        lock.release()
    if result.ok:
        print(f"session cleared ({len(result.removed)} path(s) removed)")
    else:
        print(f"session partially cleared; {len(result.failures)} item(s) left behind")
    return 0


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Task dashboard WhatsApp connectivity service")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("daemon", help="Run the WhatsApp channel, timers, inbound worker and operator bot")
    subparsers.add_parser("status-local", help="Print current local state JSON")
    subparsers.add_parser("healthcheck", help="Exit 0 when daemon heartbeats are healthy")
    subparsers.add_parser("clear-session", help="Delete stored WhatsApp session artifacts")
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args()
    try:
        config = load_config(".env")
    except ConfigError as exc:
        raise SystemExit(f"Config error: {exc}")

    if args.command == "daemon":
        run_daemon(config)
        return
    if args.command == "status-local":
        show_local_status(config)
        return
    if args.command == "healthcheck":
        raise SystemExit(run_healthcheck(config))
    if args.command == "clear-session":
        raise SystemExit(run_clear_session(config))
    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
