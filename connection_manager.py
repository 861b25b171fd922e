from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from events import EventBroadcaster
from lifecycle import (
    TIMER_INIT_TIMEOUT,
    TIMER_RETRY,
    CancelTimer,
    ClearSession,
    Command,
    ConnectionState,
    DestroyChannel,
    DispatchMessage,
    Emit,
    Event,
    InitializeRequested,
    InitTimeoutElapsed,
    LaunchChannel,
    LaunchFailed,
    LifecycleSettings,
    Phase,
    ResetRequested,
    RestartRequested,
    ScheduleInitialize,
    StartTimer,
    Transition,
    transition,
)
from scheduler import DelayedScheduler, TimerHandle
from session_store import SessionStore
from state_store import StateStore
from whatsapp_channel import ChannelError


LOG = logging.getLogger("taskdash_whatsapp")


class Channel(Protocol):
    def start(self) -> None: ...

    def close(self) -> None: ...

    def is_alive(self) -> bool: ...

    def send_message(self, chat_id: str, text: str) -> None: ...


ChannelFactory = Callable[[int, Callable[[Event], None]], Channel]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class ConnectionManager:
    def __init__(
        self,
        settings: LifecycleSettings,
        session_store: SessionStore,
        events: EventBroadcaster,
        scheduler: DelayedScheduler,
        channel_factory: ChannelFactory,
        *,
        max_attempts: int = 3,
        disabled_reason: Callable[[], str | None] | None = None,
        state_store: StateStore | None = None,
        inbound_handler: Callable[[Any], Any] | None = None,
        clock: Callable[[], str] | None = None,
    ):
        self.settings = settings
        self.session_store = session_store
        self.events = events
        self.scheduler = scheduler
        self.channel_factory = channel_factory
        self.max_attempts = max_attempts
        self.disabled_reason = disabled_reason or (lambda: None)
        self.state_store = state_store
        self.inbound_handler = inbound_handler
        self._clock = clock or utc_now_iso
        self._lock = threading.RLock()
        self._state = ConnectionState(max_attempts=max_attempts)
        self._channel: Channel | None = None
        self._timers: dict[str, TimerHandle] = {}
        self._events_queue: queue.Queue[Event] = queue.Queue()
        self._inbound_queue: queue.Queue[Any] = queue.Queue()
        self._outgoing: deque[tuple[str, Any]] = deque()
        self._emit_lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def phase(self) -> Phase:
        return self.state.phase

    # Operator control surface

    def initialize(self) -> Transition:
        return self.handle(InitializeRequested(self.max_attempts, self.disabled_reason()))

    def force_restart(self) -> Transition:
        return self.handle(RestartRequested())

    def reset_service(self) -> Transition:
        return self.handle(ResetRequested())

    def get_status(self) -> dict[str, Any]:
        state = self.state
        return {
            "phase": state.phase.value,
            "status": state.status_text,
            "is_ready": state.phase == Phase.READY,
            "is_initializing": state.is_initializing,
            "has_qr": state.last_qr_payload is not None,
            "qr_code": state.last_qr_payload,
            "fallback_mode": state.phase == Phase.FALLBACK,
            "disabled": state.disabled,
            "attempt": state.attempt,
            "max_retries": state.max_attempts,
        }

    def get_detailed_status(self) -> dict[str, Any]:
        with self._lock:
            state = self._state
            channel = self._channel
            timers = sorted(self._timers)
        status = self.get_status()
        status.update(self.session_store.describe())
        status.update(
            {
                "qr_generation_started_at": state.qr_generation_started_at,
                "channel_exists": channel is not None,
                "channel_alive": bool(channel is not None and channel.is_alive()),
                "session_present": state.session_present or self.session_store.has_session(),
                "last_error": state.last_error,
                "service_started_at": state.started_at,
                "last_transition_at": state.last_transition_at,
                "generation": state.generation,
                "pending_timers": timers,
            }
        )
        return status

    # Send primitive used by the outbound gateway

    def channel_send(self, chat_id: str, text: str) -> None:
        with self._lock:
            channel = self._channel
            ready = self._state.phase == Phase.READY
        if channel is None or not ready:
            raise ChannelError("WhatsApp channel is not ready")
        # Sends wait on the browser thread; never hold the lock across them.
        channel.send_message(chat_id, text)

    # Event processing

    def submit(self, event: Event) -> None:
        self._events_queue.put(event)

    def handle(self, event: Event) -> Transition:
        with self._lock:
            pending: deque[Event] = deque([event])
            first: Transition | None = None
            while pending:
                current = pending.popleft()
                result = transition(self._state, current, self.settings, self._clock())
                if first is None:
                    first = result
                if not result.accepted:
                    LOG.info("Ignored %s: %s", type(current).__name__, result.note)
                    continue
                previous = self._state
                self._state = result.state
                if previous.phase != result.state.phase:
                    LOG.info("WhatsApp phase %s -> %s", previous.phase.value, result.state.phase.value)
                for command in result.commands:
                    follow_up = self._execute(command)
                    if follow_up is not None:
                        pending.append(follow_up)
                if result.state != previous:
                    self._persist_snapshot()
        # Subscribers may do blocking I/O; they run with the lock released.
        self._flush_events()
        return first

    def _flush_events(self) -> None:
        while self._emit_lock.acquire(blocking=False):
            try:
                while True:
                    with self._lock:
                        if not self._outgoing:
                            break
                        name, payload = self._outgoing.popleft()
                    self.events.emit(name, payload)
            finally:
                self._emit_lock.release()
            with self._lock:
                if not self._outgoing:
                    return

    def _execute(self, command: Command) -> Event | None:
        if isinstance(command, Emit):
            self._outgoing.append((command.name, command.payload))
        elif isinstance(command, ClearSession):
            self.session_store.clear()
        elif isinstance(command, LaunchChannel):
            return self._launch(command.generation)
        elif isinstance(command, DestroyChannel):
            self._destroy_channel()
        elif isinstance(command, StartTimer):
            generation = command.generation
            self._set_timer(
                command.kind,
                command.delay_sec,
                lambda: self.submit(InitTimeoutElapsed(generation)),
            )
        elif isinstance(command, ScheduleInitialize):
            generation = command.generation
            self._set_timer(TIMER_RETRY, command.delay_sec, lambda: self._scheduled_initialize(generation))
        elif isinstance(command, CancelTimer):
            handle = self._timers.pop(command.kind, None)
            if handle is not None:
                handle.cancel()
        elif isinstance(command, DispatchMessage):
            if self.inbound_handler is None:
                LOG.info("No inbound handler configured; dropping message")
            else:
                self._inbound_queue.put(command.message)
        else:
            raise TypeError(f"Unknown lifecycle command: {command!r}")
        return None

    def _launch(self, generation: int) -> Event | None:
        LOG.info("Launching WhatsApp channel (generation %s)", generation)
        try:
            channel = self.channel_factory(generation, self.submit)
            self._channel = channel
            channel.start()
        except Exception as exc:
            LOG.warning("WhatsApp channel launch failed: %s", exc)
            return LaunchFailed(generation, str(exc))
        return None

    def _destroy_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            channel.close()
        except Exception as exc:
            LOG.warning("Error destroying WhatsApp channel: %s", exc)

    def _set_timer(self, kind: str, delay_sec: float, callback: Callable[[], None]) -> None:
        previous = self._timers.pop(kind, None)
        if previous is not None:
            previous.cancel()
        self._timers[kind] = self.scheduler.call_later(delay_sec, callback, name=kind)

    def _scheduled_initialize(self, generation: int) -> None:
        # Policy is read when the initialize actually happens.
        self.submit(InitializeRequested(self.max_attempts, self.disabled_reason(), generation=generation))

    def _persist_snapshot(self) -> None:
        if self.state_store is None:
            return
        state = self._state
        try:
            self.state_store.patch(
                {
                    "phase": state.phase.value,
                    "status_text": state.status_text,
                    "attempt": state.attempt,
                    "max_attempts": state.max_attempts,
                    "is_initializing": state.is_initializing,
                    "disabled": state.disabled,
                    "has_qr": state.last_qr_payload is not None,
                    "session_present": state.session_present,
                    "generation": state.generation,
                    "last_error": state.last_error,
                    "started_at": state.started_at,
                    "last_transition_at": state.last_transition_at,
                }
            )
        except OSError as exc:
            LOG.warning("Could not persist connection status: %s", exc)

    def close(self) -> None:
        with self._lock:
            for kind in (TIMER_INIT_TIMEOUT, TIMER_RETRY):
                handle = self._timers.pop(kind, None)
                if handle is not None:
                    handle.cancel()
            self._destroy_channel()

    def process_pending(self) -> int:
        processed = 0
        while True:
            try:
                event = self._events_queue.get_nowait()
            except queue.Empty:
                return processed
            self.handle(event)
            processed += 1

    def run_forever(self, stop_event, on_iteration: Callable[[], None] | None = None) -> None:
        last_heartbeat = time.monotonic()
        while not stop_event.is_set():
            now = time.monotonic()
            if on_iteration is not None and now - last_heartbeat >= 1.0:
                on_iteration()
                last_heartbeat = now
            try:
                event = self._events_queue.get(timeout=0.25)
            except queue.Empty:
                continue
            try:
                self.handle(event)
            except Exception:
                LOG.exception("Unhandled exception processing %s", type(event).__name__)

    def process_inbound_pending(self) -> int:
        processed = 0
        while True:
            try:
                message = self._inbound_queue.get_nowait()
            except queue.Empty:
                return processed
            self._dispatch_inbound(message)
            processed += 1

    def _dispatch_inbound(self, message: Any) -> None:
        if self.inbound_handler is None:
            return
        try:
            self.inbound_handler(message)
        except Exception:
            LOG.exception("Unhandled exception in inbound message handler")

    def run_inbound_worker(self, stop_event, on_iteration: Callable[[], None] | None = None) -> None:
        last_heartbeat = time.monotonic()
        while not stop_event.is_set():
            now = time.monotonic()
            if on_iteration is not None and now - last_heartbeat >= 1.0:
                on_iteration()
                last_heartbeat = now
            try:
                message = self._inbound_queue.get(timeout=0.25)
            except queue.Empty:
                continue
            self._dispatch_inbound(message)
