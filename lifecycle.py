from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Union


class Phase(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AWAITING_SCAN = "awaiting_scan"
    READY = "ready"
    DISCONNECTED = "disconnected"
    FALLBACK = "fallback"


PHASE_STATUS_TEXT = {
    Phase.UNINITIALIZED: "WhatsApp service not started",
    Phase.INITIALIZING: "Starting WhatsApp service...",
    Phase.AWAITING_SCAN: "QR code ready. Scan it with WhatsApp on your phone.",
    Phase.READY: "WhatsApp connected",
    Phase.DISCONNECTED: "WhatsApp disconnected",
    Phase.FALLBACK: "WhatsApp unavailable. Notifications are suppressed.",
}

TIMER_INIT_TIMEOUT = "init_timeout"
TIMER_RETRY = "retry"

_ERROR_SIGNATURES = (
    (
        ("chromium revision is not downloaded", "executable doesn't exist", "failed to launch"),
        "chromium-missing",
        "Chromium browser not found. Please install dependencies.",
    ),
    (
        ("navigation timeout", "timeout", "timed out"),
        "navigation-timeout",
        "WhatsApp Web took too long to load. Please try again.",
    ),
    (
        ("protocol error", "target closed", "target page, context or browser has been closed"),
        "protocol-error",
        "Browser protocol error. Try clearing session data.",
    ),
    (
        ("econnrefused", "connection refused", "net::err_connection_refused", "err_internet_disconnected"),
        "connection-refused",
        "Cannot connect to WhatsApp servers. Check internet connection.",
    ),
)


@dataclass(frozen=True)
class LifecycleSettings:
    init_timeout_sec: float = 60.0
    reconnect_delay_sec: float = 5.0
    retry_delay_sec: float = 10.0
    restart_delay_sec: float = 2.0


@dataclass(frozen=True)
class ConnectionState:
    phase: Phase = Phase.UNINITIALIZED
    attempt: int = 0
    max_attempts: int = 3
    is_initializing: bool = False
    last_qr_payload: str | None = None
    session_present: bool = False
    disabled: bool = False
    generation: int = 0
    last_error: str | None = None
    started_at: str | None = None
    last_transition_at: str | None = None
    qr_generation_started_at: str | None = None

    @property
    def status_text(self) -> str:
        return PHASE_STATUS_TEXT[self.phase]


# Events


@dataclass(frozen=True)
class InitializeRequested:
    max_attempts: int
    disabled_reason: str | None = None
    # Set for scheduled retries/reconnects; operator calls leave it None.
    generation: int | None = None


@dataclass(frozen=True)
class RestartRequested:
    pass


@dataclass(frozen=True)
class ResetRequested:
    pass


@dataclass(frozen=True)
class PairingPayloadReceived:
    generation: int
    payload: str


@dataclass(frozen=True)
class ChannelReady:
    generation: int
    display_name: str | None = None


@dataclass(frozen=True)
class ChannelDisconnected:
    generation: int
    reason: str


@dataclass(frozen=True)
class LaunchFailed:
    generation: int
    error: str


@dataclass(frozen=True)
class InitTimeoutElapsed:
    generation: int


@dataclass(frozen=True)
class MessageReceived:
    generation: int
    message: Any


Event = Union[
    InitializeRequested,
    RestartRequested,
    ResetRequested,
    PairingPayloadReceived,
    ChannelReady,
    ChannelDisconnected,
    LaunchFailed,
    InitTimeoutElapsed,
    MessageReceived,
]
CHANNEL_EVENTS = (
    PairingPayloadReceived,
    ChannelReady,
    ChannelDisconnected,
    LaunchFailed,
    InitTimeoutElapsed,
    MessageReceived,
)


# Commands


@dataclass(frozen=True)
class Emit:
    name: str
    payload: Any = None


@dataclass(frozen=True)
class ClearSession:
    pass


@dataclass(frozen=True)
class LaunchChannel:
    generation: int


@dataclass(frozen=True)
class DestroyChannel:
    pass


@dataclass(frozen=True)
class StartTimer:
    kind: str
    delay_sec: float
    generation: int


@dataclass(frozen=True)
class CancelTimer:
    kind: str


@dataclass(frozen=True)
class ScheduleInitialize:
    delay_sec: float
    generation: int


@dataclass(frozen=True)
class DispatchMessage:
    message: Any


Command = Union[
    Emit,
    ClearSession,
    LaunchChannel,
    DestroyChannel,
    StartTimer,
    CancelTimer,
    ScheduleInitialize,
    DispatchMessage,
]


@dataclass(frozen=True)
class Transition:
    state: ConnectionState
    commands: tuple[Command, ...] = ()
    accepted: bool = True
    note: str = ""


def classify_launch_error(message: str) -> tuple[str, str]:
    lowered = (message or "").lower()
    for needles, error_type, user_message in _ERROR_SIGNATURES:
        if any(needle in lowered for needle in needles):
            return error_type, user_message
    return "unknown", "Failed to initialize WhatsApp"


def _state_change(phase: Phase) -> Emit:
    return Emit("state-change", {"phase": phase.value, "status": PHASE_STATUS_TEXT[phase]})


def _enter(state: ConnectionState, phase: Phase, now: str, **changes: Any) -> tuple[ConnectionState, list[Command]]:
    if phase == state.phase:
        return replace(state, **changes), []
    return replace(state, phase=phase, last_transition_at=now, **changes), [_state_change(phase)]


def _teardown(state: ConnectionState) -> tuple[int, list[Command]]:
    # Bumping the generation makes any late event from the old instance stale.
    return state.generation + 1, [
        CancelTimer(TIMER_INIT_TIMEOUT),
        CancelTimer(TIMER_RETRY),
        DestroyChannel(),
    ]


def _ignored(state: ConnectionState, note: str) -> Transition:
    return Transition(state=state, accepted=False, note=note)


def transition(
    state: ConnectionState,
    event: Event,
    settings: LifecycleSettings,
    now: str,
) -> Transition:
    if isinstance(event, CHANNEL_EVENTS) and event.generation != state.generation:
        return _ignored(state, f"stale generation {event.generation} (current {state.generation})")

    if isinstance(event, InitializeRequested):
        return _on_initialize(state, event, settings, now)
    if isinstance(event, RestartRequested):
        return _on_restart(state, settings, now)
    if isinstance(event, ResetRequested):
        return _on_reset(state, now)
    if isinstance(event, PairingPayloadReceived):
        return _on_pairing_payload(state, event, now)
    if isinstance(event, ChannelReady):
        return _on_ready(state, event, now)
    if isinstance(event, ChannelDisconnected):
        return _on_disconnected(state, event, settings, now)
    if isinstance(event, LaunchFailed):
        return _on_launch_failed(state, event, settings, now)
    if isinstance(event, InitTimeoutElapsed):
        return _on_init_timeout(state, settings, now)
    if isinstance(event, MessageReceived):
        if state.phase != Phase.READY:
            return _ignored(state, f"message while {state.phase.value}")
        return Transition(state=state, commands=(DispatchMessage(event.message),))
    raise TypeError(f"Unknown lifecycle event: {event!r}")


def _on_initialize(
    state: ConnectionState,
    event: InitializeRequested,
    settings: LifecycleSettings,
    now: str,
) -> Transition:
    if event.generation is not None and event.generation != state.generation:
        return _ignored(state, "scheduled initialize superseded")

    if event.disabled_reason:
        generation, commands = _teardown(state)
        new_state, moved = _enter(
            state,
            Phase.FALLBACK,
            now,
            disabled=True,
            is_initializing=False,
            last_qr_payload=None,
            generation=generation,
        )
        commands.append(Emit("disabled", event.disabled_reason))
        return Transition(state=new_state, commands=tuple(commands + moved))

    if state.is_initializing:
        return _ignored(state, "initialization already in progress")
    if state.phase == Phase.FALLBACK:
        return _ignored(state, "fallback mode requires restart or reset")
    if state.phase in (Phase.READY, Phase.AWAITING_SCAN):
        return _ignored(state, f"channel already {state.phase.value}")

    attempt = state.attempt + 1
    generation = state.generation + 1
    new_state, moved = _enter(
        state,
        Phase.INITIALIZING,
        now,
        attempt=attempt,
        max_attempts=event.max_attempts,
        is_initializing=True,
        disabled=False,
        last_qr_payload=None,
        session_present=False,
        generation=generation,
        started_at=state.started_at or now,
        qr_generation_started_at=now,
    )
    commands: list[Command] = [
        CancelTimer(TIMER_RETRY),
        DestroyChannel(),
        ClearSession(),
        Emit("initializing", f"Starting WhatsApp service (attempt {attempt}/{event.max_attempts})..."),
    ]
    commands.extend(moved)
    commands.append(LaunchChannel(generation))
    commands.append(StartTimer(TIMER_INIT_TIMEOUT, settings.init_timeout_sec, generation))
    return Transition(state=new_state, commands=tuple(commands))


def _on_restart(state: ConnectionState, settings: LifecycleSettings, now: str) -> Transition:
    generation, commands = _teardown(state)
    new_state, moved = _enter(
        state,
        Phase.INITIALIZING,
        now,
        attempt=0,
        is_initializing=False,
        disabled=False,
        last_qr_payload=None,
        session_present=False,
        generation=generation,
        qr_generation_started_at=None,
    )
    commands.append(ClearSession())
    commands.append(Emit("initializing", "Restarting WhatsApp service..."))
    commands.extend(moved)
    commands.append(ScheduleInitialize(settings.restart_delay_sec, generation))
    return Transition(state=new_state, commands=tuple(commands))


def _on_reset(state: ConnectionState, now: str) -> Transition:
    generation, commands = _teardown(state)
    fresh = ConnectionState(
        max_attempts=state.max_attempts,
        generation=generation,
        started_at=state.started_at,
        last_transition_at=state.last_transition_at,
        phase=state.phase,
    )
    new_state, moved = _enter(fresh, Phase.UNINITIALIZED, now)
    commands.append(ClearSession())
    commands.extend(moved)
    return Transition(state=new_state, commands=tuple(commands))


def _on_pairing_payload(state: ConnectionState, event: PairingPayloadReceived, now: str) -> Transition:
    if state.phase not in (Phase.INITIALIZING, Phase.AWAITING_SCAN):
        return _ignored(state, f"pairing payload while {state.phase.value}")
    new_state, moved = _enter(
        state,
        Phase.AWAITING_SCAN,
        now,
        last_qr_payload=event.payload,
        is_initializing=False,
    )
    commands: list[Command] = [CancelTimer(TIMER_INIT_TIMEOUT), Emit("qr", event.payload)]
    commands.append(
        Emit(
            "status-update",
            {
                "status": "qr-ready",
                "message": "QR Code generated successfully. Please scan with your phone.",
                "timestamp": now,
            },
        )
    )
    commands.extend(moved)
    return Transition(state=new_state, commands=tuple(commands))


def _on_ready(state: ConnectionState, event: ChannelReady, now: str) -> Transition:
    if state.phase not in (Phase.INITIALIZING, Phase.AWAITING_SCAN):
        return _ignored(state, f"ready while {state.phase.value}")
    new_state, moved = _enter(
        state,
        Phase.READY,
        now,
        is_initializing=False,
        last_qr_payload=None,
        session_present=True,
        last_error=None,
    )
    commands: list[Command] = [
        CancelTimer(TIMER_INIT_TIMEOUT),
        Emit("ready", {"display_name": event.display_name}),
    ]
    commands.extend(moved)
    return Transition(state=new_state, commands=tuple(commands))


def _error(
    state: ConnectionState,
    error_type: str,
    message: str,
    original: str,
    now: str,
    final: bool,
) -> Emit:
    return Emit(
        "error",
        {
            "type": error_type,
            "message": message,
            "original_error": original,
            "attempt": state.attempt,
            "max_retries": state.max_attempts,
            "final": final,
            "timestamp": now,
        },
    )


def _retry(state: ConnectionState, delay_sec: float, generation: int) -> list[Command]:
    return [
        Emit(
            "retry",
            {"attempt": state.attempt, "max_retries": state.max_attempts, "next_retry_in": delay_sec},
        ),
        ScheduleInitialize(delay_sec, generation),
    ]


def _on_disconnected(
    state: ConnectionState,
    event: ChannelDisconnected,
    settings: LifecycleSettings,
    now: str,
) -> Transition:
    if state.phase != Phase.READY:
        return _ignored(state, f"disconnect while {state.phase.value}")
    generation, commands = _teardown(state)
    commands.append(Emit("disconnected", event.reason))
    can_retry = state.attempt < state.max_attempts
    new_state, moved = _enter(
        state,
        Phase.DISCONNECTED if can_retry else Phase.FALLBACK,
        now,
        generation=generation,
        last_error=f"disconnected: {event.reason}",
    )
    if can_retry:
        commands.extend(moved)
        commands.extend(_retry(state, settings.reconnect_delay_sec, generation))
    else:
        commands.append(
            _error(
                state,
                "disconnected",
                f"WhatsApp disconnected and {state.max_attempts} attempts are used up.",
                event.reason,
                now,
                final=True,
            )
        )
        commands.extend(moved)
    return Transition(state=new_state, commands=tuple(commands))


def _on_launch_failed(
    state: ConnectionState,
    event: LaunchFailed,
    settings: LifecycleSettings,
    now: str,
) -> Transition:
    if state.phase not in (Phase.INITIALIZING, Phase.AWAITING_SCAN):
        return _ignored(state, f"launch failure while {state.phase.value}")
    error_type, user_message = classify_launch_error(event.error)
    generation, commands = _teardown(state)
    can_retry = state.attempt < state.max_attempts
    if not can_retry:
        user_message = f"Failed to initialize after {state.max_attempts} attempts: {user_message}"
    commands.append(_error(state, error_type, user_message, event.error, now, final=not can_retry))
    new_state, moved = _enter(
        state,
        Phase.INITIALIZING if can_retry else Phase.FALLBACK,
        now,
        is_initializing=False,
        last_qr_payload=None,
        generation=generation,
        last_error=event.error,
    )
    commands.extend(moved)
    if can_retry:
        commands.extend(_retry(state, settings.retry_delay_sec, generation))
    return Transition(state=new_state, commands=tuple(commands))


def _on_init_timeout(state: ConnectionState, settings: LifecycleSettings, now: str) -> Transition:
    if state.phase != Phase.INITIALIZING or not state.is_initializing:
        return _ignored(state, f"init timeout while {state.phase.value}")
    generation, commands = _teardown(state)
    original = f"No QR code or ready signal within {settings.init_timeout_sec:g}s"
    new_state, moved = _enter(
        state,
        Phase.FALLBACK,
        now,
        is_initializing=False,
        generation=generation,
        last_error=original,
    )
    commands.append(
        _error(
            state,
            "init-timeout",
            "WhatsApp initialization timed out. Notifications are suppressed.",
            original,
            now,
            final=True,
        )
    )
    commands.extend(moved)
    return Transition(state=new_state, commands=tuple(commands))
