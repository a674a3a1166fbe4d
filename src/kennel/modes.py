from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kennel.events import Subscription, utcnow_iso
from kennel.tasks.manager import TaskEvent, TaskEventType, TaskManager
from kennel.tasks.store import TaskStore

logger = logging.getLogger(__name__)

MODES_META_KEY = "modes"
MAX_HISTORY = 50

RISKY_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(?:delete|remove)\b",
        r"\boverwrite\b",
        r"\bforce[- ]push\b|\bpush\s+--force\b",
        r"\bdrop\s+(?:table|database)\b",
        r"\brm\s+-rf?\b",
        r"\breset\s+--hard\b",
        r"\bdeploy\b",
    )
)
APPROVE_WORDS = frozenset({"y", "yes", "confirm", "confirmed", "ok", "okay", "approve", "go ahead"})
DENY_WORDS = frozenset({"n", "no", "cancel", "stop", "deny", "abort"})


class Mode(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    WAITING_INPUT = "waiting_input"
    GUARDED = "guarded"
    RESTING = "resting"


INTERRUPTIBLE_MODES = frozenset({Mode.WORKING, Mode.WAITING_INPUT, Mode.GUARDED})


class InputRoute(str, Enum):
    CLASSIFY = "classify"
    RESPOND = "respond"
    APPROVE = "approve"


@dataclass(frozen=True, slots=True)
class RouteDecision:
    route: InputRoute
    mode: Mode
    task_id: str | None = None
    question: str | None = None


@dataclass(frozen=True, slots=True)
class ModeNotice:
    session_id: str
    kind: str
    message: str
    task_id: str | None = None


@dataclass(slots=True)
class ModeState:
    mode: Mode = Mode.IDLE
    since: str = field(default_factory=utcnow_iso)
    task_id: str | None = None
    previous_mode: Mode | None = None
    data: dict[str, Any] = field(default_factory=dict)
    history: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "since": self.since,
            "task_id": self.task_id,
            "previous_mode": self.previous_mode.value if self.previous_mode else None,
            "data": dict(self.data),
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModeState:
        previous = data.get("previous_mode")
        return cls(
            mode=Mode(data.get("mode", Mode.IDLE.value)),
            since=str(data.get("since") or utcnow_iso()),
            task_id=data.get("task_id"),
            previous_mode=Mode(previous) if previous else None,
            data=dict(data.get("data") or {}),
            history=list(data.get("history") or []),
        )


def is_risky(question: str) -> bool:
    return any(pattern.search(question) for pattern in RISKY_PATTERNS)


def interpret_approval(text: str) -> bool | None:
    normalized = re.sub(r"[.!\s]+$", "", (text or "").strip().lower())
    if normalized in APPROVE_WORDS:
        return True
    if normalized in DENY_WORDS:
        return False
    return None


class ModeCoordinator:
    """Per-session mode machine that tells callers how to route the next message."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store
        self._states: dict[str, ModeState] = {}
        self._notices: list[ModeNotice] = []
        self._subscription: Subscription | None = None

    def start(self) -> list[ModeNotice]:
        """Load persisted modes; sessions caught mid-task come back idle with a notice."""
        raw = self.store.get_meta(MODES_META_KEY, default={}) or {}
        notices: list[ModeNotice] = []
        for session_id, payload in raw.items():
            try:
                state = ModeState.from_dict(payload)
            except (ValueError, TypeError) as exc:
                logger.warning("Discarding unreadable mode for session %s: %s", session_id, exc)
                continue
            self._states[session_id] = state
            if state.mode in INTERRUPTIBLE_MODES:
                task_id = state.task_id
                logger.warning(
                    "Session %s was %s at shutdown; resetting to idle", session_id, state.mode.value
                )
                self._set(session_id, Mode.IDLE, task_id=None, persist=False)
                notices.append(
                    ModeNotice(
                        session_id=session_id,
                        kind="task_interrupted",
                        message="The previous task was interrupted by a restart and did not finish.",
                        task_id=task_id,
                    )
                )
        if notices:
            self._persist()
        self._notices.extend(notices)
        return notices

    def attach(self, manager: TaskManager) -> None:
        if self._subscription is not None:
            self._subscription.close()
        self._subscription = manager.subscribe(self.handle_event)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def state(self, session_id: str) -> ModeState:
        return self._states.setdefault(session_id, ModeState())

    def mode(self, session_id: str) -> Mode:
        return self.state(session_id).mode

    def drain_notices(self, session_id: str | None = None) -> list[ModeNotice]:
        taken = [notice for notice in self._notices if session_id is None or notice.session_id == session_id]
        self._notices = [notice for notice in self._notices if notice not in taken]
        return taken

    def _persist(self) -> None:
        self.store.set_meta(
            MODES_META_KEY,
            {session_id: state.to_dict() for session_id, state in self._states.items()},
        )

    def _set(
        self,
        session_id: str,
        mode: Mode,
        *,
        task_id: str | None = None,
        data: dict[str, Any] | None = None,
        persist: bool = True,
    ) -> ModeState:
        state = self.state(session_id)
        if state.mode is not mode:
            state.history.append({"from": state.mode.value, "to": mode.value, "at": utcnow_iso()})
            del state.history[:-MAX_HISTORY]
            state.previous_mode = state.mode
            state.since = utcnow_iso()
            logger.debug("Session %s: %s -> %s", session_id, state.mode.value, mode.value)
        state.mode = mode
        state.task_id = task_id
        state.data = dict(data or {})
        if persist:
            self._persist()
        return state

    def handle_event(self, event: TaskEvent) -> None:
        session_id = event.session_id
        current = self.state(session_id)
        if event.type in {TaskEventType.CREATED, TaskEventType.STARTED}:
            self._set(session_id, Mode.WORKING, task_id=event.task_id)
        elif event.type is TaskEventType.WAITING_INPUT:
            question = str(event.payload.get("question", ""))
            mode = Mode.GUARDED if is_risky(question) else Mode.WAITING_INPUT
            self._set(session_id, mode, task_id=event.task_id, data={"question": question})
        elif event.type is TaskEventType.PROGRESS:
            # Harness output after a question does not answer it; only a delivered reply does.
            if (
                event.payload.get("resumed")
                and current.mode in {Mode.WAITING_INPUT, Mode.GUARDED}
                and current.task_id == event.task_id
            ):
                self._set(session_id, Mode.WORKING, task_id=event.task_id)
        elif event.type in {TaskEventType.COMPLETED, TaskEventType.FAILED, TaskEventType.CANCELLED}:
            if current.task_id in {None, event.task_id} and current.mode is not Mode.RESTING:
                self._set(session_id, Mode.IDLE)

    def route(self, session_id: str) -> RouteDecision:
        """How the caller should treat the next inbound message for a session."""
        state = self.state(session_id)
        if state.mode is Mode.RESTING:
            state = self.wake(session_id)
        question = state.data.get("question")
        if state.mode is Mode.WAITING_INPUT:
            return RouteDecision(InputRoute.RESPOND, state.mode, state.task_id, question)
        if state.mode is Mode.GUARDED:
            return RouteDecision(InputRoute.APPROVE, state.mode, state.task_id, question)
        return RouteDecision(InputRoute.CLASSIFY, state.mode, state.task_id)

    def rest(self, session_id: str) -> ModeState:
        state = self.state(session_id)
        if state.mode is not Mode.IDLE:
            return state
        return self._set(session_id, Mode.RESTING)

    def wake(self, session_id: str) -> ModeState:
        state = self.state(session_id)
        if state.mode is not Mode.RESTING:
            return state
        return self._set(session_id, Mode.IDLE)
