"""One shared conversation between the user and the active personas.

The session is the only place where events enter the core: user actions,
model deltas, stream end and stream failure. Each event is handled under a
lock, runs to completion, and then every listener receives the full history
plus the in-flight flag.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from bubbles import (
    ConversationReducer,
    MessageRecord,
    Note,
    Placeholders,
    TurnAccumulator,
    TurnHandle,
    TurnState,
    to_note,
)
from bubbles.notes import DEFAULT_NOTE_TAG
from roster.manager import Roster

from .llm import ModelRequest, ModelService, build_messages, build_system_instruction
from .memory import NoteStore

logger = logging.getLogger(__name__)


class StreamAbandoned(RuntimeError):
    """The consumer stopped reading before the model stream finished."""


@dataclass(frozen=True)
class Update:
    """What the rendering layer sees after every event."""
    messages: Tuple[MessageRecord, ...]
    in_flight: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "in_flight": self.in_flight,
        }


Listener = Callable[[Update], None]


class TurnStream:
    """Iterator over one turn's updates; closing it abandons an unfinished turn."""

    def __init__(self, session: "CompanionSession", handle: TurnHandle, updates: Iterator[Update]) -> None:
        self.session = session
        self.handle = handle
        self._updates = updates

    def __iter__(self) -> "TurnStream":
        return self

    def __next__(self) -> Update:
        return next(self._updates)

    def close(self) -> None:
        close = getattr(self._updates, "close", None)
        if close is not None:
            close()
        # a generator closed before its first step never runs its cleanup
        self.session.abandon(self.handle)


class CompanionSession:
    def __init__(
        self,
        service: ModelService,
        roster: Roster,
        *,
        notes: Optional[NoteStore] = None,
        window: int = 10,
        fallback_persona: str = "moyan",
        fallback_text: str = "星能波动剧烈，传输中断。",
        placeholders: Optional[Placeholders] = None,
        note_tag: str = DEFAULT_NOTE_TAG,
        greeting: Optional[MessageRecord] = None,
        persist_roster: bool = False,
    ) -> None:
        self.service = service
        self.roster = roster
        self.notes = notes
        self.window = max(0, int(window))
        self.note_tag = note_tag
        self.persist_roster = persist_roster
        self.greeting = greeting

        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._accumulator = TurnAccumulator(placeholders or Placeholders())
        self._reducer = ConversationReducer(fallback_persona=fallback_persona, fallback_text=fallback_text)
        self._handle: Optional[TurnHandle] = None
        self._request: Optional[ModelRequest] = None

        if greeting is not None:
            self._reducer.seed(greeting)

    @classmethod
    def from_config(
        cls,
        cfg: Dict[str, Any],
        service: ModelService,
        *,
        roster: Optional[Roster] = None,
        notes: Optional[NoteStore] = None,
    ) -> "CompanionSession":
        conv = cfg.get("conversation", {}) or {}
        roster_cfg = cfg.get("roster", {}) or {}
        notes_cfg = cfg.get("notes", {}) or {}

        if roster is None:
            roster = Roster(roster_cfg.get("personas_file"), active=roster_cfg.get("active"))
        if notes is None:
            notes = NoteStore(str(notes_cfg.get("data_dir") or "data"))

        greeting = None
        greeting_persona = conv.get("greeting_persona")
        greeting_text = conv.get("greeting_text")
        if greeting_persona and greeting_text:
            greeting = MessageRecord.agent(str(greeting_persona), str(greeting_text))

        return cls(
            service,
            roster,
            notes=notes,
            window=int(conv.get("window", 10)),
            fallback_persona=str(conv.get("fallback_persona") or "moyan"),
            fallback_text=str(conv.get("fallback_text") or "星能波动剧烈，传输中断。"),
            placeholders=Placeholders(
                open=str(conv.get("open_placeholder") or "thinking…"),
                closed=str(conv.get("closed_placeholder") or "..."),
            ),
            note_tag=str(notes_cfg.get("default_tag") or DEFAULT_NOTE_TAG),
            greeting=greeting,
            persist_roster=bool(roster_cfg.get("personas_file")),
        )

    # ---------- views ----------
    @property
    def history(self) -> Tuple[MessageRecord, ...]:
        return self._reducer.history

    @property
    def in_flight(self) -> bool:
        return self._reducer.in_flight

    @property
    def state(self) -> TurnState:
        return self._reducer.state

    def snapshot(self) -> Update:
        with self._lock:
            return Update(messages=self._reducer.history, in_flight=self._reducer.in_flight)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a renderer; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ---------- events ----------
    def submit(self, text: str) -> Optional[TurnHandle]:
        """Start a turn. Returns None (no-op) while another turn is in flight."""
        with self._lock:
            prior = self._reducer.window(self.window)
            if not self._reducer.begin(text):
                return None
            active = self.roster.active_personas()
            self._handle = self._accumulator.start(text, [p.id for p in active])
            self._request = ModelRequest(
                system_instruction=build_system_instruction(
                    active,
                    system_name=self.roster.system_name,
                    user_title=self.roster.user_title,
                ),
                messages=build_messages(prior, text),
            )
            logger.info("Turn %s started with %d active persona(s)", self._handle.id, len(active))
            self._notify()
            return self._handle

    def on_delta(self, handle: TurnHandle, fragment: str) -> None:
        with self._lock:
            if not self._is_current(handle, "delta"):
                return
            self._reducer.splice(self._accumulator.on_delta(handle, fragment))
            self._notify()

    def on_stream_end(self, handle: TurnHandle) -> None:
        with self._lock:
            if not self._is_current(handle, "stream end"):
                return
            records = self._accumulator.on_stream_end(handle)
            self._reducer.complete(records)
            logger.info("Turn %s completed with %d bubble(s)", handle.id, len(records))
            self._notify()

    def on_stream_failure(self, handle: TurnHandle, cause: BaseException) -> None:
        with self._lock:
            if not self._is_current(handle, "stream failure"):
                return
            failure = self._accumulator.on_stream_failure(handle, cause)
            self._reducer.fail(failure.records, cause)
            logger.error(
                "Turn %s failed after %d bubble(s): %s",
                handle.id,
                len(failure.records),
                cause,
                exc_info=(type(cause), cause, cause.__traceback__),
            )
            self._notify()

    # ---------- driving the model ----------
    def run_turn(self, handle: TurnHandle) -> TurnState:
        """Consume the model stream for ``handle`` to the end."""
        with self._lock:
            if not self._is_current(handle, "run"):
                return self.state
            request = self._request
        for _ in self._drive(handle, request):
            pass
        return self.state

    def send(self, text: str) -> Iterator[Update]:
        """Submit ``text`` and yield an update per event until the turn ends.

        Yields nothing if the submission is rejected. Closing the iterator
        early fails the turn so the conversation is never left in flight.
        """
        handle = self.submit(text)
        if handle is None:
            return
        yield from self.follow(handle)

    def follow(self, handle: TurnHandle) -> "TurnStream":
        """Drive an already submitted turn, yielding an update per event.

        The stream fails the turn when closed, even if it was never iterated.
        """
        with self._lock:
            if not self._is_current(handle, "follow"):
                return TurnStream(self, handle, iter(()))
            request = self._request
        return TurnStream(self, handle, self._drive(handle, request, emit=True))

    def abandon(self, handle: TurnHandle) -> bool:
        """Fail ``handle``'s turn if it is still in flight. False otherwise."""
        with self._lock:
            if self._handle is None or handle.id != self._handle.id or not self._reducer.in_flight:
                return False
            self.on_stream_failure(handle, StreamAbandoned("consumer stopped reading"))
            return True

    def _drive(self, handle: TurnHandle, request: ModelRequest, *, emit: bool = False) -> Iterator[Update]:
        stream: Optional[Iterable[str]] = None
        done = False
        try:
            if emit:
                yield self.snapshot()
            try:
                stream = self.service.stream(request)
                for delta in stream:
                    self.on_delta(handle, delta)
                    if emit:
                        yield self.snapshot()
            except Exception as e:
                self.on_stream_failure(handle, e)
            else:
                self.on_stream_end(handle)
            done = True
            if emit:
                yield self.snapshot()
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
            if not done:
                self.abandon(handle)

    # ---------- user actions ----------
    def weave(self, index: int) -> Optional[Note]:
        """Store the history record at ``index`` as a note (None if ineligible)."""
        with self._lock:
            history = self._reducer.history
            try:
                record = history[index]
            except IndexError:
                logger.info("Rejected note: no message at index %d", index)
                return None
            note = to_note(record, self.roster, extra_tags=(self.note_tag,))
        if note is not None and self.notes is not None:
            self.notes.add(note)
        return note

    def toggle_persona(self, persona_id: str) -> Optional[bool]:
        """Flip a persona's active flag. None while a turn is in flight."""
        with self._lock:
            if self._reducer.in_flight:
                logger.info("Rejected roster change for %r during a turn", persona_id)
                return None
            return self.roster.toggle(persona_id, save=self.persist_roster)

    def reset(self) -> bool:
        """Clear the conversation (and re-greet). Not allowed mid-turn."""
        with self._lock:
            if not self._reducer.clear():
                return False
            self._handle = None
            self._request = None
            if self.greeting is not None:
                self._reducer.seed(MessageRecord.agent(self.greeting.speaker or "", self.greeting.text))
            self._notify()
            return True

    # ---------- internals ----------
    def _is_current(self, handle: TurnHandle, event: str) -> bool:
        if self._handle is None or handle.id != self._handle.id or not self._reducer.in_flight:
            logger.warning("Ignoring %s for turn %s; it is not in flight", event, handle.id)
            return False
        return True

    def _notify(self) -> None:
        update = Update(messages=self._reducer.history, in_flight=self._reducer.in_flight)
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Listener %r failed", listener)
