"""Per-turn buffer that turns model deltas into record snapshots."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Collection, List, Optional

from .grammar import DEFAULT_PLACEHOLDERS, Placeholders
from .parser import parse_bubbles
from .records import MessageRecord, _now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnHandle:
    """Scopes accumulator calls to one turn."""
    user_text: str
    roster: frozenset
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=_now)


@dataclass(frozen=True)
class TurnFailure:
    handle: TurnHandle
    cause: BaseException
    records: List[MessageRecord]


class TurnAccumulator:
    """
    Owns the cumulative raw text of the current turn.

    Every delta triggers a full re-parse; the resulting list replaces the
    previous snapshot. Positions already seen keep their ``created_at`` so the
    snapshot stays stable for renderers.
    """

    def __init__(self, placeholders: Placeholders = DEFAULT_PLACEHOLDERS) -> None:
        self.placeholders = placeholders
        self._handle: Optional[TurnHandle] = None
        self._raw: str = ""
        self._snapshot: List[MessageRecord] = []
        self._stamps: List[float] = []
        self._finished = True

    # ---------- lifecycle ----------
    def start(self, user_text: str, roster: Collection[str]) -> TurnHandle:
        self._handle = TurnHandle(user_text=user_text, roster=frozenset(roster))
        self._raw = ""
        self._snapshot = []
        self._stamps = []
        self._finished = False
        return self._handle

    def on_delta(self, handle: TurnHandle, fragment: str) -> List[MessageRecord]:
        if not self._accepts(handle, "delta"):
            return self.snapshot(handle)
        if fragment:
            self._raw += fragment
        self._publish(self._parse(handle, finalize=False))
        return list(self._snapshot)

    def on_stream_end(self, handle: TurnHandle) -> List[MessageRecord]:
        if not self._accepts(handle, "stream end"):
            return self.snapshot(handle)
        self._publish(self._parse(handle, finalize=True))
        self._finished = True
        return list(self._snapshot)

    def on_stream_failure(self, handle: TurnHandle, cause: BaseException) -> TurnFailure:
        if self._accepts(handle, "stream failure"):
            # Keep what was already shown, closed; never re-parse past this point.
            self._snapshot = [r.closed() for r in self._snapshot]
            self._finished = True
        return TurnFailure(handle=handle, cause=cause, records=self.snapshot(handle))

    # ---------- views ----------
    def snapshot(self, handle: TurnHandle) -> List[MessageRecord]:
        if self._handle is None or handle.id != self._handle.id:
            return []
        return list(self._snapshot)

    @property
    def raw_text(self) -> str:
        return self._raw

    @property
    def finished(self) -> bool:
        return self._finished

    # ---------- internals ----------
    def _accepts(self, handle: TurnHandle, event: str) -> bool:
        if self._handle is None or handle.id != self._handle.id:
            logger.warning("Ignoring %s for stale turn %s", event, handle.id)
            return False
        if self._finished:
            logger.warning("Ignoring %s for finished turn %s", event, handle.id)
            return False
        return True

    def _parse(self, handle: TurnHandle, *, finalize: bool) -> List[MessageRecord]:
        return parse_bubbles(
            self._raw,
            handle.roster,
            finalize=finalize,
            timestamps=self._stamps,
            placeholders=self.placeholders,
        )

    def _publish(self, records: List[MessageRecord]) -> None:
        for rec in records[len(self._stamps):]:
            self._stamps.append(rec.created_at)
        self._snapshot = records
