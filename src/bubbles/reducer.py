from __future__ import annotations

import enum
import logging
from typing import Iterable, List, Optional, Tuple

from .records import MessageRecord

logger = logging.getLogger(__name__)


class TurnState(str, enum.Enum):
    IDLE = "idle"
    AWAITING = "awaiting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


_READY = {TurnState.IDLE, TurnState.COMPLETED, TurnState.FAILED}
_IN_FLIGHT = {TurnState.AWAITING, TurnState.STREAMING}


class ConversationReducer:
    """
    Ordered chat history with a single turn in flight.

    Each turn contributes one user record, appended on ``begin``, followed by
    a contiguous agent block that is replaced wholesale on every ``splice``.
    Records before the current block are never modified.
    """

    def __init__(self, *, fallback_persona: str, fallback_text: str) -> None:
        self.fallback_persona = fallback_persona
        self.fallback_text = fallback_text
        self._history: List[MessageRecord] = []
        self._state = TurnState.IDLE
        self._block_start = 0  # index of the first agent record of the current turn

    # ---------- views ----------
    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._state in _IN_FLIGHT

    @property
    def history(self) -> Tuple[MessageRecord, ...]:
        return tuple(self._history)

    def window(self, n: int) -> List[MessageRecord]:
        """Last ``n`` records (the rolling window sent to the model)."""
        if n <= 0:
            return []
        return list(self._history[-n:])

    def __len__(self) -> int:
        return len(self._history)

    # ---------- transitions ----------
    def seed(self, record: MessageRecord) -> bool:
        """Add an opening greeting; only on an empty, idle conversation."""
        if self._history or self._state is not TurnState.IDLE:
            return False
        self._history.append(record.closed())
        self._block_start = len(self._history)
        return True

    def begin(self, user_text: str) -> bool:
        """Idle/Completed/Failed -> Awaiting. Appends the user record immediately."""
        if self._state not in _READY:
            logger.info("Rejected submission while a turn is %s", self._state.value)
            return False
        if not (user_text or "").strip():
            logger.info("Rejected blank submission")
            return False
        self._history.append(MessageRecord.user(user_text))
        self._block_start = len(self._history)
        self._state = TurnState.AWAITING
        return True

    def splice(self, records: Iterable[MessageRecord]) -> bool:
        """Replace the current turn's agent block with a fresh snapshot."""
        if self._state not in _IN_FLIGHT:
            logger.warning("Ignoring snapshot outside a turn (state=%s)", self._state.value)
            return False
        self._replace_block(records)
        self._state = TurnState.STREAMING
        return True

    def complete(self, records: Iterable[MessageRecord]) -> bool:
        """Final splice; every record of the turn ends closed."""
        if self._state not in _IN_FLIGHT:
            logger.warning("Ignoring completion outside a turn (state=%s)", self._state.value)
            return False
        self._replace_block(r.closed() for r in records)
        self._state = TurnState.COMPLETED
        return True

    def fail(self, records: Iterable[MessageRecord] = (), cause: Optional[BaseException] = None) -> bool:
        """Keep partial content (closed) and append one fallback record."""
        if self._state not in _IN_FLIGHT:
            logger.warning("Ignoring failure outside a turn (state=%s)", self._state.value)
            return False
        self._replace_block(r.closed() for r in records)
        self._history.append(MessageRecord.agent(self.fallback_persona, self.fallback_text))
        self._state = TurnState.FAILED
        if cause is not None:
            logger.info("Turn failed: %s", cause)
        return True

    def clear(self) -> bool:
        """Drop all history. Not allowed while a turn is in flight."""
        if self.in_flight:
            return False
        self._history = []
        self._block_start = 0
        self._state = TurnState.IDLE
        return True

    # ---------- internals ----------
    def _replace_block(self, records: Iterable[MessageRecord]) -> None:
        self._history[self._block_start:] = list(records)
