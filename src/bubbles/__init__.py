"""Multi-speaker stream parsing and conversation state.

The model writes one text stream in which segments are tagged per persona;
this package splits that stream into chat bubbles as it arrives and keeps the
conversation history consistent while it does.
"""

from __future__ import annotations

from .accumulator import TurnAccumulator, TurnFailure, TurnHandle
from .grammar import DEFAULT_PLACEHOLDERS, Placeholders, format_segment, protocol_instruction
from .notes import to_note
from .parser import parse_bubbles
from .records import AGENT_ROLE, USER_ROLE, MessageRecord, Note
from .reducer import ConversationReducer, TurnState

__all__ = [
    "AGENT_ROLE",
    "USER_ROLE",
    "ConversationReducer",
    "DEFAULT_PLACEHOLDERS",
    "MessageRecord",
    "Note",
    "Placeholders",
    "TurnAccumulator",
    "TurnFailure",
    "TurnHandle",
    "TurnState",
    "format_segment",
    "parse_bubbles",
    "protocol_instruction",
    "to_note",
]
