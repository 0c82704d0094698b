from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Protocol

from .records import MessageRecord, Note

logger = logging.getLogger(__name__)

DEFAULT_NOTE_TAG = "空间灵感"


class _Names(Protocol):
    def name_of(self, persona_id: str) -> str: ...


def to_note(
    record: MessageRecord,
    roster: _Names,
    *,
    extra_tags: Iterable[str] = (DEFAULT_NOTE_TAG,),
) -> Optional[Note]:
    """Turn a finished agent record into a note, or None if it is not eligible.

    User records (no speaker) and still-streaming records are rejected.
    The persona's display name from ``roster`` becomes the first tag.
    """
    if not record.speaker:
        logger.info("Rejected note: record has no speaker")
        return None
    if record.open:
        logger.info("Rejected note: record from %s is still streaming", record.speaker)
        return None

    tags: List[str] = []
    for t in [roster.name_of(record.speaker), *extra_tags]:
        t = (t or "").strip()
        if t and t not in tags:
            tags.append(t)

    return Note(content=record.text, source_persona=record.speaker, tags=tuple(tags))
