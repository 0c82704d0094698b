from __future__ import annotations

import logging
from typing import Collection, List, Optional, Sequence

from .grammar import DEFAULT_PLACEHOLDERS, Placeholders, iter_segments
from .records import MessageRecord, _now

logger = logging.getLogger(__name__)


def parse_bubbles(
    raw: str,
    roster: Collection[str],
    *,
    finalize: bool = False,
    timestamps: Optional[Sequence[float]] = None,
    placeholders: Placeholders = DEFAULT_PLACEHOLDERS,
) -> List[MessageRecord]:
    """Split the cumulative text of one turn into ordered agent records.

    Pure function of ``raw`` and ``roster``: the whole buffer is rescanned on
    every call, so a caller can simply re-parse after each delta.

    Parameters
    ----------
    raw : str
        Everything the model has produced so far in this turn.
    roster : Collection[str]
        Persona ids valid for this turn. Segments tagged with any other id are
        dropped together with their content.
    finalize : bool
        Close every emitted record (end of stream). An unterminated segment is
        kept, not discarded.
    timestamps : Sequence[float] | None
        ``created_at`` values by output position. Positions beyond the
        sequence are stamped with the current time.
    placeholders : Placeholders
        Texts used for empty open/closed segments.

    Returns
    -------
    List[MessageRecord]
        Agent records in the order of their opening markers. At most the last
        one is open.
    """
    valid = roster if isinstance(roster, (set, frozenset, dict)) else set(roster)
    stamps = timestamps or ()
    out: List[MessageRecord] = []
    matched = 0

    for seg in iter_segments(raw):
        matched += 1
        if seg.persona_id not in valid:
            logger.debug("Dropping segment for unknown persona %r (%d chars)", seg.persona_id, len(seg.content))
            continue
        is_open = not (seg.closed or finalize)
        text = seg.content
        if not text:
            text = placeholders.open if is_open else placeholders.closed
        pos = len(out)
        out.append(
            MessageRecord.agent(
                seg.persona_id,
                text,
                open=is_open,
                created_at=stamps[pos] if pos < len(stamps) else _now(),
            )
        )

    if not matched and raw and raw.strip():
        logger.debug("No segments found in %d chars of model output", len(raw))
    return out
