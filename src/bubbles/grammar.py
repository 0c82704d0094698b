"""Wire micro-format used by the model to tag which persona is speaking.

A segment looks like::

    [START:moyan]content[END]

The closing marker may be missing while the stream is still arriving; such a
segment is "open" and runs to the end of the buffer. Segments never nest: an
opening marker inside an open segment is plain content of that segment.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Iterator, NamedTuple

START_PREFIX = "[START:"
START_SUFFIX = "]"
END_MARKER = "[END]"

# Lazy body up to the first [END] or the absolute end of the buffer.
# \Z rather than $ so a trailing newline cannot end a segment early.
SEGMENT_PATTERN = re.compile(
    r"\[START:(\w+)\](.*?)(?:\[END\]|\Z)",
    re.DOTALL | re.ASCII,
)
PERSONA_ID_PATTERN = re.compile(r"\w+", re.ASCII)


@dataclass(frozen=True)
class Placeholders:
    """Texts shown for empty segments. Only the open/closed distinction matters."""
    open: str = "thinking…"
    closed: str = "..."


DEFAULT_PLACEHOLDERS = Placeholders()


class Segment(NamedTuple):
    persona_id: str
    content: str
    closed: bool
    start: int
    end: int


def is_valid_persona_id(persona_id: str) -> bool:
    """True if the id can appear inside an opening marker."""
    return bool(persona_id) and PERSONA_ID_PATTERN.fullmatch(persona_id) is not None


def iter_segments(raw: str) -> Iterator[Segment]:
    """Yield every syntactically complete opening marker and its body, left to right.

    No roster filtering happens here. Content is trimmed.
    """
    for match in SEGMENT_PATTERN.finditer(raw or ""):
        yield Segment(
            persona_id=match.group(1),
            content=match.group(2).strip(),
            closed=match.group(0).endswith(END_MARKER),
            start=match.start(),
            end=match.end(),
        )


def format_segment(persona_id: str, text: str, *, closed: bool = True) -> str:
    if not is_valid_persona_id(persona_id):
        raise ValueError(f"Invalid persona id: {persona_id!r}")
    out = f"{START_PREFIX}{persona_id}{START_SUFFIX}{text}"
    return out + END_MARKER if closed else out


def protocol_instruction(persona_ids: Iterable[str]) -> str:
    """The output contract handed to the model."""
    ids = ", ".join(persona_ids)
    return (
        f"OUTPUT PROTOCOL: Format exactly as {START_PREFIX}id{START_SUFFIX}content{END_MARKER}. "
        f"Valid IDs: {ids}."
    )
