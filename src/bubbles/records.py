from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

USER_ROLE = "user"
AGENT_ROLE = "agent"


def _now() -> float:
    return time.time()


@dataclass(frozen=True)
class MessageRecord:
    """
    A single chat bubble.

    Fields:
        role: "user" | "agent"
        speaker: persona id for agent records, None for user records.
        text: rendered content (placeholder text when the segment is empty).
        created_at: epoch seconds.
        open: True while the content may still change. Closed records are final.
    """
    role: str
    text: str
    speaker: Optional[str] = None
    created_at: float = field(default_factory=_now)
    open: bool = False

    @classmethod
    def user(cls, text: str, *, created_at: Optional[float] = None) -> "MessageRecord":
        return cls(role=USER_ROLE, text=text, created_at=_now() if created_at is None else created_at)

    @classmethod
    def agent(
        cls,
        speaker: str,
        text: str,
        *,
        open: bool = False,
        created_at: Optional[float] = None,
    ) -> "MessageRecord":
        return cls(
            role=AGENT_ROLE,
            speaker=speaker,
            text=text,
            open=open,
            created_at=_now() if created_at is None else created_at,
        )

    @property
    def is_user(self) -> bool:
        return self.role == USER_ROLE

    def closed(self) -> "MessageRecord":
        """Return a closed copy (self when already closed)."""
        if not self.open:
            return self
        return replace(self, open=False)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "role": self.role,
            "text": self.text,
            "created_at": self.created_at,
            "open": self.open,
        }
        if self.speaker is not None:
            d["speaker"] = self.speaker
        return d


@dataclass(frozen=True)
class Note:
    """A finalized agent message woven into the thought soil."""
    content: str
    source_persona: str
    tags: Tuple[str, ...] = ()
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: float = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "source_persona": self.source_persona,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Note":
        note_id = str(data.get("id") or "").strip()
        if not note_id:
            raise ValueError("note must have an id")
        return cls(
            id=note_id,
            content=str(data.get("content") or ""),
            tags=tuple(str(t) for t in (data.get("tags") or [])),
            created_at=float(data.get("created_at") or 0.0),
            source_persona=str(data.get("source_persona") or ""),
        )
