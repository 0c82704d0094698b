"""Disk-backed note store ("thought soil"), thread-safe with atomic writes."""
from __future__ import annotations

import io
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from bubbles.records import Note
from utils.io import atomic_write_json, ensure_dir, read_json

logger = logging.getLogger(__name__)


class NoteStore:
    """JSON list of notes, newest first.

    Layout:
        data_dir/
          notes.json            # list[dict]
          notes.corrupt.json    # previous file if it could not be parsed

    Writes are last-write-wins; there is no transactional guarantee.
    """

    def __init__(self, data_dir: str, *, filename: str = "notes.json") -> None:
        self.root = ensure_dir(data_dir)
        self.path = self.root / filename
        self._lock = threading.RLock()

    # --------- core API ----------
    def list(self) -> List[Note]:
        with self._lock:
            return self._load()

    def get(self, note_id: str) -> Optional[Note]:
        for n in self.list():
            if n.id == note_id:
                return n
        return None

    def add(self, note: Note) -> Note:
        """Insert at the front; a note with the same id is replaced."""
        with self._lock:
            notes = [n for n in self._load() if n.id != note.id]
            notes.insert(0, note)
            self._write(notes)
        return note

    def remove(self, note_id: str) -> bool:
        with self._lock:
            notes = self._load()
            kept = [n for n in notes if n.id != note_id]
            if len(kept) == len(notes):
                return False
            self._write(kept)
            return True

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)

    def __len__(self) -> int:
        return len(self.list())

    # --------- convenience ----------
    def export_text(self, limit_chars: int = 8000) -> str:
        """Human-readable dump, newest first."""
        buf = io.StringIO()
        for n in self.list():
            ts = datetime.fromtimestamp(n.created_at, tz=timezone.utc).isoformat(timespec="seconds")
            tags = ", ".join(n.tags)
            buf.write(f"[{ts}] {n.source_persona} ({tags})\n{n.content.strip()}\n\n")
        return buf.getvalue()[:limit_chars]

    # --------- internals ----------
    def _load(self) -> List[Note]:
        if not self.path.exists():
            return []
        try:
            raw: Any = read_json(self.path)
            if not isinstance(raw, list):
                raise ValueError("notes file must hold a list")
            return [Note.from_dict(item) for item in raw]
        except (OSError, ValueError, TypeError) as e:
            # Corruption fallback: keep a backup and start fresh.
            bad = self.path.with_suffix(".corrupt.json")
            logger.warning("Note store %s unreadable (%s); moving it to %s", self.path, e, bad)
            try:
                self.path.replace(bad)
            except OSError:
                logger.exception("Could not move corrupt note store aside")
            return []

    def _write(self, notes: List[Note]) -> None:
        payload: List[Dict[str, Any]] = [n.to_dict() for n in notes]
        atomic_write_json(self.path, payload)
