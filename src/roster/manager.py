from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from bubbles.grammar import is_valid_persona_id

logger = logging.getLogger(__name__)

BUNDLED_PERSONAS = Path(__file__).resolve().parent / "personas.yaml"


# -----------------------------
# Data model
# -----------------------------

@dataclass(frozen=True)
class Persona:
    """
    Display metadata and behavioural directive for one persona.

    Fields:
        id: Tag used in the stream, e.g. "moyan".
        name: Display name.
        type: Short personality label.
        catchphrase: Line shown on the persona card.
        description: Longer blurb.
        color: Opaque styling hint for the renderer.
        instruction: Directive text injected into the system instruction.
    """
    id: str
    name: str
    type: str = ""
    catchphrase: str = ""
    description: str = ""
    color: str = ""
    instruction: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"id": self.id, "name": self.name}
        for key in ("type", "catchphrase", "description", "color", "instruction"):
            value = getattr(self, key)
            if value:
                d[key] = value
        return d


# -----------------------------
# Roster
# -----------------------------

class Roster:
    """
    Persona catalogue plus the currently active subset.

    YAML layout:
        system_name: str
        user_title: str
        personas: [{id, name, type, catchphrase, description, color, instruction}, ...]
        active: [id, ...]

    The catalogue is fixed once loaded. Only the active subset changes, and
    callers are expected to change it between turns.
    """

    def __init__(
        self,
        path: Union[str, Path, None] = None,
        *,
        active: Optional[Iterable[str]] = None,
    ) -> None:
        self.path = Path(path) if path else BUNDLED_PERSONAS
        self._lock = threading.RLock()
        self._system_name = "伴星"
        self._user_title = "念主"
        self._personas: Dict[str, Persona] = {}
        self._active: List[str] = []

        self._load()

        # constructor override wins over the YAML selection
        if active is not None:
            self.set_active(active, save=False)

    # ---------- properties ----------

    @property
    def system_name(self) -> str:
        return self._system_name

    @property
    def user_title(self) -> str:
        return self._user_title

    @property
    def ids(self) -> List[str]:
        return list(self._personas)

    # ---------- lookup ----------

    def __contains__(self, persona_id: object) -> bool:
        return persona_id in self._personas

    def get(self, persona_id: str) -> Optional[Persona]:
        return self._personas.get(persona_id)

    def name_of(self, persona_id: str) -> str:
        p = self._personas.get(persona_id)
        return p.name if p else persona_id

    def list_personas(self) -> List[Persona]:
        return list(self._personas.values())

    # ---------- active subset ----------

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._active)

    def active_personas(self) -> List[Persona]:
        with self._lock:
            return [self._personas[i] for i in self._active]

    def is_active(self, persona_id: str) -> bool:
        with self._lock:
            return persona_id in self._active

    def activate(self, persona_id: str, *, save: bool = False) -> bool:
        with self._lock:
            if persona_id not in self._personas or persona_id in self._active:
                return False
            self._active.append(persona_id)
            if save:
                self._save()
            return True

    def deactivate(self, persona_id: str, *, save: bool = False) -> bool:
        with self._lock:
            if persona_id not in self._active:
                return False
            self._active.remove(persona_id)
            if save:
                self._save()
            return True

    def toggle(self, persona_id: str, *, save: bool = False) -> bool:
        """Flip a persona in or out of the active set. Returns the new state."""
        with self._lock:
            if persona_id not in self._personas:
                raise KeyError(persona_id)
            if persona_id in self._active:
                self.deactivate(persona_id, save=save)
                return False
            self.activate(persona_id, save=save)
            return True

    def set_active(self, ids: Iterable[str], *, save: bool = False) -> List[str]:
        with self._lock:
            chosen: List[str] = []
            for i in ids:
                if i in self._personas and i not in chosen:
                    chosen.append(i)
                else:
                    logger.warning("Ignoring unknown or duplicate active persona %r", i)
            self._active = chosen
            if save:
                self._save()
            return list(self._active)

    # ---------- persistence & schema ----------

    def _load(self) -> None:
        """Load YAML, falling back to the bundled catalogue if the file is missing."""
        source = self.path if self.path.exists() else BUNDLED_PERSONAS
        if source is not self.path:
            logger.warning("Roster file %s not found; using bundled personas.", self.path)

        with source.open("r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise RuntimeError(f"Failed to parse roster file {source}: {e}")

        if not isinstance(data, dict):
            raise RuntimeError(f"Invalid roster format in {source}, expected dict.")

        self._system_name = str(data.get("system_name") or self._system_name)
        self._user_title = str(data.get("user_title") or self._user_title)
        self._personas = self._normalize_personas(data.get("personas", []))
        if not self._personas:
            raise RuntimeError(f"Roster file {source} defines no personas.")

        active = data.get("active")
        if active is None:
            active = list(self._personas)
        self.set_active(active, save=False)

    def _save(self) -> None:
        """Persist catalogue and active subset to YAML (tmp file + replace)."""
        if self.path == BUNDLED_PERSONAS:
            logger.warning("Not writing roster changes into the bundled personas file.")
            return
        payload: Dict[str, Any] = {
            "system_name": self._system_name,
            "user_title": self._user_title,
            "personas": [p.to_dict() for p in self._personas.values()],
            "active": list(self._active),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp.yaml")
        with tmp.open("w", encoding="utf-8") as f:
            yaml.safe_dump(payload, f, allow_unicode=True, sort_keys=False)
        tmp.replace(self.path)

    @staticmethod
    def _normalize_personas(raw: Any) -> Dict[str, Persona]:
        out: Dict[str, Persona] = {}
        if not isinstance(raw, list):
            return out
        for item in raw:
            if not isinstance(item, dict):
                continue
            pid = str(item.get("id") or "").strip()
            if not is_valid_persona_id(pid):
                logger.warning("Skipping persona with invalid id %r", pid)
                continue
            if pid in out:
                logger.warning("Duplicate persona id %r; keeping the first", pid)
                continue
            out[pid] = Persona(
                id=pid,
                name=str(item.get("name") or pid).strip(),
                type=str(item.get("type") or "").strip(),
                catchphrase=str(item.get("catchphrase") or "").strip(),
                description=str(item.get("description") or "").strip(),
                color=str(item.get("color") or "").strip(),
                instruction=str(item.get("instruction") or "").strip(),
            )
        return out
