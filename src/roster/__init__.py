from .manager import BUNDLED_PERSONAS, Persona, Roster

__all__ = ["BUNDLED_PERSONAS", "Persona", "Roster"]
