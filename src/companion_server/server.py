"""FastAPI application exposing one companion conversation."""
from __future__ import annotations

import json
from typing import Any, Dict, Iterator, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask
from pydantic import BaseModel, Field

from roster.manager import Roster

from . import __version__
from .config import load_config
from .llm import ModelService, create_from_config
from .memory import NoteStore
from .session import CompanionSession, TurnStream


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    stream: bool = Field(default=True, description="NDJSON update frames instead of one final body.")


class ToggleRequest(BaseModel):
    id: str = Field(..., min_length=1)


class NoteRequest(BaseModel):
    index: int = Field(..., description="Position of the message in the history (negative counts from the end).")


# -----------------------------
# Utilities
# -----------------------------
def _ndjson(updates: TurnStream) -> Iterator[str]:
    try:
        for update in updates:
            yield json.dumps(update.to_dict(), ensure_ascii=False) + "\n"
    finally:
        updates.close()


def _roster_payload(roster: Roster) -> Dict[str, Any]:
    return {
        "personas": [p.to_dict() for p in roster.list_personas()],
        "active": roster.active_ids(),
    }


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    service: Optional[ModelService] = None,
    notes: Optional[NoteStore] = None,
    roster: Optional[Roster] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    service = service or create_from_config(cfg)
    session = CompanionSession.from_config(cfg, service, roster=roster, notes=notes)

    app = FastAPI(title="Companion Star Server", version=__version__)
    app.state.session = session
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "in_flight": session.in_flight,
            "state": session.state.value,
            "notes_dir": str(session.notes.root) if session.notes is not None else None,
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        redacted = dict(cfg)
        model_cfg = dict(redacted.get("model", {}) or {})
        model_cfg.pop("api_key", None)
        redacted["model"] = model_cfg
        return JSONResponse(redacted)

    # ---------------- Conversation ----------------
    @app.get("/history")
    def get_history() -> Dict[str, Any]:
        return session.snapshot().to_dict()

    @app.post("/history/reset")
    def reset_history() -> Dict[str, Any]:
        if not session.reset():
            raise HTTPException(status_code=409, detail="A turn is in flight.")
        return session.snapshot().to_dict()

    @app.post("/chat")
    def chat(req: ChatRequest):
        msg = (req.message or "").strip()
        if not msg:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")

        handle = session.submit(msg)
        if handle is None:
            raise HTTPException(status_code=409, detail="A turn is already in flight.")

        if req.stream:
            return StreamingResponse(
                _ndjson(session.follow(handle)),
                media_type="application/x-ndjson",
                background=BackgroundTask(session.abandon, handle),
            )

        session.run_turn(handle)
        return session.snapshot().to_dict()

    # ---------------- Roster ----------------
    @app.get("/roster")
    def get_roster() -> Dict[str, Any]:
        return _roster_payload(session.roster)

    @app.post("/roster/toggle")
    def toggle_persona(req: ToggleRequest) -> Dict[str, Any]:
        if req.id not in session.roster:
            raise HTTPException(status_code=404, detail="Persona not found.")
        state = session.toggle_persona(req.id)
        if state is None:
            raise HTTPException(status_code=409, detail="Cannot change personas during a turn.")
        return {"id": req.id, "enabled": state, **_roster_payload(session.roster)}

    # ---------------- Notes ----------------
    @app.get("/notes")
    def list_notes() -> Dict[str, Any]:
        store = session.notes
        return {"notes": [n.to_dict() for n in store.list()] if store is not None else []}

    @app.get("/notes/export", response_class=PlainTextResponse)
    def export_notes() -> str:
        return session.notes.export_text() if session.notes is not None else ""

    @app.post("/notes", status_code=201)
    def weave_note(req: NoteRequest) -> Dict[str, Any]:
        note = session.weave(req.index)
        if note is None:
            raise HTTPException(status_code=422, detail="Only finished persona messages can become notes.")
        return note.to_dict()

    @app.delete("/notes/{note_id}")
    def delete_note(note_id: str) -> Dict[str, Any]:
        if session.notes is None or not session.notes.remove(note_id):
            raise HTTPException(status_code=404, detail="Note not found.")
        return {"ok": True, "id": note_id}

    return app
