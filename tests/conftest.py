"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterable, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from companion_server.llm import ModelRequest  # noqa: E402
from companion_server.memory import NoteStore  # noqa: E402
from roster.manager import Roster  # noqa: E402


class ScriptedService:
    """Model service that replays fixed fragments, optionally failing midway."""

    def __init__(self, fragments: Iterable[str] = (), *, fail_after: Optional[int] = None,
                 error: Optional[BaseException] = None):
        self.fragments: List[str] = list(fragments)
        self.fail_after = fail_after
        self.error = error or RuntimeError("upstream exploded")
        self.requests: List[ModelRequest] = []

    def stream(self, request: ModelRequest):
        self.requests.append(request)
        for i, frag in enumerate(self.fragments):
            if self.fail_after is not None and i >= self.fail_after:
                raise self.error
            yield frag
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise self.error


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for notes during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def roster_file(tmp_path: Path) -> Path:
    """Small writable roster with personas a, b and c (only a and b active)."""
    path = tmp_path / "personas.yaml"
    path.write_text(
        "system_name: Test Star\n"
        "user_title: Pilot\n"
        "personas:\n"
        "  - {id: a, name: Alpha, instruction: Be brief.}\n"
        "  - {id: b, name: Beta, instruction: Be kind.}\n"
        "  - {id: c, name: Gamma, instruction: Be odd.}\n"
        "active: [a, b]\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture(scope="function")
def roster(roster_file: Path) -> Roster:
    return Roster(roster_file)


@pytest.fixture(scope="function")
def notes(tmp_data_dir: Path) -> NoteStore:
    return NoteStore(str(tmp_data_dir))


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var.startswith("COMPANION__") or var in {"COMPANION_CONFIG", "OPENAI_API_KEY"}:
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def scripted():
    return ScriptedService
