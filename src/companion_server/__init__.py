"""Companion server: several personas sharing one streamed chat turn.

Typical usage
-------------
from companion_server import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.3.0"


# ---------------------------------------------------------------------
# App factory export
# ---------------------------------------------------------------------
def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    Forwards to :func:`companion_server.server.create_app`. The import is
    deferred so that ``import companion_server`` works without FastAPI.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
