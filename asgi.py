"""
asgi.py -- Application assembly for Folio.

The ASGI server imports the app from here rather than from api/main.py so
deployment config does not depend on the package layout.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
