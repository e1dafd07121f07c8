"""
asgi.py -- Application assembly for workgate.

The ASGI entry point servers import. api/main.py owns the app; this module
only re-exports it so the server command stays stable if assembly grows.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
