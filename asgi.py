"""
asgi.py -- ASGI entry point for the Sentinel identity API.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so deployment tooling has one stable import
path while api/main.py stays importable in tests without side effects beyond
building the app object.
"""

from api.main import app

__all__ = ["app"]
