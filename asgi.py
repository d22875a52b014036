"""
asgi.py -- Application assembly for the mail-admin auth API.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
