"""
asgi.py -- Application assembly for VulnTrack.

The ASGI entry point servers import. api/main.py builds the complete app;
this module exists so deployment commands name one stable target and never
reach into the api package directly.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
