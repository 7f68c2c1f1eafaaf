"""
asgi.py -- ASGI entry point for SitePass.

Kept separate from api/main.py so process managers have one stable import
path regardless of how the api/ package is laid out.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 8000 --workers 2

Workers share lockout and login/refresh rate windows through the database.
The coarse slowapi ceiling (api/limiter.py) counts per worker.
"""

from api.main import app

__all__ = ["app"]
