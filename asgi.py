"""
asgi.py -- ASGI entry point for the Open Opportunities identity service.

The application object and all of its routers are assembled in api/main.py;
this module only gives process managers a stable import path.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
