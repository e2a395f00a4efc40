"""
Entry point for Vercel.

This module exposes the FastAPI application instance defined in the
`booksource.main` module. Vercel's Python runtime imports this file and
looks for an object called `app`, which it mounts directly as an ASGI
application.
"""

from booksource.main import app as app  # noqa: F401  re-export FastAPI instance
