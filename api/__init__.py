"""
HTTP API package.

FastAPI routers live here and are mounted under the "/api" prefix by the
application factory in main.py. Routers reach the shared objects (orchestrator,
registries) through the `AppContext` stored on `app.state.context`, never
through module-level globals, so tests can mount them on an app built around
their own context.
"""

from fastapi import Request

from core.context import AppContext


def get_app_context(request: Request) -> AppContext:
    """FastAPI dependency returning the application context of the current app."""
    return request.app.state.context
