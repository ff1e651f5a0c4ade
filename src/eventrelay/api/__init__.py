"""
Package: api
Description: FastAPI operations endpoints for the delivery coordinator.
"""

from eventrelay.api.app import app_factory, create_app
from eventrelay.api.router import create_router

__all__ = ["app_factory", "create_app", "create_router"]
