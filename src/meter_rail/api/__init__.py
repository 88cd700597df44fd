"""
METER RAIL - API Module

FastAPI server exposing:
- Per-request and batch usage metering
- Unit quotes
- Recorded usage lookup
"""

from .server import app, create_app, AppState

__all__ = ["app", "create_app", "AppState"]
