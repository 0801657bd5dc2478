"""API package: provides FastAPI dependencies and route definitions for the application."""

from .dependencies import get_coordinator, get_owner_id, get_rules  # noqa: F401
from .routes import router  # noqa: F401
