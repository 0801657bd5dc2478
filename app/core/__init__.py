"""Core package: provides models, database helpers, settings, errors and shared utilities."""

from .db import Base, get_engine, get_session_factory, init_db  # noqa: F401
from .errors import DomainError  # noqa: F401
from .models import CategorizationResult, NormalizedTransaction  # noqa: F401
from .settings import Settings, get_settings  # noqa: F401
from .utils import get_logger  # noqa: F401
