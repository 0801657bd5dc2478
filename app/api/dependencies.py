"""FastAPI dependencies for DI (owner identity, settings, services).

Services are built once in the application lifespan and kept on `app.state`; these helpers hand them to the routes.
"""

from fastapi import Header, HTTPException, Request

from app.categorization.repositories import CategoryRepository, RuleRepository
from app.core.settings import Settings
from app.services.batch_coordinator import BatchCoordinator
from app.workers.queue import JobQueue

HTTP_401_UNAUTHORIZED = 401


def get_owner_id(x_user_id: str | None = Header(default=None)) -> str:
    """Owner identity supplied by the caller in the `X-User-Id` header."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(HTTP_401_UNAUTHORIZED, "Missing X-User-Id header")
    return x_user_id.strip()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_coordinator(request: Request) -> BatchCoordinator:
    return request.app.state.coordinator


def get_categories(request: Request) -> CategoryRepository:
    return request.app.state.categories


def get_rules(request: Request) -> RuleRepository:
    return request.app.state.rules


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue
