"""Test fixtures: in-memory database, seeded categories, fake completion providers and a recording queue."""

import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from pydantic import BaseModel

from app.agents.base import Attachment, CompletionClient, CompletionResult, validate_output
from app.agents.chain import CompletionChain
from app.core.db import Business, Category, UserSettings, get_engine, get_session_factory, init_db, session_scope
from app.core.errors import EnqueueFailure
from app.core.models import JobPayload
from app.core.settings import Settings
from app.core.utils import utcnow

OWNER = "user-1"
OTHER_OWNER = "user-2"


class FakeCompletionClient(CompletionClient):
    """Returns canned replies in order; a None reply is a provider failure."""

    def __init__(self, replies: list[dict[str, Any] | None], name: str = "fake", configured: bool = True) -> None:
        self.replies = list(replies)
        self.name = name
        self.configured = configured
        self.prompts: list[str] = []
        self.attachments: list[Attachment | None] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "FakeCompletionClient":
        return cls([])

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def complete(
        self,
        prompt: str,
        schema: type[BaseModel] | None = None,
        *,
        attachment: Attachment | None = None,
        temperature: float = 0.1,
        max_tokens: int = 2048,
        system: str | None = None,
    ) -> CompletionResult:
        self.prompts.append(prompt)
        self.attachments.append(attachment)
        reply = self.replies.pop(0) if self.replies else None
        if reply is None:
            return CompletionResult(success=False, error="fake failure", provider=self.name, model="fake-model")
        data, error = validate_output(json.dumps(reply), schema)
        return CompletionResult(
            success=data is not None,
            data=data,
            error=error,
            provider=self.name,
            model="fake-model",
            input_tokens=10,
            output_tokens=5,
        )


class FakeQueue:
    """Records submitted jobs instead of running them."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.payloads: list[JobPayload] = []
        self.handler = None
        self.started = False

    @property
    def is_running(self) -> bool:
        return self.started

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def enqueue(self, payload: JobPayload) -> None:
        if self.fail:
            msg = "queue unavailable"
            raise EnqueueFailure(msg)
        self.payloads.append(payload)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        groq_api_key=None,
        openai_api_key=None,
        database_url="sqlite+aiosqlite:///:memory:",
        log_file=str(tmp_path / "importer.log"),
    )


@pytest.fixture
async def session_factory() -> AsyncIterator:
    engine = get_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield get_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def categories(session_factory) -> dict[str, str]:
    """System and owner categories by name; includes one soft-deleted and one business-only category."""
    rows = [
        Category(name="Groceries", type="system", usage_scope="personal", transaction_type="expense"),
        Category(name="Dining", type="system", usage_scope="both", transaction_type="expense"),
        Category(name="Salary", type="system", usage_scope="personal", transaction_type="income"),
        Category(name="Office Supplies", type="system", usage_scope="business", transaction_type="expense"),
        Category(name="Coffee", type="user", user_id=OWNER, usage_scope="personal", transaction_type="expense"),
        Category(name="Other Owner", type="user", user_id=OTHER_OWNER, usage_scope="personal"),
        Category(name="Old", type="system", usage_scope="both", transaction_type="expense", deleted_at=utcnow()),
    ]
    async with session_scope(session_factory) as session:
        session.add_all(rows)
        session.add(UserSettings(user_id=OWNER, usage_type="personal", country="US", currency="USD"))
        session.add(Business(id="biz-1", user_id=OWNER, name="Side Hustle"))
    return {row.name: row.id for row in rows}


@pytest.fixture
def make_chain() -> Callable[..., tuple[CompletionChain, FakeCompletionClient]]:
    def factory(*replies: dict[str, Any] | None) -> tuple[CompletionChain, FakeCompletionClient]:
        client = FakeCompletionClient(list(replies))
        return CompletionChain([client]), client

    return factory


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()
