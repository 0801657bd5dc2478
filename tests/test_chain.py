"""Tests for the completion chain, provider registry and usage logging."""

import pytest
from conftest import OWNER, FakeCompletionClient
from pydantic import BaseModel
from sqlalchemy import select

from app.agents.base import Attachment, CompletionClient, extract_json
from app.agents.chain import CompletionChain
from app.agents.providers import ChatCompletionClient, GroqCompletionClient
from app.agents.registry import ProviderRegistry
from app.agents.usage import UsageContext, UsageLogger, calculate_cost
from app.core.db import LlmLog


class Reply(BaseModel):
    value: int


async def test_chain_falls_through_to_next_provider() -> None:
    unconfigured = FakeCompletionClient([{"value": 1}], name="off", configured=False)
    failing = FakeCompletionClient([None], name="first")
    working = FakeCompletionClient([{"value": 3}], name="second")
    chain = CompletionChain([unconfigured, failing, working])
    if chain.providers != ["first", "second"]:
        msg = f"Unexpected providers {chain.providers}"
        raise AssertionError(msg)
    result = await chain.complete("prompt", Reply)
    if not result.success or result.data != {"value": 3} or result.provider != "second":
        msg = f"Expected the second provider's reply, got {result}"
        raise AssertionError(msg)
    if unconfigured.prompts:
        msg = "Unconfigured providers must not be called"
        raise AssertionError(msg)


async def test_chain_reports_every_failure() -> None:
    chain = CompletionChain([FakeCompletionClient([None], name="a"), FakeCompletionClient([{"other": 1}], name="b")])
    result = await chain.complete("prompt", Reply)
    if result.success:
        msg = "Expected the chain to fail"
        raise AssertionError(msg)
    if "a: fake failure" not in result.error or "b: Model reply did not match Reply" not in result.error:
        msg = f"Expected both provider errors, got {result.error}"
        raise AssertionError(msg)

    empty = await CompletionChain([]).complete("prompt")
    if empty.success or empty.error != "No completion provider is configured":
        msg = f"Unexpected empty-chain result {empty}"
        raise AssertionError(msg)


async def test_usage_is_logged_per_attempt(session_factory) -> None:
    usage = UsageLogger(session_factory)
    chain = CompletionChain(
        [FakeCompletionClient([None], name="a"), FakeCompletionClient([{"value": 1}], name="b")], usage_logger=usage
    )
    await chain.complete("prompt", Reply, context=UsageContext(prompt_type="receipt", user_id=OWNER))
    await usage.drain()
    async with session_factory() as session:
        rows = list((await session.scalars(select(LlmLog).order_by(LlmLog.provider))).all())
    if [(row.provider, row.status) for row in rows] != [("a", "error"), ("b", "success")]:
        msg = f"Unexpected log rows {[(row.provider, row.status) for row in rows]}"
        raise AssertionError(msg)
    if rows[1].total_tokens != 15 or rows[1].user_id != OWNER:
        msg = f"Unexpected usage row {rows[1].total_tokens}, {rows[1].user_id}"
        raise AssertionError(msg)


def test_calculate_cost() -> None:
    cost = calculate_cost("gpt-4o-mini", 1_000_000, 1_000_000)
    if cost != calculate_cost("gpt-4o-mini", 1_000_000, 0) + calculate_cost("gpt-4o-mini", 0, 1_000_000):
        msg = "Cost should add input and output"
        raise AssertionError(msg)
    if calculate_cost("unknown-model", 100, 100) != 0:
        msg = "Unknown models should cost nothing"
        raise AssertionError(msg)


def test_registry_builds_chains(settings) -> None:
    chain = ProviderRegistry.build_chain(["groq", "openai"], settings)
    if chain.is_available:
        msg = "Providers without keys should not be available"
        raise AssertionError(msg)
    with pytest.raises(ValueError, match="Unknown completion providers"):
        ProviderRegistry.build_chain(["groq", "carrier-pigeon"], settings)


async def test_groq_refuses_pdf_attachments() -> None:
    client = GroqCompletionClient("test-key", "model", "vision-model", 5.0)
    result = await client.complete("prompt", attachment=Attachment(data=b"%PDF-1.4", media_type="application/pdf"))
    if result.success or "PDF" not in (result.error or ""):
        msg = f"Expected a PDF refusal, got {result}"
        raise AssertionError(msg)


def test_providers_must_implement_construction() -> None:
    class Incomplete(ChatCompletionClient):
        name = "incomplete"

    with pytest.raises(TypeError):
        Incomplete(None, "model", "vision-model", 5.0)
    with pytest.raises(TypeError):
        CompletionClient()


def test_extract_json_tolerates_fences() -> None:
    data = extract_json('Here you go:\n```json\n{"value": 2}\n```')
    if data != {"value": 2}:
        msg = f"Unexpected parse {data}"
        raise AssertionError(msg)
    if extract_json("[1, 2]") is not None:
        msg = "Only JSON objects are accepted"
        raise AssertionError(msg)
