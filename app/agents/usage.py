"""Token and cost accounting for completion calls, written without blocking the caller."""

import asyncio
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.agents.base import CompletionResult
from app.core.db import LlmLog, session_scope
from app.core.utils import get_logger, truncate

logger = get_logger("statement-importer.usage")

TOKENS_PER_UNIT = 1_000_000
MAX_ERROR_LEN = 1000

# USD per 1M tokens
MODEL_PRICING: dict[str, dict[str, Decimal]] = {
    "gpt-4o": {"input": Decimal("2.5"), "output": Decimal("10.0")},
    "gpt-4o-mini": {"input": Decimal("0.15"), "output": Decimal("0.6")},
    "llama-3.3-70b-versatile": {"input": Decimal("0.59"), "output": Decimal("0.79")},
    "meta-llama/llama-4-scout-17b-16e-instruct": {"input": Decimal("0.11"), "output": Decimal("0.34")},
    "gemini-1.5-flash": {"input": Decimal("0.075"), "output": Decimal("0.3")},
    "gemini-1.5-pro": {"input": Decimal("1.25"), "output": Decimal("5.0")},
}


@dataclass(frozen=True)
class UsageContext:
    """Who and what a completion call was made for."""

    prompt_type: str
    user_id: str | None = None
    entity_id: str | None = None
    entity_type: str | None = None


def calculate_cost(model: str | None, input_tokens: int, output_tokens: int) -> Decimal:
    """Cost in USD of one request; unknown models cost nothing."""
    pricing = MODEL_PRICING.get(model or "")
    if pricing is None:
        logger.warning(f"Unknown model for cost calculation: {model}")
        return Decimal(0)
    return (
        Decimal(input_tokens) / TOKENS_PER_UNIT * pricing["input"]
        + Decimal(output_tokens) / TOKENS_PER_UNIT * pricing["output"]
    )


class UsageLogger:
    """Fire-and-forget writer for LlmLog rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None) -> None:
        """Initialize with the session factory; None disables persistence."""
        self.session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    def log(self, context: UsageContext | None, result: CompletionResult) -> None:
        """Schedule the write and return immediately."""
        if self.session_factory is None or context is None:
            return
        task = asyncio.create_task(self._write(context, result))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, context: UsageContext, result: CompletionResult) -> None:
        try:
            cost = calculate_cost(result.model, result.input_tokens, result.output_tokens)
            async with session_scope(self.session_factory) as session:
                session.add(
                    LlmLog(
                        user_id=context.user_id,
                        entity_id=context.entity_id,
                        entity_type=context.entity_type,
                        provider=result.provider or "unknown",
                        model=result.model or "unknown",
                        prompt_type=context.prompt_type,
                        input_tokens=result.input_tokens,
                        output_tokens=result.output_tokens,
                        total_tokens=result.input_tokens + result.output_tokens,
                        cost_usd=f"{cost:.6f}",
                        duration_ms=result.duration_ms,
                        status="success" if result.success else "error",
                        error_message=truncate(result.error, MAX_ERROR_LEN) if result.error else None,
                    )
                )
        except Exception:
            logger.exception(f"Failed to record completion usage for {context.prompt_type}")

    async def drain(self) -> None:
        """Wait for writes still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
