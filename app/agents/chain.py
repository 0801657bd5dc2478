"""Ordered completion chain with fall-through across providers."""

from pydantic import BaseModel

from app.agents.base import Attachment, CompletionClient, CompletionResult
from app.agents.usage import UsageContext, UsageLogger
from app.core.utils import get_logger

logger = get_logger("statement-importer.chain")


class CompletionChain:
    """Try each configured provider in order until one returns a valid result."""

    def __init__(self, clients: list[CompletionClient], usage_logger: UsageLogger | None = None) -> None:
        """Initialize with the provider order to use."""
        self.clients = clients
        self.usage_logger = usage_logger

    @property
    def providers(self) -> list[str]:
        """Names of the providers that will actually be called."""
        return [client.name for client in self.clients if client.is_configured]

    @property
    def is_available(self) -> bool:
        return bool(self.providers)

    async def complete(
        self,
        prompt: str,
        schema: type[BaseModel] | None = None,
        *,
        attachment: Attachment | None = None,
        temperature: float = 0.1,
        max_tokens: int = 2048,
        system: str | None = None,
        context: UsageContext | None = None,
    ) -> CompletionResult:
        """Return the first successful result, or a failure listing every provider error."""
        errors = []
        for client in self.clients:
            if not client.is_configured:
                logger.info(f"Skipping {client.name}: not configured")
                continue
            result = await client.complete(
                prompt,
                schema,
                attachment=attachment,
                temperature=temperature,
                max_tokens=max_tokens,
                system=system,
            )
            if self.usage_logger is not None:
                self.usage_logger.log(context, result)
            if result.success:
                return result
            logger.warning(f"Provider {client.name} failed, falling through: {result.error}")
            errors.append(f"{client.name}: {result.error}")
        if not errors:
            return CompletionResult(success=False, error="No completion provider is configured")
        return CompletionResult(success=False, error="All completion providers failed. " + "; ".join(errors))
