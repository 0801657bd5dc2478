"""Provider registry for completion clients.

This module maps provider names used in settings to client classes, and builds the ordered completion chains the
extraction and categorization agents are given at startup.
"""

from typing import ClassVar

from app.agents.base import CompletionClient
from app.agents.chain import CompletionChain
from app.agents.providers import GroqCompletionClient, OpenAICompletionClient
from app.agents.usage import UsageLogger
from app.core.settings import Settings


class ProviderRegistry:
    """Registry for completion client classes."""

    _registry: ClassVar[dict[str, type[CompletionClient]]] = {}

    @classmethod
    def register(cls, name: str, client_cls: type[CompletionClient]) -> None:
        """Register a client class under a provider name."""
        cls._registry[name] = client_cls

    @classmethod
    def get(cls, name: str) -> type[CompletionClient]:
        """Retrieve a client class by provider name."""
        return cls._registry[name]

    @classmethod
    def available(cls) -> list[str]:
        """List all registered provider names."""
        return list(cls._registry.keys())

    @classmethod
    def create(cls, name: str, settings: Settings) -> CompletionClient:
        """Instantiate a registered provider from settings."""
        return cls.get(name).from_settings(settings)

    @classmethod
    def build_chain(cls, names: list[str], settings: Settings, usage_logger: UsageLogger | None = None) -> CompletionChain:
        """Build an ordered chain, one client per provider name."""
        unknown = [name for name in names if name not in cls._registry]
        if unknown:
            msg = f"Unknown completion providers: {', '.join(unknown)}"
            raise ValueError(msg)
        clients = [cls.create(name, settings) for name in names]
        return CompletionChain(clients, usage_logger=usage_logger)


ProviderRegistry.register("groq", GroqCompletionClient)
ProviderRegistry.register("openai", OpenAICompletionClient)
