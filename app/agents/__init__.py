"""Agents package: provides the completion client interface, provider registry, chain and extraction agents."""

from .base import Attachment, CompletionClient, CompletionResult  # noqa: F401
from .chain import CompletionChain  # noqa: F401
from .registry import ProviderRegistry  # noqa: F401
