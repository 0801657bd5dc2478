"""Base completion client abstraction.

This module defines the abstract base class every completion provider implements, the uniform result it returns
and the helpers that turn a raw model reply into a validated structured object.
"""

import base64
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from app.core.settings import Settings
from app.core.utils import get_logger

logger = get_logger("statement-importer.agents")

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class Attachment:
    """A binary file sent alongside a prompt."""

    data: bytes
    media_type: str

    @property
    def is_pdf(self) -> bool:
        return self.media_type == "application/pdf"

    def data_url(self) -> str:
        """Base64 data URL form accepted by the chat completion APIs."""
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"


class CompletionResult(BaseModel):
    """Uniform outcome of a completion call, successful or not."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    provider: str | None = None
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0


class CompletionClient(ABC):
    """Abstract base class for all completion providers."""

    name: str = "base"

    @classmethod
    @abstractmethod
    def from_settings(cls, settings: Settings) -> "CompletionClient":
        """Build the client from application settings."""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """False when the provider has no credentials and must be skipped."""

    @abstractmethod
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
        """Run one structured completion and validate it against the schema."""


def extract_json(raw_output: str) -> dict[str, Any] | None:
    """Extract the JSON object from a model reply, tolerating fences or surrounding text."""
    text = raw_output.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(text)
        if not match:
            return None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse JSON: {e}")
            return None
    return data if isinstance(data, dict) else None


def validate_output(raw_output: str, schema: type[BaseModel] | None) -> tuple[dict[str, Any] | None, str | None]:
    """Parse and validate a reply, returning (data, error)."""
    data = extract_json(raw_output)
    if data is None:
        return None, "Model reply did not contain a JSON object"
    if schema is None:
        return data, None
    try:
        return schema.model_validate(data).model_dump(mode="json"), None
    except ValidationError as exc:
        return None, f"Model reply did not match {schema.__name__}: {exc.error_count()} errors"
