"""Completion provider clients: Groq and OpenAI chat completions in JSON mode."""

import time
from abc import abstractmethod
from typing import Any

from groq import AsyncGroq
from openai import AsyncOpenAI
from pydantic import BaseModel

from app.agents.base import Attachment, CompletionClient, CompletionResult, validate_output
from app.core.settings import Settings
from app.core.utils import get_logger, truncate

logger = get_logger("statement-importer.providers")

MAX_REPLY_LOG_LEN = 300
DEFAULT_SYSTEM_PROMPT = "You are a precise financial data extraction assistant. Reply with a single JSON object."


class ChatCompletionClient(CompletionClient):
    """Shared request and response handling for OpenAI-compatible chat completion APIs."""

    name = "chat"
    accepts_pdf = False

    def __init__(self, api_key: str | None, model: str, vision_model: str, timeout: float) -> None:
        """Initialize the client; the SDK client is only built when a key is present."""
        self.api_key = api_key
        self.model = model
        self.vision_model = vision_model
        self.timeout = timeout
        self._client: Any = self._create_client() if api_key else None

    @abstractmethod
    def _create_client(self) -> Any:
        """Build the provider SDK client."""

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    def _attachment_part(self, attachment: Attachment) -> dict[str, Any]:
        return {"type": "image_url", "image_url": {"url": attachment.data_url()}}

    def _messages(self, prompt: str, attachment: Attachment | None, system: str | None) -> list[dict[str, Any]]:
        system_msg = {"role": "system", "content": system or DEFAULT_SYSTEM_PROMPT}
        if attachment is None:
            return [system_msg, {"role": "user", "content": prompt}]
        content = [{"type": "text", "text": prompt}, self._attachment_part(attachment)]
        return [system_msg, {"role": "user", "content": content}]

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
        """Call the provider once and validate the JSON reply."""
        model = self.vision_model if attachment else self.model
        if not self.is_configured:
            return CompletionResult(success=False, error=f"{self.name} is not configured", provider=self.name)
        if attachment and attachment.is_pdf and not self.accepts_pdf:
            return CompletionResult(
                success=False, error=f"{self.name} does not accept PDF attachments", provider=self.name, model=model
            )
        started = time.monotonic()
        try:
            completion = await self._client.chat.completions.create(
                model=model,
                messages=self._messages(prompt, attachment, system),
                temperature=temperature,
                max_completion_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            msg = f"{self.name} API call failed: {exc}"
            logger.warning(msg)
            return CompletionResult(
                success=False, error=msg, provider=self.name, model=model, duration_ms=duration_ms
            )
        duration_ms = int((time.monotonic() - started) * 1000)
        usage = getattr(completion, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0
        raw_output = (completion.choices[0].message.content or "") if completion.choices else ""
        logger.info(f"{self.name} OUTPUT ({model}, {duration_ms}ms): {truncate(raw_output, MAX_REPLY_LOG_LEN)}")
        data, error = validate_output(raw_output, schema)
        return CompletionResult(
            success=data is not None,
            data=data,
            error=error,
            provider=self.name,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
        )


class GroqCompletionClient(ChatCompletionClient):
    """Groq chat completions. Images only; PDFs are refused so the chain moves on."""

    name = "groq"

    def _create_client(self) -> AsyncGroq:
        return AsyncGroq(api_key=self.api_key, timeout=self.timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GroqCompletionClient":
        return cls(
            settings.groq_api_key,
            settings.groq_model,
            settings.groq_vision_model,
            settings.completion_timeout_seconds,
        )


class OpenAICompletionClient(ChatCompletionClient):
    """OpenAI chat completions, including PDF file parts."""

    name = "openai"
    accepts_pdf = True

    def _create_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)

    def _attachment_part(self, attachment: Attachment) -> dict[str, Any]:
        if attachment.is_pdf:
            return {"type": "file", "file": {"filename": "document.pdf", "file_data": attachment.data_url()}}
        return super()._attachment_part(attachment)

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAICompletionClient":
        return cls(
            settings.openai_api_key,
            settings.openai_model,
            settings.openai_vision_model,
            settings.completion_timeout_seconds,
        )
