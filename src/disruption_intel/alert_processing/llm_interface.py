"""
Generative text service client for the disruption alert pipeline.

Sends a system instruction plus a user prompt to an OpenAI-compatible chat
completions endpoint and returns the raw text. This is the only place the
pipeline talks to the external service.

Invariants:
- A non-2xx response, a transport failure or an empty completion raises
  ``GenerationError``; no retry happens here
- ``top_k`` is passed through ``extra_body`` because it is not part of the
  OpenAI request schema but is honoured by compatible providers
"""
import os
import time
from enum import StrEnum
from typing import Any, Optional

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field, field_validator

from disruption_intel.alert_processing.config_interface import LLMConfig, LLMPurpose
from disruption_intel.logger import get_logger

logger = get_logger(__name__)


class GenerationError(Exception):
    """The generative service call failed or returned no usable text."""


class GenerationConnectionError(GenerationError):
    """Transport or API status failure."""


class EmptyGenerationError(GenerationError):
    """The service answered without text content."""


class MessageRole(StrEnum):
    """Valid roles for chat messages."""

    SYSTEM = "system"
    USER = "user"


class ChatMessage(BaseModel):
    """A single chat message with validated role and content."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    role: MessageRole
    content: str = Field(min_length=1)

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, v: str) -> str:
        """Ensure content is not just whitespace."""
        if not v.strip():
            raise ValueError("Message content cannot be empty or whitespace-only")
        return v

    def to_dict(self) -> dict[str, str]:
        """Convert to OpenAI API format."""
        return {"role": self.role.value, "content": self.content}


class GenerationRequest(BaseModel):
    """One call to the generative service."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    purpose: LLMPurpose
    system_instruction: str = Field(min_length=1)
    user_prompt: str = Field(min_length=1)
    temperature: float = Field(ge=0, le=2)
    top_p: float = Field(gt=0, le=1)
    top_k: Optional[int] = Field(default=None, gt=0)
    max_output_tokens: int = Field(gt=0)

    def messages(self) -> list[ChatMessage]:
        """System and user messages in API order."""
        return [
            ChatMessage(role=MessageRole.SYSTEM, content=self.system_instruction),
            ChatMessage(role=MessageRole.USER, content=self.user_prompt),
        ]


class GenerationResult(BaseModel):
    """Result of a completion call."""

    model_config = ConfigDict(extra="forbid")

    content: str
    model: str
    purpose: LLMPurpose
    tokens_in: int = Field(ge=0)
    tokens_out: int = Field(ge=0)
    latency_ms: int = Field(ge=0)


def build_request(
    config: LLMConfig,
    purpose: LLMPurpose,
    system_instruction: str,
    user_prompt: str,
) -> GenerationRequest:
    """Combine rendered prompts with the configured sampling parameters for *purpose*."""
    params = config.get_parameters(purpose)
    return GenerationRequest(
        purpose=purpose,
        system_instruction=system_instruction,
        user_prompt=user_prompt,
        temperature=params.temperature,
        top_p=params.top_p,
        top_k=params.top_k,
        max_output_tokens=params.max_output_tokens,
    )


def create_async_client(config: LLMConfig) -> AsyncOpenAI:
    """
    Create the async OpenAI-compatible client.

    :raises GenerationError: If the API key variable is not set.
    """
    api_key = os.getenv(config.api_key_env)
    if not api_key:
        raise GenerationError(f"API key not found in environment: {config.api_key_env}")
    if config.base_url:
        return AsyncOpenAI(base_url=config.base_url, api_key=api_key, timeout=config.timeout)
    return AsyncOpenAI(api_key=api_key, timeout=config.timeout)


class GenerationClient:
    """Sends instruction pairs to the generative service and returns raw text."""

    def __init__(self, config: LLMConfig, client: Optional[AsyncOpenAI] = None) -> None:
        """Initialize the client; *client* is created from config when omitted."""
        self._config = config
        self._client = client if client is not None else create_async_client(config)

    @property
    def config(self) -> LLMConfig:
        """LLM configuration this client was built with."""
        return self._config

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Execute one chat completion.

        :param request: Instruction pair with sampling parameters.
        :return: Raw completion text with usage metadata.
        :raises GenerationConnectionError: On transport or API status failure.
        :raises EmptyGenerationError: When the completion has no text.
        """
        request_kwargs: dict[str, Any] = {
            "model": self._config.model_id,
            "messages": [msg.to_dict() for msg in request.messages()],
            "temperature": request.temperature,
            "top_p": request.top_p,
            "max_tokens": request.max_output_tokens,
        }
        if request.top_k is not None:
            request_kwargs["extra_body"] = {"top_k": request.top_k}
        if self._config.json_mode:
            request_kwargs["response_format"] = {"type": "json_object"}

        start = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(**request_kwargs)
        except OpenAIError as e:
            raise GenerationConnectionError(
                f"API error for {self._config.model_id} ({request.purpose}): {e}"
            ) from e
        latency = int((time.perf_counter() - start) * 1000)

        choices = getattr(response, "choices", None) or []
        content = (choices[0].message.content or "") if choices else ""
        if not content.strip():
            raise EmptyGenerationError(
                f"{self._config.model_id} returned no text content for {request.purpose}"
            )

        usage = response.usage
        tokens_in = usage.prompt_tokens if usage else 0
        tokens_out = usage.completion_tokens if usage else 0
        logger.debug(
            "Completion purpose=%s model=%s tokens_in=%d tokens_out=%d latency_ms=%d",
            request.purpose, self._config.model_id, tokens_in, tokens_out, latency,
        )

        return GenerationResult(
            content=content,
            model=self._config.model_id,
            purpose=request.purpose,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            latency_ms=latency,
        )
