"""
LLM Client Infrastructure
==========================

Wrapper for OpenAI-compatible chat completion providers (DeepSeek by default)
providing a clean interface for LLM operations.

The application layer depends on ``ILLMClient`` only; any transport, timeout,
HTTP status or empty-response failure surfaces as ``LLMException``.
"""

import json
import time
from typing import List, Optional
from abc import ABC, abstractmethod

from openai import AsyncOpenAI

from helpdesk.config import settings, Settings
from helpdesk.core import LLMException, ConfigurationException
from helpdesk.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ChatCompletionResult:
    """Result of a chat completion."""

    def __init__(
        self,
        content: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int
    ):
        self.content = content
        self.model = model
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.total_tokens = prompt_tokens + completion_tokens
        self.latency_ms = latency_ms


class ILLMClient(ABC):
    """
    Interface for LLM client operations.

    Following Interface Segregation Principle - only methods
    actually needed by the application are defined.
    """

    provider: str = "unknown"
    model: str = "unknown"

    @abstractmethod
    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """Generate chat completion."""


class OpenAICompatibleLLMClient(ILLMClient):
    """
    Chat completions client for any OpenAI-compatible API.

    DeepSeek, Groq and OpenAI all accept the same request body, so only the
    base URL, key and model differ. SDK-level retries are disabled: a failed
    call is handled by the caller's deterministic fallback.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        provider: Optional[str] = None
    ):
        self._api_key = api_key or settings.llm_api_key
        if not self._api_key:
            raise ConfigurationException("LLM API key not configured")

        self.provider = provider or settings.llm_provider
        self.model = model or settings.llm_model
        self._timeout = timeout_seconds or settings.llm_timeout_seconds
        self._client = AsyncOpenAI(
            api_key=self._api_key,
            base_url=base_url or settings.llm_base_url,
            timeout=self._timeout,
            max_retries=0
        )

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """
        Generate a chat completion.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens to generate
            operation: Operation name for logging (classification, draft)

        Returns:
            ChatCompletionResult with generated text

        Raises:
            LLMException: If the request fails, times out or returns no content
        """
        start_time = time.perf_counter()

        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens
            )
        except Exception as e:
            raise LLMException(
                f"Chat completion failed: {e}",
                {"operation": operation, "provider": self.provider}
            ) from e

        latency_ms = int((time.perf_counter() - start_time) * 1000)

        if not response.choices or not response.choices[0].message.content:
            raise LLMException("Chat completion returned no content", {"operation": operation})

        content = response.choices[0].message.content.strip()
        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0

        logger.debug(
            "LLM call completed",
            extra={
                "operation": operation,
                "provider": self.provider,
                "model": self.model,
                "latency_ms": latency_ms,
                "tokens_used": prompt_tokens + completion_tokens
            }
        )

        return ChatCompletionResult(
            content=content,
            model=self.model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms
        )


class MockLLMClient(ILLMClient):
    """
    Mock LLM client for testing and local development.

    Returns predictable, well-formed JSON responses without calling external APIs.
    """

    provider = "mock"
    model = "mock-model"

    def __init__(self, category: str = "tech", confidence: float = 0.92):
        self._category = category
        self._confidence = confidence

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """Return mock response based on operation type."""
        if operation == "classification":
            payload = {"predictedCategory": self._category, "confidence": self._confidence}
            content = f"```json\n{json.dumps(payload, indent=2)}\n```"
        elif operation == "draft":
            payload = {
                "draftReply": "Thanks for reaching out. Please follow the steps in our guide [1].",
                "citations": ["Mock Article"]
            }
            content = json.dumps(payload)
        else:
            content = "This is a mock LLM response for testing purposes."

        return ChatCompletionResult(
            content=content,
            model=self.model,
            prompt_tokens=100,
            completion_tokens=len(content.split()),
            latency_ms=1
        )


def create_llm_client(app_settings: Optional[Settings] = None) -> Optional[ILLMClient]:
    """
    Build the configured LLM client.

    Returns None in stub mode or when no API key is configured, which makes
    the classifier and drafter use their deterministic variants.
    """
    app_settings = app_settings or settings
    if not app_settings.llm_enabled:
        logger.info(
            "LLM client disabled - deterministic classifier and drafter in use",
            extra={"stub_mode": app_settings.stub_mode}
        )
        return None

    return OpenAICompatibleLLMClient(
        api_key=app_settings.llm_api_key,
        base_url=app_settings.llm_base_url,
        model=app_settings.llm_model,
        timeout_seconds=app_settings.llm_timeout_seconds,
        provider=app_settings.llm_provider
    )
