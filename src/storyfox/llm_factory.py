"""Text generation backends and the factory that builds them from settings."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp
from huggingface_hub import AsyncInferenceClient
from huggingface_hub.errors import HfHubHTTPError
from langchain.chat_models import init_chat_model
from langchain_core.messages import HumanMessage, SystemMessage

from storyfox.context import CredentialStore, GenerationSettings
from storyfox.decoding import extract_response_text
from storyfox.error_handling import (
    BackendTimeoutError,
    GeneratorUnavailableError,
    NoCredentialError,
)
from storyfox.models import TextProviderKind
from storyfox.providers import OPENAI_COMPATIBLE_BASE_URLS, raise_for_backend_status

logger = logging.getLogger(__name__)


def _coerce_message_content(content: Any) -> str:
    """Convert LangChain message content (which may be structured) into text."""

    if content is None:
        return ""

    if isinstance(content, str):
        return content

    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if item is None:
                continue
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                text = item.get("text") or item.get("content")
                if text:
                    parts.append(str(text))
        return "".join(parts)

    return str(content)


class TextGenerationBackend(ABC):
    """Anything that turns a system and user prompt into raw model text."""

    name: str = "text"

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        """Return the model's raw text response."""


class ChatModelTextBackend(TextGenerationBackend):
    """Wraps a LangChain chat model."""

    def __init__(self, chat_model: Any, name: str = "chat_model") -> None:
        self._chat_model = chat_model
        self.name = name

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        runnable = self._chat_model.bind(max_tokens=max_tokens, temperature=temperature)
        response = await runnable.ainvoke([
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_prompt),
        ])
        return _coerce_message_content(getattr(response, "content", response))


class OpenAICompatibleTextBackend(TextGenerationBackend):
    """Chat completions over HTTP for OpenRouter, Together and OpenAI."""

    def __init__(
        self,
        provider: TextProviderKind,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        self.provider = provider
        self.name = provider.value
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or OPENAI_COMPATIBLE_BASE_URLS[provider.value]).rstrip("/")
        self.timeout_seconds = timeout_seconds

    def build_payload(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    f"{self.base_url}/chat/completions",
                    headers=headers,
                    json=self.build_payload(system_prompt, user_prompt, max_tokens, temperature),
                ) as response:
                    body = await response.text()
                    raise_for_backend_status(response.status, body, response.headers)
        except asyncio.TimeoutError as e:
            raise BackendTimeoutError(f"{self.name} did not respond within {self.timeout_seconds}s") from e
        except aiohttp.ClientConnectionError as e:
            raise GeneratorUnavailableError(f"Could not reach {self.name}: {e}") from e

        return extract_response_text(body)


class HuggingFaceTextBackend(TextGenerationBackend):
    """Chat completion through ``huggingface_hub``'s async inference client."""

    name = "huggingface"

    def __init__(self, api_key: str, model: str, timeout_seconds: float = 120.0, client: Any = None) -> None:
        self.model = model
        self._client = client or AsyncInferenceClient(
            model=model,
            token=api_key,
            timeout=timeout_seconds,
        )

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        try:
            completion = await self._client.chat_completion(
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except HfHubHTTPError as e:
            status = getattr(getattr(e, "response", None), "status_code", None) or 500
            raise_for_backend_status(status, str(e))
            raise
        except asyncio.TimeoutError as e:
            raise BackendTimeoutError(f"HuggingFace did not respond: {e}") from e

        choices = getattr(completion, "choices", None) or []
        if not choices:
            return ""
        return _coerce_message_content(choices[0].message.content)


class SerializedTextBackend(TextGenerationBackend):
    """Gives callers one-at-a-time access to a shared local model."""

    def __init__(self, inner: TextGenerationBackend) -> None:
        self.inner = inner
        self.name = f"serialized:{inner.name}"
        self._lock = asyncio.Lock()

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> str:
        async with self._lock:
            return await self.inner.generate(system_prompt, user_prompt, max_tokens, temperature)


def create_chat_model(model: str, api_key: Optional[str] = None) -> Any:
    """Instantiate a LangChain chat model from ``provider:model`` notation."""
    provider, _, model_name = model.partition(":")
    if not model_name:
        provider, model_name = "ollama", provider
    kwargs: Dict[str, Any] = {}
    if api_key:
        kwargs["api_key"] = api_key
    return init_chat_model(model=model_name, model_provider=provider, **kwargs)


def create_text_backend(
    settings: GenerationSettings,
    credentials: CredentialStore,
) -> TextGenerationBackend:
    """Instantiate the story text backend selected in ``settings``."""
    provider = settings.text_provider
    model = settings.text_model()
    timeout = settings.request_timeout_seconds

    if provider is TextProviderKind.LOCAL:
        return SerializedTextBackend(ChatModelTextBackend(create_chat_model(model), name="local"))

    api_key = credentials.api_key(provider.value)
    if not api_key:
        raise NoCredentialError(provider.value)

    if provider is TextProviderKind.HUGGINGFACE:
        return HuggingFaceTextBackend(api_key, model, timeout_seconds=timeout)

    return OpenAICompatibleTextBackend(provider, api_key, model, timeout_seconds=timeout)


def create_local_model_backend(settings: GenerationSettings) -> Optional[TextGenerationBackend]:
    """The shared local model used for analysis, repair and rewriting, if configured."""
    if not settings.analysis_model:
        return None
    try:
        chat_model = create_chat_model(settings.analysis_model)
    except (ImportError, ValueError) as e:
        logger.warning(f"Local analysis model unavailable ({e}); using heuristics only")
        return None
    return SerializedTextBackend(ChatModelTextBackend(chat_model, name="local"))
