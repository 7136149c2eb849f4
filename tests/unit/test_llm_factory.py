"""Tests for the text backend factory and wrappers."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from storyfox.context import GenerationSettings
from storyfox.error_handling import NoCredentialError
from storyfox.llm_factory import (
    ChatModelTextBackend,
    HuggingFaceTextBackend,
    OpenAICompatibleTextBackend,
    SerializedTextBackend,
    _coerce_message_content,
    create_chat_model,
    create_local_model_backend,
    create_text_backend,
)
from storyfox.models import TextProviderKind


def _credentials(key="test-key"):
    credentials = MagicMock()
    credentials.api_key.return_value = key
    return credentials


class TestMessageContent:
    """Test coercion of structured chat content."""

    def test_coerce_variants(self):
        """Test strings, lists of parts and None."""
        assert _coerce_message_content(None) == ""
        assert _coerce_message_content("plain") == "plain"
        assert _coerce_message_content(["a", {"text": "b"}, {"content": "c"}, None, {"other": 1}]) == "abc"
        assert _coerce_message_content(42) == "42"


class TestChatModelTextBackend:
    """Test the LangChain wrapper."""

    @pytest.mark.asyncio
    async def test_generate_binds_limits_and_sends_messages(self):
        """Test max tokens and temperature are bound for the call."""
        runnable = MagicMock()
        runnable.ainvoke = AsyncMock(return_value=SimpleNamespace(content=[{"text": '{"title": "T"}'}]))
        chat_model = MagicMock()
        chat_model.bind.return_value = runnable

        text = await ChatModelTextBackend(chat_model).generate("system", "user", 300, 0.2)

        assert text == '{"title": "T"}'
        chat_model.bind.assert_called_once_with(max_tokens=300, temperature=0.2)
        messages = runnable.ainvoke.await_args.args[0]
        assert isinstance(messages[0], SystemMessage)
        assert isinstance(messages[1], HumanMessage)
        assert messages[1].content == "user"


class TestSerializedTextBackend:
    """Test one-at-a-time access to a shared model."""

    @pytest.mark.asyncio
    async def test_calls_never_overlap(self):
        """Test concurrent callers are serialized."""
        in_flight = 0
        peak = 0

        async def generate(*args):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return "ok"

        inner = MagicMock()
        inner.name = "local"
        inner.generate = AsyncMock(side_effect=generate)
        backend = SerializedTextBackend(inner)

        results = await asyncio.gather(*(backend.generate("s", "u", 10, 0.1) for _ in range(4)))

        assert results == ["ok"] * 4
        assert peak == 1
        assert backend.name == "serialized:local"


class TestOpenAICompatibleTextBackend:
    """Test the chat completions payload."""

    def test_payload(self):
        """Test messages and sampling settings."""
        backend = OpenAICompatibleTextBackend(TextProviderKind.TOGETHER, "k", "llama")
        payload = backend.build_payload("sys", "usr", 2400, 0.8)
        assert payload["model"] == "llama"
        assert payload["messages"] == [{"role": "system", "content": "sys"}, {"role": "user", "content": "usr"}]
        assert (payload["max_tokens"], payload["temperature"]) == (2400, 0.8)
        assert backend.base_url == "https://api.together.xyz/v1"


class TestHuggingFaceTextBackend:
    """Test the huggingface_hub backend with an injected client."""

    @pytest.mark.asyncio
    async def test_generate(self):
        """Test the first choice is returned."""
        client = MagicMock()
        client.chat_completion = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="Once upon a time"))]
        ))
        backend = HuggingFaceTextBackend("k", "meta-llama/Llama-3.1-8B-Instruct", client=client)

        assert await backend.generate("s", "u", 100, 0.5) == "Once upon a time"
        assert client.chat_completion.await_args.kwargs["max_tokens"] == 100

    @pytest.mark.asyncio
    async def test_no_choices(self):
        """Test an empty completion yields empty text."""
        client = MagicMock()
        client.chat_completion = AsyncMock(return_value=SimpleNamespace(choices=[]))
        assert await HuggingFaceTextBackend("k", "m", client=client).generate("s", "u", 10, 0.1) == ""


class TestFactories:
    """Test backend construction from settings."""

    def test_cloud_backend_requires_key(self):
        """Test a missing key raises NoCredentialError."""
        settings = GenerationSettings(text_provider=TextProviderKind.OPENROUTER)
        with pytest.raises(NoCredentialError):
            create_text_backend(settings, _credentials(None))

    def test_cloud_backends(self):
        """Test provider kinds map to backend classes."""
        openai = create_text_backend(GenerationSettings(text_provider=TextProviderKind.OPENAI), _credentials())
        assert isinstance(openai, OpenAICompatibleTextBackend)
        assert openai.model == "gpt-4o-mini"

        with patch("storyfox.llm_factory.AsyncInferenceClient") as client_cls:
            hf = create_text_backend(GenerationSettings(text_provider=TextProviderKind.HUGGINGFACE), _credentials())
        assert isinstance(hf, HuggingFaceTextBackend)
        assert client_cls.call_args.kwargs["token"] == "test-key"

    def test_local_backend_is_serialized(self):
        """Test the local text backend is wrapped in a lock."""
        with patch("storyfox.llm_factory.init_chat_model") as init_chat_model:
            backend = create_text_backend(GenerationSettings(text_provider=TextProviderKind.LOCAL), _credentials(None))
        assert isinstance(backend, SerializedTextBackend)
        init_chat_model.assert_called_once_with(model="llama3.2", model_provider="ollama")

    def test_create_chat_model_notation(self):
        """Test provider prefixes and API keys."""
        with patch("storyfox.llm_factory.init_chat_model") as init_chat_model:
            create_chat_model("openai:gpt-4o-mini", api_key="k")
            create_chat_model("mistral")
        assert init_chat_model.call_args_list[0].kwargs == {
            "model": "gpt-4o-mini", "model_provider": "openai", "api_key": "k",
        }
        assert init_chat_model.call_args_list[1].kwargs == {"model": "mistral", "model_provider": "ollama"}

    def test_local_model_backend_optional(self):
        """Test the shared local model is only built when configured."""
        assert create_local_model_backend(GenerationSettings()) is None

        with patch("storyfox.llm_factory.init_chat_model", side_effect=ImportError("langchain-ollama missing")):
            assert create_local_model_backend(GenerationSettings(analysis_model="ollama:llama3.2")) is None

        with patch("storyfox.llm_factory.init_chat_model"):
            backend = create_local_model_backend(GenerationSettings(analysis_model="ollama:llama3.2"))
        assert isinstance(backend, SerializedTextBackend)
