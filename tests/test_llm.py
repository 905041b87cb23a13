"""
Tests for the conversational engine client and conversation history.
"""

import dataclasses
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import OpenAIError

from src.callbridge.config import ConfigError, get_config
from src.callbridge.errors import ConversationError
from src.callbridge.llm import (
    GROQ_BASE_URL,
    OPENAI_BASE_URL,
    ChatLLM,
    ConversationHistory,
    validate_llm_model,
)


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _client(result=None, error=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=result, side_effect=error)
    client.close = AsyncMock()
    return client


class TestConversationHistory:
    def test_append_order(self):
        history = ConversationHistory()
        history.add_assistant_message("Hello!")
        history.add_user_message("Hi, I need help")

        assert history.get_messages() == [
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "Hi, I need help"},
        ]
        assert len(history) == 2

    def test_get_messages_returns_copy(self):
        history = ConversationHistory()
        history.add_user_message("one")

        history.get_messages().append({"role": "user", "content": "injected"})

        assert len(history) == 1


class TestChatLLM:
    def test_groq_is_default_provider(self):
        llm = ChatLLM(get_config(), client=_client())

        assert llm.base_url == GROQ_BASE_URL
        assert llm.model == "llama-3.3-70b-versatile"

    def test_openai_provider(self):
        config = dataclasses.replace(get_config(), llm_provider="openai", openai_model="gpt-4o-mini")
        llm = ChatLLM(config, client=_client())

        assert llm.base_url == OPENAI_BASE_URL
        assert llm.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_converse_sends_system_prompt_and_history(self):
        client = _client(_completion("  Sure thing.  "))
        llm = ChatLLM(get_config(), client=client)
        messages = [{"role": "user", "content": "Can I book a table?"}]

        reply = await llm.converse("You are a host.", messages)

        assert reply == "Sure thing."
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "llama-3.3-70b-versatile"
        assert kwargs["messages"] == [
            {"role": "system", "content": "You are a host."},
            {"role": "user", "content": "Can I book a table?"},
        ]
        assert kwargs["max_tokens"] == 256

    @pytest.mark.asyncio
    async def test_missing_content_is_empty_reply(self):
        llm = ChatLLM(get_config(), client=_client(_completion(None)))

        assert await llm.converse("prompt", []) == ""

    @pytest.mark.asyncio
    async def test_no_choices_is_empty_reply(self):
        llm = ChatLLM(get_config(), client=_client(SimpleNamespace(choices=[])))

        assert await llm.converse("prompt", []) == ""

    @pytest.mark.asyncio
    async def test_engine_error(self):
        llm = ChatLLM(get_config(), client=_client(error=OpenAIError("rate limited")))

        with pytest.raises(ConversationError, match="rate limited"):
            await llm.converse("prompt", [])

    @pytest.mark.asyncio
    async def test_close(self):
        client = _client()
        llm = ChatLLM(get_config(), client=client)

        await llm.close()

        client.close.assert_awaited_once()


class TestValidateLLMModel:
    @staticmethod
    def _transport(status_code=200, models=("llama-3.3-70b-versatile",)):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(status_code, json={"data": [{"id": m} for m in models]})

        return httpx.MockTransport(handler), seen

    @pytest.mark.asyncio
    async def test_model_found(self):
        transport, seen = self._transport()

        assert await validate_llm_model("key", GROQ_BASE_URL, "llama-3.3-70b-versatile", transport=transport)
        assert str(seen[0].url) == f"{GROQ_BASE_URL}/models"
        assert seen[0].headers["Authorization"] == "Bearer key"

    @pytest.mark.asyncio
    async def test_model_missing(self):
        transport, _ = self._transport(models=("other-model",))

        with pytest.raises(ConfigError, match="not found"):
            await validate_llm_model("key", GROQ_BASE_URL, "llama-3.3-70b-versatile", transport=transport)

    @pytest.mark.asyncio
    async def test_bad_status(self):
        transport, _ = self._transport(status_code=401)

        with pytest.raises(ConfigError, match="401"):
            await validate_llm_model("key", GROQ_BASE_URL, "llama-3.3-70b-versatile", transport=transport)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ConfigError, match="Failed to connect"):
            await validate_llm_model(
                "key", GROQ_BASE_URL, "llama-3.3-70b-versatile", transport=httpx.MockTransport(handler)
            )
