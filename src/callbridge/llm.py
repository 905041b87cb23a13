"""
Conversational LLM wrapper with OpenAI-compatible API.

Provides:
- Startup model validation
- Append-only conversation history (the whole call is sent every turn)
- Groq (default) or OpenAI chat completions
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import httpx
import structlog
from openai import AsyncOpenAI, OpenAIError

from src.callbridge.config import ConfigError, get_config
from src.callbridge.errors import ConversationError

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"

USER = "user"
ASSISTANT = "assistant"


@dataclass
class ConversationTurn:
    """A single turn in the conversation."""
    role: str  # "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class ConversationHistory:
    """
    Ordered, append-only record of a call.

    Never trimmed: the conversational engine always receives the full call.
    """

    def __init__(self) -> None:
        self._turns: List[ConversationTurn] = []

    def add_user_message(self, content: str) -> ConversationTurn:
        """Add a user message."""
        turn = ConversationTurn(role=USER, content=content)
        self._turns.append(turn)
        return turn

    def add_assistant_message(self, content: str) -> ConversationTurn:
        """Add an assistant message."""
        turn = ConversationTurn(role=ASSISTANT, content=content)
        self._turns.append(turn)
        return turn

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [turn.to_message() for turn in self._turns]

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(list(self._turns))

    def __len__(self) -> int:
        return len(self._turns)


def _provider_settings(config: Any) -> tuple[str, str, str]:
    """Return (api_key, base_url, model) for the configured provider."""
    provider = (config.llm_provider or "groq").strip().lower()
    if provider == "openai":
        return config.openai_api_key, OPENAI_BASE_URL, config.openai_model
    return config.groq_api_key, GROQ_BASE_URL, config.groq_model


async def validate_llm_model(
    api_key: str,
    base_url: str,
    model_name: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models to check.

    Raises:
        ConfigError: If the model list cannot be fetched or the model is missing
    """
    logger.info("Validating LLM model", model=model_name, base_url=base_url)

    async with httpx.AsyncClient(transport=transport) as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise ConfigError(f"Failed to connect to LLM API: {e}") from e

    if response.status_code != 200:
        logger.error(
            "Failed to fetch LLM models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise ConfigError(
            f"Failed to validate LLM model. API returned status {response.status_code}. "
            "Check your API key."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(str(m) for m in model_ids)[:10])
        logger.error("LLM model not found", requested_model=model_name, available_models=available)
        raise ConfigError(
            f"Model '{model_name}' not found in available models.\n"
            f"Available models include: {available}"
        )

    logger.info("LLM model validated successfully", model=model_name)
    return True


class ChatLLM:
    """
    Chat completion client for Groq or OpenAI.

    Both providers speak the OpenAI API, so the same client is used with a
    different base URL.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        api_key, base_url, model = _provider_settings(config)
        self.model = model
        self.base_url = base_url
        self._api_key = api_key
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=config.engine_timeout_seconds,
        )

    async def validate_model(self) -> bool:
        """Validate the configured model exists."""
        return await validate_llm_model(self._api_key, self.base_url, self.model)

    async def converse(self, system_prompt: str, messages: List[Dict[str, str]]) -> str:
        """
        Generate the next assistant reply.

        Args:
            system_prompt: Per-call instructions
            messages: Conversation so far in OpenAI format

        Returns:
            Reply text, or "" when the engine returns no content

        Raises:
            ConversationError: If the engine call fails
        """
        start_time = time.time()
        request = [{"role": "system", "content": system_prompt}, *messages]

        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=request,
                max_tokens=self.config.llm_max_tokens,  # Keep responses short for voice
                temperature=self.config.llm_temperature,
            )
        except OpenAIError as e:
            raise ConversationError(f"LLM generation failed: {e}") from e

        text = ""
        if completion.choices:
            text = (completion.choices[0].message.content or "").strip()

        logger.debug(
            "LLM reply generated",
            model=self.model,
            messages=len(request),
            chars=len(text),
            latency_ms=round((time.time() - start_time) * 1000, 1),
        )
        return text

    async def close(self) -> None:
        await self._client.close()


def create_llm(config: Optional[Any] = None) -> ChatLLM:
    """Create the chat client for the configured provider."""
    return ChatLLM(config or get_config())
