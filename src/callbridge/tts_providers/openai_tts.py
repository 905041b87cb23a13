from __future__ import annotations

from typing import Any, Optional

import structlog
from openai import APIStatusError, AsyncOpenAI, OpenAIError

from src.callbridge.config import get_config
from src.callbridge.errors import SynthesisError
from src.callbridge.tts_providers.base import TTSProvider
from src.callbridge.tts_types import SynthesizedAudio

logger = structlog.get_logger(__name__)

OPENAI_FALLBACK_VOICE = "alloy"


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    The session voice id is used as the OpenAI voice name; a full WAV is
    returned for the transcoder.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(
            api_key=self.config.openai_api_key,
            timeout=self.config.engine_timeout_seconds,
        )

    async def synthesize(self, text: str, *, voice_id: Optional[str] = None) -> SynthesizedAudio:
        voice = voice_id or OPENAI_FALLBACK_VOICE
        try:
            resp = await self._client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=voice,
                input=text,
                response_format="wav",
            )
        except APIStatusError as e:
            raise SynthesisError(f"OpenAI TTS returned status {e.status_code}", status_code=e.status_code) from e
        except OpenAIError as e:
            raise SynthesisError(f"OpenAI TTS failed: {e}") from e

        data = getattr(resp, "content", None)
        if not isinstance(data, (bytes, bytearray)) or not data:
            raise SynthesisError("OpenAI TTS returned no audio")

        return SynthesizedAudio(audio_bytes=bytes(data), audio_format="wav", voice_id=voice)

    async def close(self) -> None:
        await self._client.close()
