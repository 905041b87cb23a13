"""
Speech-to-text client.

Each flushed utterance is sent as one WAV file to the OpenAI audio
transcription endpoint; there is no streaming recognition.
"""

import time
from typing import Any, Optional

import structlog
from openai import AsyncOpenAI, OpenAIError

from src.callbridge.config import get_config
from src.callbridge.errors import TranscriptionError

logger = structlog.get_logger(__name__)


class Transcriber:
    """Transcribes one utterance (PCM16 WAV) at a time."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_stt_model
        self.language = config.stt_language or None
        self._client = client or AsyncOpenAI(
            api_key=config.openai_api_key,
            timeout=config.engine_timeout_seconds,
        )

    async def transcribe(self, wav_bytes: bytes) -> str:
        """
        Transcribe a WAV utterance.

        Returns:
            The recognized text, stripped; empty when nothing was said

        Raises:
            TranscriptionError: If the engine call fails
        """
        start_time = time.time()
        kwargs: dict[str, Any] = {
            "model": self.model,
            "file": ("utterance.wav", wav_bytes, "audio/wav"),
        }
        if self.language:
            kwargs["language"] = self.language

        try:
            result = await self._client.audio.transcriptions.create(**kwargs)
        except OpenAIError as e:
            raise TranscriptionError(f"Transcription failed: {e}") from e

        text = getattr(result, "text", None)
        if text is None and isinstance(result, str):
            text = result
        text = (text or "").strip()

        logger.debug(
            "Transcription complete",
            model=self.model,
            chars=len(text),
            latency_ms=round((time.time() - start_time) * 1000, 1),
        )
        return text

    async def close(self) -> None:
        await self._client.close()
