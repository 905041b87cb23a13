from __future__ import annotations

from typing import Any, Optional

import structlog

from src.callbridge.config import get_config
from src.callbridge.tts_providers.base import TTSProvider
from src.callbridge.tts_providers.elevenlabs import ElevenLabsTTS
from src.callbridge.tts_providers.openai_tts import OpenAITTS
from src.callbridge.tts_types import SynthesizedAudio

logger = structlog.get_logger(__name__)


class TTSManager:
    """
    TTS manager with a pluggable provider system.

    - `elevenlabs`: ElevenLabs REST API, voice picked per call (default)
    - `openai`: OpenAI Audio Speech API, voice id is an OpenAI voice name

    There is no fallback between providers: a failure surfaces as
    SynthesisError and aborts the current turn.
    """

    def __init__(self, config: Optional[Any] = None, provider: Optional[TTSProvider] = None):
        self.config = config or get_config()
        self._provider: Optional[TTSProvider] = provider

    def _create_provider(self) -> TTSProvider:
        tts = (self.config.tts_provider or "elevenlabs").strip().lower()

        if tts == "elevenlabs":
            return ElevenLabsTTS(self.config)

        if tts == "openai":
            return OpenAITTS(self.config)

        raise ValueError(f"Unsupported TTS_PROVIDER: {self.config.tts_provider}")

    @property
    def provider(self) -> TTSProvider:
        if self._provider is None:
            self._provider = self._create_provider()
            logger.info("TTS provider ready", provider=type(self._provider).__name__)
        return self._provider

    async def synthesize(self, text: str, *, voice_id: Optional[str] = None) -> SynthesizedAudio:
        return await self.provider.synthesize(text, voice_id=voice_id)

    async def stop(self) -> None:
        if self._provider:
            await self._provider.close()
            self._provider = None
