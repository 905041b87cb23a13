from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from src.callbridge.audio import ulaw_to_linear16, write_wav_mono_pcm16
from src.callbridge.config import get_config
from src.callbridge.errors import SynthesisError
from src.callbridge.tts_providers.base import TTSProvider
from src.callbridge.tts_types import SynthesizedAudio

logger = structlog.get_logger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"


def _container_for(output_format: str) -> tuple[str, Optional[int]]:
    """Split an ElevenLabs output format ("mp3_22050_32", "pcm_16000") into (codec, rate)."""
    parts = (output_format or "mp3").lower().split("_")
    rate: Optional[int] = None
    if len(parts) > 1 and parts[1].isdigit():
        rate = int(parts[1])
    return parts[0], rate


class ElevenLabsTTS(TTSProvider):
    """
    ElevenLabs text-to-speech over the REST API (non-streaming).

    Compressed formats are returned as-is for the transcoder; raw `pcm_*` and
    `ulaw_*` outputs are wrapped into a WAV container first.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self.output_format = self.config.elevenlabs_output_format or "mp3_22050_32"
        self._client = client or httpx.AsyncClient(
            base_url=ELEVENLABS_BASE_URL,
            timeout=httpx.Timeout(self.config.engine_timeout_seconds),
        )

    async def synthesize(self, text: str, *, voice_id: Optional[str] = None) -> SynthesizedAudio:
        voice = voice_id or self.config.default_voice_id
        started = time.time()

        try:
            resp = await self._client.post(
                f"/text-to-speech/{voice}",
                params={"output_format": self.output_format},
                headers={
                    "xi-api-key": self.config.elevenlabs_api_key,
                    "Accept": "audio/*",
                },
                json={"text": text, "model_id": self.config.elevenlabs_model_id},
            )
        except httpx.HTTPError as e:
            raise SynthesisError(f"ElevenLabs request failed: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise SynthesisError(
                f"ElevenLabs returned status {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        if not resp.content:
            raise SynthesisError("ElevenLabs returned no audio", status_code=resp.status_code)

        codec, rate = _container_for(self.output_format)
        audio = resp.content
        if codec == "pcm":
            audio, codec = write_wav_mono_pcm16(audio, rate or 16000), "wav"
        elif codec == "ulaw":
            audio, codec = write_wav_mono_pcm16(ulaw_to_linear16(audio), rate or 8000), "wav"

        elapsed_ms = (time.time() - started) * 1000
        logger.debug(
            "ElevenLabs synthesis complete",
            voice_id=voice,
            characters=len(text),
            bytes=len(audio),
            elapsed_ms=round(elapsed_ms, 1),
        )
        return SynthesizedAudio(
            audio_bytes=audio,
            audio_format=codec,
            voice_id=voice,
            meta={"elapsed_ms": round(elapsed_ms, 2), "output_format": self.output_format},
        )

    async def close(self) -> None:
        await self._client.aclose()
