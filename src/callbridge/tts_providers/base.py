from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from src.callbridge.tts_types import SynthesizedAudio


class TTSProvider(ABC):
    @abstractmethod
    async def synthesize(self, text: str, *, voice_id: Optional[str] = None) -> SynthesizedAudio:
        """Synthesize `text`; raise SynthesisError on any non-success."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
