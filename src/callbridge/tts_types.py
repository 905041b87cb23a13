from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class SynthesizedAudio:
    """
    One synthesized utterance as returned by the synthesis engine.

    `audio_bytes` is still in the engine's container (mp3 or WAV);
    `audio_format` is the hint passed to the transcoder.
    """

    audio_bytes: bytes
    audio_format: Optional[str] = None
    voice_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    # Optional: structured metadata for debugging/metrics.
    meta: Optional[dict[str, Any]] = None
