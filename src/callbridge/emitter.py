"""
Outbound audio: encode synthesized speech to Twilio mu-law and send it.

Sending is best-effort. The first failed send stops the utterance and is
logged; nothing is retried.
"""

import time
from dataclasses import dataclass
from typing import Optional

import structlog

from src.callbridge.audio import AudioConversionError, encode_to_twilio_ulaw, get_audio_duration_ms
from src.callbridge.session import Session
from src.callbridge.tts_types import SynthesizedAudio
from src.callbridge.twilio_protocol import create_audio_messages

logger = structlog.get_logger(__name__)


@dataclass
class EmitResult:
    frames_total: int = 0
    frames_sent: int = 0
    audio_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.frames_sent == self.frames_total


class AudioEmitter:
    """Encodes synthesized audio and writes it to the session transport."""

    async def emit(self, session: Session, audio: SynthesizedAudio) -> EmitResult:
        try:
            ulaw = encode_to_twilio_ulaw(audio.audio_bytes, audio.audio_format)
        except AudioConversionError as e:
            logger.error("Failed to encode synthesized audio", error=str(e), **session.log_context())
            return EmitResult(error=f"encode: {e}")

        messages = create_audio_messages(session.stream_sid, ulaw)
        result = EmitResult(frames_total=len(messages), audio_ms=get_audio_duration_ms(ulaw))

        # One utterance at a time per call; a second emit waits for the first to finish.
        async with session.emit_lock:
            started = time.time()
            for message in messages:
                try:
                    await session.transport.send_text(message)
                except Exception as e:
                    result.error = f"send: {e}"
                    logger.error(
                        "Failed to send audio to Twilio",
                        error=str(e),
                        error_type=type(e).__name__,
                        frames_sent=result.frames_sent,
                        frames_total=result.frames_total,
                        session_closed=session.closed,
                        **session.log_context(),
                    )
                    break
                result.frames_sent += 1

        logger.debug(
            "Outbound audio sent",
            frames=result.frames_sent,
            audio_ms=round(result.audio_ms, 1),
            send_ms=round((time.time() - started) * 1000, 1),
            **session.log_context(),
        )
        return result
