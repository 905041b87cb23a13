"""
Audio conversion utilities for the call bridge.

Two directions are needed per call:
- Inbound: Twilio mu-law 8kHz -> 16-bit PCM WAV for the transcription engine
- Outbound: synthesized audio (mp3 or WAV, any rate) -> Twilio mu-law 8kHz

All conversions are stateless; PCM handling uses audioop, containers use
`wave` and pydub (for compressed formats).
"""

import audioop
import io
import wave
from typing import Generator, Optional

import structlog

logger = structlog.get_logger(__name__)

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = b"\xff"
PCM_SAMPLE_WIDTH = 2


class AudioConversionError(Exception):
    """Raised when audio cannot be decoded or encoded."""
    pass


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law 8kHz audio to linear PCM 16-bit.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes at 8kHz

    Returns:
        Linear PCM 16-bit bytes at 8kHz
    """
    if not ulaw_bytes:
        return b""

    return audioop.ulaw2lin(ulaw_bytes, PCM_SAMPLE_WIDTH)


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit bytes

    Returns:
        Mu-law encoded bytes
    """
    if not pcm_bytes:
        return b""

    return audioop.lin2ulaw(pcm_bytes, PCM_SAMPLE_WIDTH)


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate` using `audioop.ratecv`.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    converted, _ = audioop.ratecv(pcm_bytes, PCM_SAMPLE_WIDTH, 1, int(source_rate), int(target_rate), None)
    return converted


def _to_pcm16(frames: bytes, sample_width: int) -> bytes:
    if sample_width == PCM_SAMPLE_WIDTH:
        return frames
    if sample_width == 1:
        # 8-bit WAV is unsigned; shift to signed before widening.
        frames = audioop.bias(frames, 1, -128)
    if sample_width in (1, 3, 4):
        return audioop.lin2lin(frames, sample_width, PCM_SAMPLE_WIDTH)
    raise AudioConversionError(f"Unsupported WAV sample width: {sample_width * 8} bits")


def _to_mono(pcm_bytes: bytes, channels: int) -> bytes:
    if channels == 1:
        return pcm_bytes
    if channels == 2:
        return audioop.tomono(pcm_bytes, PCM_SAMPLE_WIDTH, 0.5, 0.5)
    raise AudioConversionError(f"Unsupported channel count: {channels}")


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - Stereo input is downmixed to mono.
    - 8/24/32-bit integer samples are converted to 16-bit.
    """
    if not wav_bytes:
        raise AudioConversionError("Empty WAV")

    try:
        with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise AudioConversionError(f"Malformed WAV: {e}") from e

    pcm = _to_pcm16(frames, sample_width)
    return int(sample_rate), _to_mono(pcm, channels)


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(PCM_SAMPLE_WIDTH)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def _decode_compressed(audio_bytes: bytes, audio_format: Optional[str]) -> tuple[int, bytes]:
    """Decode a compressed container (mp3, ogg, ...) into (sample_rate, mono PCM16) via pydub."""
    from pydub import AudioSegment  # Local import (needs ffmpeg for compressed formats)
    from pydub.exceptions import CouldntDecodeError

    try:
        segment = AudioSegment.from_file(io.BytesIO(audio_bytes), format=audio_format)
    except (CouldntDecodeError, OSError, IndexError, ValueError) as e:
        raise AudioConversionError(
            f"Could not decode {audio_format or 'compressed'} audio: {e}"
        ) from e

    segment = segment.set_channels(1).set_sample_width(PCM_SAMPLE_WIDTH)
    return int(segment.frame_rate), segment.raw_data


def decode_ulaw_to_wav(ulaw_bytes: bytes) -> bytes:
    """
    Convert an utterance of Twilio mu-law 8kHz into a PCM16 WAV container.

    Mu-law is one byte per sample, so the WAV holds exactly `len(ulaw_bytes)`
    samples at 8kHz.

    Raises:
        AudioConversionError: If there is no audio to decode
    """
    if not ulaw_bytes:
        raise AudioConversionError("No audio to decode")

    pcm = ulaw_to_linear16(ulaw_bytes)
    return write_wav_mono_pcm16(pcm, TWILIO_SAMPLE_RATE)


def encode_to_twilio_ulaw(audio_bytes: bytes, audio_format: Optional[str] = None) -> bytes:
    """
    Convert synthesized audio into Twilio mu-law 8kHz mono.

    WAV input is read directly; anything else is treated as a compressed
    container and decoded with pydub (`audio_format` is a hint such as "mp3").

    Args:
        audio_bytes: Synthesized audio bytes
        audio_format: Optional container hint for compressed audio

    Returns:
        Mu-law bytes at 8kHz

    Raises:
        AudioConversionError: If the input is empty, malformed or unsupported
    """
    if not audio_bytes:
        raise AudioConversionError("No audio to encode")

    if audio_bytes[:4] == b"RIFF" or (audio_format or "").lower() == "wav":
        sample_rate, pcm = read_wav_mono_pcm16(audio_bytes)
    else:
        sample_rate, pcm = _decode_compressed(audio_bytes, audio_format)

    if sample_rate <= 0:
        raise AudioConversionError(f"Invalid sample rate: {sample_rate}")

    if sample_rate != TWILIO_SAMPLE_RATE:
        logger.debug("Resampling synthesized audio", source_rate=sample_rate, target_rate=TWILIO_SAMPLE_RATE)
        pcm = resample_pcm16(pcm, sample_rate, TWILIO_SAMPLE_RATE)

    return linear16_to_ulaw(pcm)


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)

    Yields:
        Audio chunks of the specified size
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        # Pad the last chunk if needed
        if len(chunk) < chunk_size:
            chunk = chunk + ULAW_SILENCE * (chunk_size - len(chunk))
        yield chunk


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = True) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM (2 bytes per sample)

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else PCM_SAMPLE_WIDTH
    num_samples = len(audio_bytes) // bytes_per_sample
    duration_seconds = num_samples / sample_rate

    return duration_seconds * 1000
