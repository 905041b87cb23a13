"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import json
import os
from unittest.mock import AsyncMock, patch

import pytest

from src.callbridge.tts_types import SynthesizedAudio


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "LLM_PROVIDER": "groq",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "OPENAI_API_KEY": "test_openai_key",
        "TTS_PROVIDER": "elevenlabs",
        "ELEVENLABS_API_KEY": "test_elevenlabs_key",
        "VALIDATE_LLM_MODEL": "false",
        "FLUSH_THRESHOLD_FRAMES": "150",
        "OVERLAP_POLICY": "drop",
        "GREETING_ENABLED": "true",
        "CAMPAIGNS_FILE": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.callbridge.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeTransport:
    """Records outbound WebSocket text frames."""

    def __init__(self, fail: bool = False, yield_per_send: bool = False):
        self.sent = []
        self.fail = fail
        self.yield_per_send = yield_per_send

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("WebSocket is not connected")
        if self.yield_per_send:
            # Let other coroutines run between frames, like a real socket write
            await asyncio.sleep(0)
        self.sent.append(data)

    @property
    def payloads(self):
        return [base64.b64decode(json.loads(m)["media"]["payload"]) for m in self.sent]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def synthesized_wav():
    """100ms of 16kHz PCM WAV as a synthesis engine would return it."""
    from src.callbridge.audio import write_wav_mono_pcm16

    return SynthesizedAudio(audio_bytes=write_wav_mono_pcm16(b"\x00\x00" * 1600, 16000), audio_format="wav")


@pytest.fixture
def engines(synthesized_wav):
    """Mocked transcriber, LLM and TTS that succeed by default."""
    transcriber = AsyncMock()
    transcriber.transcribe = AsyncMock(return_value="I'd like to book a table")
    llm = AsyncMock()
    llm.converse = AsyncMock(return_value="Sure, for how many people?")
    tts = AsyncMock()
    tts.synthesize = AsyncMock(return_value=synthesized_wav)
    return transcriber, llm, tts


def start_message(stream_sid="MZ123456", call_sid="CA789012", custom_parameters=None):
    return json.dumps({
        "event": "start",
        "sequenceNumber": "1",
        "streamSid": stream_sid,
        "start": {
            "accountSid": "AC345678",
            "callSid": call_sid,
            "streamSid": stream_sid,
            "tracks": ["inbound"],
            "customParameters": custom_parameters or {},
        },
    })


def media_message(stream_sid="MZ123456", sequence_number=2, track="inbound", payload=b"\xff" * 160):
    return json.dumps({
        "event": "media",
        "sequenceNumber": str(sequence_number),
        "streamSid": stream_sid,
        "media": {
            "track": track,
            "chunk": str(sequence_number - 1),
            "timestamp": str(sequence_number * 20),
            "payload": base64.b64encode(payload).decode(),
        },
    })


def stop_message(stream_sid="MZ123456", call_sid="CA789012"):
    return json.dumps({
        "event": "stop",
        "sequenceNumber": "999",
        "streamSid": stream_sid,
        "stop": {
            "accountSid": "AC345678",
            "callSid": call_sid,
            "streamSid": stream_sid,
        },
    })


@pytest.fixture
def twilio_start_message():
    return start_message()


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    return media_message(payload=sample_ulaw_audio)


@pytest.fixture
def twilio_stop_message():
    return stop_message()


@pytest.fixture
def make_transport():
    """Factory for extra connections (one per simulated call)."""
    return FakeTransport


@pytest.fixture
def make_start():
    return start_message


@pytest.fixture
def make_media():
    return media_message


@pytest.fixture
def make_stop():
    return stop_message
