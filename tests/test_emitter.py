"""
Tests for outbound audio emission.
"""

import asyncio

import numpy as np
import pytest

from src.callbridge.audio import write_wav_mono_pcm16
from src.callbridge.emitter import AudioEmitter
from src.callbridge.session import Session
from src.callbridge.tts_types import SynthesizedAudio


def _speech(level, frames):
    pcm = np.full(frames * 160, level, dtype=np.int16).tobytes()
    return SynthesizedAudio(audio_bytes=write_wav_mono_pcm16(pcm, 8000), audio_format="wav")


def _session(transport):
    return Session("MZ1", "CA1", transport, "prompt", "voice-1")


@pytest.mark.asyncio
async def test_emit_sends_every_frame(transport):
    session = _session(transport)

    result = await AudioEmitter().emit(session, _speech(1000, 10))

    assert result.ok
    assert result.frames_total == 10
    assert result.audio_ms == pytest.approx(200.0)
    assert len(transport.sent) == 10


@pytest.mark.asyncio
async def test_concurrent_emits_send_contiguous_blocks(make_transport):
    transport = make_transport(yield_per_send=True)
    session = _session(transport)
    emitter = AudioEmitter()

    first, second = await asyncio.gather(
        emitter.emit(session, _speech(4000, 30)),
        emitter.emit(session, _speech(-4000, 20)),
    )

    assert first.ok and second.ok
    labels = [payload[0] for payload in transport.payloads]
    assert len(labels) == 50
    assert sum(1 for a, b in zip(labels, labels[1:]) if a != b) == 1
    assert not session.emit_lock.locked()


@pytest.mark.asyncio
async def test_failed_send_releases_emit_lock(make_transport):
    session = _session(make_transport(fail=True))

    result = await AudioEmitter().emit(session, _speech(1000, 5))

    assert result.frames_sent == 0
    assert result.error.startswith("send:")
    assert not session.emit_lock.locked()


@pytest.mark.asyncio
async def test_undecodable_audio_sends_nothing(transport):
    session = _session(transport)

    result = await AudioEmitter().emit(session, SynthesizedAudio(audio_bytes=b"", audio_format="mp3"))

    assert result.error.startswith("encode:")
    assert transport.sent == []
