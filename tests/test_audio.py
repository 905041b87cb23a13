"""
Tests for audio conversion utilities.
"""

import io
import wave

import pytest
import numpy as np

from src.callbridge.audio import (
    AudioConversionError,
    ulaw_to_linear16,
    linear16_to_ulaw,
    resample_pcm16,
    read_wav_mono_pcm16,
    write_wav_mono_pcm16,
    decode_ulaw_to_wav,
    encode_to_twilio_ulaw,
    chunk_audio,
    get_audio_duration_ms,
    TWILIO_FRAME_SIZE,
    TWILIO_SAMPLE_RATE,
)


FRAME_TOLERANCE_MS = 20


def _wav(frames: bytes, sample_rate: int, channels: int = 1, sample_width: int = 2) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(frames)
    return buf.getvalue()


def _tone(sample_rate: int, duration_s: float, freq: float = 440.0) -> bytes:
    t = np.arange(int(sample_rate * duration_s)) / sample_rate
    return (np.sin(2 * np.pi * freq * t) * 8000).astype(np.int16).tobytes()


class TestUlawConversion:
    """Tests for mu-law conversion."""

    def test_ulaw_to_linear16_empty(self):
        assert ulaw_to_linear16(b"") == b""

    def test_ulaw_to_linear16_basic(self):
        """Silence decodes to near-zero 16-bit samples."""
        result = ulaw_to_linear16(b"\xff" * 100)

        # Output should be 2x length (16-bit = 2 bytes per sample)
        assert len(result) == 200
        samples = np.frombuffer(result, dtype=np.int16)
        assert np.abs(samples).max() < 10

    def test_linear16_to_ulaw_basic(self):
        result = linear16_to_ulaw(b"\x00\x00" * 100)
        assert len(result) == 100

    def test_linear16_to_ulaw_empty(self):
        assert linear16_to_ulaw(b"") == b""


class TestDecodeUlawToWav:
    """Tests for inbound transcoding (Twilio -> transcription engine)."""

    def test_wav_header_and_format(self):
        wav = decode_ulaw_to_wav(b"\xff" * 160 * 150)

        assert wav[:4] == b"RIFF"
        with wave.open(io.BytesIO(wav), "rb") as wf:
            assert wf.getnchannels() == 1
            assert wf.getsampwidth() == 2
            assert wf.getframerate() == TWILIO_SAMPLE_RATE

    def test_sample_count_preserved(self):
        """One mu-law byte per sample means N bytes in gives N samples out."""
        ulaw = bytes(range(256)) * 10
        wav = decode_ulaw_to_wav(ulaw)

        with wave.open(io.BytesIO(wav), "rb") as wf:
            assert wf.getnframes() == len(ulaw)

    def test_duration_matches_input(self):
        ulaw = b"\xff" * 24000  # 3 seconds
        wav = decode_ulaw_to_wav(ulaw)

        with wave.open(io.BytesIO(wav), "rb") as wf:
            assert wf.getnframes() / wf.getframerate() == pytest.approx(3.0)

    def test_empty_raises(self):
        with pytest.raises(AudioConversionError):
            decode_ulaw_to_wav(b"")

    @pytest.mark.parametrize("num_samples", [160, 8000, 12345])
    def test_decode_then_encode_preserves_sample_count(self, num_samples):
        rng = np.random.default_rng(7)
        ulaw = rng.integers(0, 256, size=num_samples, dtype=np.uint8).tobytes()

        encoded = encode_to_twilio_ulaw(decode_ulaw_to_wav(ulaw))

        assert abs(len(encoded) - len(ulaw)) <= TWILIO_FRAME_SIZE


class TestEncodeToTwilioUlaw:
    """Tests for outbound transcoding (synthesis engine -> Twilio)."""

    def test_wav_16k_resampled_to_8k(self):
        wav = _wav(_tone(16000, 0.5), 16000)
        ulaw = encode_to_twilio_ulaw(wav)

        # 0.5s at 8kHz, within one frame of tolerance
        assert abs(len(ulaw) - 4000) <= TWILIO_FRAME_SIZE

    def test_wav_at_8k_keeps_sample_count(self):
        pcm = _tone(8000, 0.25)
        ulaw = encode_to_twilio_ulaw(_wav(pcm, 8000))

        assert len(ulaw) == len(pcm) // 2

    def test_22050_duration_preserved(self):
        wav = _wav(_tone(22050, 1.0), 22050)
        ulaw = encode_to_twilio_ulaw(wav)

        assert get_audio_duration_ms(ulaw) == pytest.approx(1000, abs=FRAME_TOLERANCE_MS)

    def test_stereo_is_downmixed(self):
        mono = _tone(8000, 0.1)
        samples = np.frombuffer(mono, dtype=np.int16)
        stereo = np.column_stack([samples, samples]).astype(np.int16).tobytes()

        ulaw = encode_to_twilio_ulaw(_wav(stereo, 8000, channels=2))

        assert len(ulaw) == len(samples)

    def test_8bit_wav(self):
        frames = bytes([128]) * 800  # unsigned 8-bit silence
        ulaw = encode_to_twilio_ulaw(_wav(frames, 8000, sample_width=1))

        assert len(ulaw) == 800
        decoded = np.frombuffer(ulaw_to_linear16(ulaw), dtype=np.int16)
        assert np.abs(decoded).max() < 300

    def test_wav_format_hint_without_riff_prefix_is_malformed(self):
        with pytest.raises(AudioConversionError):
            encode_to_twilio_ulaw(b"not really audio", "wav")

    def test_truncated_wav_raises(self):
        wav = _wav(_tone(8000, 0.1), 8000)
        with pytest.raises(AudioConversionError):
            encode_to_twilio_ulaw(wav[:10])

    def test_three_channels_unsupported(self):
        frames = b"\x00\x00" * 3 * 100
        with pytest.raises(AudioConversionError, match="channel"):
            encode_to_twilio_ulaw(_wav(frames, 8000, channels=3))

    def test_empty_raises(self):
        with pytest.raises(AudioConversionError):
            encode_to_twilio_ulaw(b"")


class TestWavHelpers:
    def test_write_then_read(self):
        pcm = _tone(16000, 0.1)
        rate, read_back = read_wav_mono_pcm16(write_wav_mono_pcm16(pcm, 16000))

        assert rate == 16000
        assert read_back == pcm

    def test_read_empty_raises(self):
        with pytest.raises(AudioConversionError):
            read_wav_mono_pcm16(b"")

    def test_resample_same_rate_is_identity(self):
        pcm = _tone(8000, 0.1)
        assert resample_pcm16(pcm, 8000, 8000) is pcm

    def test_resample_halves_length(self):
        pcm = _tone(16000, 0.5)
        out = resample_pcm16(pcm, 16000, 8000)
        assert abs(len(out) - len(pcm) // 2) <= 4


class TestChunking:
    """Tests for audio chunking."""

    def test_chunk_audio_exact(self):
        audio = b"\x00" * 480  # 3 chunks of 160
        chunks = list(chunk_audio(audio, 160))

        assert len(chunks) == 3
        assert all(len(c) == 160 for c in chunks)

    def test_chunk_audio_with_padding(self):
        audio = b"\x00" * 200
        chunks = list(chunk_audio(audio, 160))

        assert len(chunks) == 2
        assert len(chunks[1]) == 160
        # Padded with mu-law silence
        assert chunks[1][40:] == b"\xff" * 120

    def test_chunk_audio_default_size(self):
        chunks = list(chunk_audio(b"\x00" * 320))

        assert len(chunks) == 2
        assert len(chunks[0]) == TWILIO_FRAME_SIZE

    def test_chunk_audio_empty(self):
        assert list(chunk_audio(b"")) == []


class TestAudioDuration:
    """Tests for audio duration calculation."""

    def test_ulaw_duration(self):
        assert get_audio_duration_ms(b"\x00" * 8000, 8000, is_ulaw=True) == 1000.0

    def test_pcm_duration(self):
        assert get_audio_duration_ms(b"\x00" * 16000, 8000, is_ulaw=False) == 1000.0

    def test_empty_duration(self):
        assert get_audio_duration_ms(b"") == 0.0
