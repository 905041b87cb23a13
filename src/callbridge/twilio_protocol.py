"""
Twilio Media Streams WebSocket protocol.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz
- mark / dtmf: Acknowledgments and keypad tones (not used by the bridge)
- stop: Stream stopped

Every inbound frame is validated once here and turned into one of
StartEvent, MediaEvent, StopEvent or UnknownEvent.

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import msgspec
import structlog

from src.callbridge.audio import TWILIO_FRAME_SIZE, chunk_audio

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class ProtocolError(ValueError):
    """Raised when a transport frame cannot be parsed."""
    pass


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


class MediaTrack(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


def _section(message: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = message.get(key) or {}
    if not isinstance(value, dict):
        raise ProtocolError(f"'{key}' must be an object")
    return value


def _require_stream_sid(*candidates: Any) -> str:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    raise ProtocolError("Missing streamSid")


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class StartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "StartEvent":
        """Parse from Twilio message."""
        start = _section(message, "start")
        custom = start.get("customParameters") or {}
        tracks = start.get("tracks") or []
        if not isinstance(tracks, list):
            raise ProtocolError(f"'tracks' must be a list, got {type(tracks).__name__}")
        return cls(
            stream_sid=_require_stream_sid(start.get("streamSid"), message.get("streamSid")),
            call_sid=str(start.get("callSid", "")),
            account_sid=str(start.get("accountSid", "")),
            tracks=[str(track) for track in tracks],
            custom_parameters=dict(custom) if isinstance(custom, dict) else {},
        )


@dataclass
class MediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    sequence_number: int
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @property
    def is_outbound(self) -> bool:
        return self.track == MediaTrack.OUTBOUND.value

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "MediaEvent":
        """Parse from Twilio message."""
        media = _section(message, "media")
        payload_b64 = media.get("payload", "")
        if not isinstance(payload_b64, str):
            raise ProtocolError("Media payload must be a base64 string")

        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProtocolError(f"Invalid base64 payload: {e}") from e

        return cls(
            stream_sid=_require_stream_sid(message.get("streamSid")),
            track=str(media.get("track", MediaTrack.INBOUND.value)),
            sequence_number=_to_int(message.get("sequenceNumber")),
            chunk=_to_int(media.get("chunk")),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class StopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str
    call_sid: str = ""
    account_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "StopEvent":
        """Parse from Twilio message."""
        stop = _section(message, "stop")
        return cls(
            stream_sid=_require_stream_sid(stop.get("streamSid"), message.get("streamSid")),
            call_sid=str(stop.get("callSid", "")),
            account_sid=str(stop.get("accountSid", "")),
        )


@dataclass
class UnknownEvent:
    """Any event the bridge does not act on (connected, mark, dtmf, ...)."""
    event_type: str
    message: Dict[str, Any] = field(default_factory=dict)


TwilioEvent = Union[StartEvent, MediaEvent, StopEvent, UnknownEvent]


def parse_twilio_message(raw_message: Union[str, bytes]) -> TwilioEvent:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        One of StartEvent, MediaEvent, StopEvent or UnknownEvent

    Raises:
        ProtocolError: If the message is malformed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object")

    event_type_str = message.get("event")
    if not isinstance(event_type_str, str) or not event_type_str:
        raise ProtocolError("Missing event type")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        return UnknownEvent(event_type=event_type_str, message=message)

    if event_type == TwilioEventType.START:
        return StartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return MediaEvent.from_message(message)
    if event_type == TwilioEventType.STOP:
        return StopEvent.from_message(message)
    return UnknownEvent(event_type=event_type.value, message=message)


def create_media_message(
    stream_sid: str,
    audio_payload: bytes,
) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (should be 160 bytes for 20ms)

    Returns:
        JSON string to send to Twilio
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_audio_messages(stream_sid: str, ulaw_bytes: bytes, frame_size: Optional[int] = None) -> List[str]:
    """
    Create chunked media messages for Twilio.

    Chunks audio into 20ms frames (160 bytes) for smooth playback.
    """
    size = frame_size or TWILIO_FRAME_SIZE
    return [create_media_message(stream_sid, chunk) for chunk in chunk_audio(ulaw_bytes, size)]
