"""
Per-call session state and the registry of live sessions.

The registry is created once at startup and injected into the media router.
It is only touched from the event loop thread and none of its operations
await, so insert/lookup/delete never interleave with another coroutine.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import structlog

from src.callbridge.llm import ConversationHistory

logger = structlog.get_logger(__name__)


class Transport(Protocol):
    """The live channel back to Twilio (a FastAPI WebSocket in production)."""

    async def send_text(self, data: str) -> None:
        ...


@dataclass
class Session:
    """State for one active call's media stream."""
    stream_sid: str
    call_sid: str
    transport: Transport
    system_prompt: str
    voice_id: str
    campaign: Optional[str] = None
    history: ConversationHistory = field(default_factory=ConversationHistory)
    inbound_buffer: List[bytes] = field(default_factory=list)
    busy: bool = False
    pending_audio: Optional[bytes] = None
    closed: bool = False
    frames_received: int = 0
    turns_completed: int = 0
    # Serializes history writers (pipeline runs and the greeting).
    conversation_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    # Keeps each utterance's frames contiguous on the transport.
    emit_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def buffered_frames(self) -> int:
        return len(self.inbound_buffer)

    def take_buffer(self) -> bytes:
        """Concatenate and clear the inbound buffer."""
        blob = b"".join(self.inbound_buffer)
        self.inbound_buffer = []
        return blob

    def log_context(self) -> Dict[str, Any]:
        return {"stream_sid": self.stream_sid, "call_sid": self.call_sid}


class SessionRegistry:
    """In-memory store of live sessions keyed by stream SID."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def create(
        self,
        stream_sid: str,
        call_sid: str,
        transport: Transport,
        system_prompt: str,
        voice_id: str,
        *,
        campaign: Optional[str] = None,
    ) -> Session:
        """Create and register a session, replacing any prior one for the same stream."""
        previous = self._sessions.get(stream_sid)
        if previous is not None:
            logger.warning(
                "Duplicate start for stream, replacing session",
                stream_sid=stream_sid,
                previous_call_sid=previous.call_sid,
                call_sid=call_sid,
            )
            previous.closed = True

        session = Session(
            stream_sid=stream_sid,
            call_sid=call_sid,
            transport=transport,
            system_prompt=system_prompt,
            voice_id=voice_id,
            campaign=campaign,
        )
        self._sessions[stream_sid] = session
        return session

    def get(self, stream_sid: str) -> Optional[Session]:
        return self._sessions.get(stream_sid)

    def remove(self, stream_sid: str) -> Optional[Session]:
        """Remove a session; in-flight work keeps its own reference."""
        session = self._sessions.pop(stream_sid, None)
        if session is not None:
            session.closed = True
            session.pending_audio = None
        return session

    def remove_transport(self, transport: Transport) -> List[Session]:
        """Remove every session still owned by `transport`."""
        owned = [s.stream_sid for s in self._sessions.values() if s.transport is transport]
        removed = []
        for stream_sid in owned:
            session = self.remove(stream_sid)
            if session is not None:
                removed.append(session)
        return removed

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def __contains__(self, stream_sid: object) -> bool:
        return stream_sid in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
