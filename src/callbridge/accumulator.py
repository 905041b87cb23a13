"""
Inbound audio accumulation.

Caller audio is buffered per session and released as one utterance when the
flush policy fires. The shipped policy is a fixed frame count (150 x 20ms,
about 3s), a stand-in for end-of-utterance detection that may cut speech
mid-sentence. A voice-activity detector can replace it by implementing
`FlushPolicy`.
"""

from typing import Optional, Protocol

import structlog

from src.callbridge.session import Session

logger = structlog.get_logger(__name__)

DEFAULT_FLUSH_THRESHOLD = 150


class FlushPolicy(Protocol):
    def should_flush(self, session: Session) -> bool:
        ...


class FrameCountFlushPolicy:
    """Flush once `threshold` frames are buffered."""

    def __init__(self, threshold: int = DEFAULT_FLUSH_THRESHOLD):
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = threshold

    def should_flush(self, session: Session) -> bool:
        return session.buffered_frames >= self.threshold


class InboundAudioAccumulator:
    """Buffers inbound frames and hands out utterance blobs."""

    def __init__(self, policy: Optional[FlushPolicy] = None):
        self.policy = policy or FrameCountFlushPolicy()

    def append(self, session: Session, frame: bytes) -> Optional[bytes]:
        """
        Buffer one frame.

        Returns:
            The concatenated utterance when the policy fires (the buffer is
            cleared), otherwise None
        """
        session.inbound_buffer.append(frame)
        session.frames_received += 1

        if not self.policy.should_flush(session):
            return None

        frames = session.buffered_frames
        blob = session.take_buffer()
        logger.debug("Inbound audio flushed", frames=frames, bytes=len(blob), **session.log_context())
        return blob
