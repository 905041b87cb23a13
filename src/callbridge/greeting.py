"""Opening utterance spoken as soon as a call starts."""

from typing import Any, Optional

import structlog

from src.callbridge.config import get_config
from src.callbridge.emitter import AudioEmitter
from src.callbridge.errors import EngineError
from src.callbridge.session import Session

logger = structlog.get_logger(__name__)


class GreetingInitiator:
    """
    Speaks first, without waiting for caller audio.

    Not gated by the busy flag; the history write goes through the session's
    conversation lock like any pipeline run.
    """

    def __init__(self, llm: Any, tts: Any, emitter: Optional[AudioEmitter] = None, config: Optional[Any] = None):
        self.config = config or get_config()
        self.llm = llm
        self.tts = tts
        self.emitter = emitter or AudioEmitter()

    async def greet(self, session: Session) -> bool:
        """Generate, record and send the greeting. Returns True if audio was sent."""
        instruction = [{"role": "user", "content": self.config.greeting_instruction}]

        try:
            async with session.conversation_lock:
                text = (await self.llm.converse(session.system_prompt, instruction) or "").strip()
                if not text:
                    logger.warning("Conversation engine returned no greeting", **session.log_context())
                    return False

                synthesized = await self.tts.synthesize(text, voice_id=session.voice_id)
                session.history.add_assistant_message(text)
        except EngineError as e:
            logger.error("Greeting failed", error=str(e), error_type=type(e).__name__, **session.log_context())
            return False

        result = await self.emitter.emit(session, synthesized)
        logger.info(
            "Greeting sent",
            chars=len(text),
            frames_sent=result.frames_sent,
            ok=result.ok,
            **session.log_context(),
        )
        return result.frames_sent > 0
