"""Conversation pipeline.

One flushed utterance goes through, strictly in order:
inbound mu-law -> WAV (decode) -> STT (transcribe) -> LLM (converse) ->
TTS (synthesize) -> mu-law (encode) -> Twilio outbound (emit)

Guarantees:
- At most one run per session: `busy` is set before the run is spawned and
  cleared on every exit path
- History writes (user turn, assistant turn) happen under the session's
  conversation lock, shared with the greeting
- A failed stage aborts only the current run; nothing is spoken back
- Runs for different sessions are independent tasks

Overlap policy when a flush arrives while the session is busy:
- "drop": the new utterance is discarded
- "queue": one utterance is held (newest wins) and run when the current run ends
"""

import asyncio
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Set

import structlog

from src.callbridge.audio import AudioConversionError, decode_ulaw_to_wav, get_audio_duration_ms
from src.callbridge.config import OVERLAP_POLICIES, get_config
from src.callbridge.emitter import AudioEmitter
from src.callbridge.errors import ConversationError, SynthesisError, TranscriptionError
from src.callbridge.session import Session

logger = structlog.get_logger(__name__)

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_LOG_PHONE_RE = re.compile(r"(?:\+?\d[\s\-.]?)?(?:\(?\d{3}\)?[\s\-.]?)\d{3}[\s\-.]?\d{4}")


def _redact_transcript_for_logs(text: str) -> str:
    """
    Best-effort redaction for logs (to reduce accidental PII exposure).

    Masks emails and phone numbers; not a compliance-grade scrubber.
    """
    if not text:
        return ""

    redacted = _EMAIL_RE.sub("[EMAIL]", text)

    def _mask_phone(match: re.Match[str]) -> str:
        digits = re.sub(r"\D+", "", match.group(0) or "")
        return f"[PHONE-***{digits[-4:]}]"

    return _LOG_PHONE_RE.sub(_mask_phone, redacted)


class OverlapPolicy(str, Enum):
    DROP = "drop"
    QUEUE = "queue"


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    NO_SPEECH = "no_speech"
    NO_REPLY = "no_reply"
    DECODE_FAILED = "decode_failed"
    TRANSCRIPTION_FAILED = "transcription_failed"
    CONVERSATION_FAILED = "conversation_failed"
    SYNTHESIS_FAILED = "synthesis_failed"
    EMIT_FAILED = "emit_failed"
    ERROR = "error"


@dataclass
class TurnMetrics:
    """Metrics for a single pipeline run."""
    start_time: float = 0.0
    audio_ms: float = 0.0
    decode_ms: float = 0.0
    stt_ms: float = 0.0
    llm_ms: float = 0.0
    tts_ms: float = 0.0
    emit_ms: float = 0.0
    total_turn_ms: float = 0.0
    frames_sent: int = 0
    outcome: TurnOutcome = TurnOutcome.ERROR

    def finalize(self) -> None:
        """Calculate total turn time."""
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000

    def to_log(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "audio_ms": round(self.audio_ms, 1),
            "decode_ms": round(self.decode_ms, 1),
            "stt_ms": round(self.stt_ms, 1),
            "llm_ms": round(self.llm_ms, 1),
            "tts_ms": round(self.tts_ms, 1),
            "emit_ms": round(self.emit_ms, 1),
            "total_turn_ms": round(self.total_turn_ms, 1),
            "frames_sent": self.frames_sent,
        }


def _elapsed_ms(since: float) -> float:
    return (time.time() - since) * 1000


class ConversationPipeline:
    """Runs utterances through STT -> LLM -> TTS for any number of sessions."""

    def __init__(
        self,
        transcriber: Any,
        llm: Any,
        tts: Any,
        emitter: Optional[AudioEmitter] = None,
        *,
        overlap_policy: Optional[str] = None,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        policy = (overlap_policy or self.config.overlap_policy or "drop").strip().lower()
        if policy not in OVERLAP_POLICIES:
            raise ValueError(f"Unsupported overlap policy: {policy}")

        self.overlap_policy = OverlapPolicy(policy)
        self.transcriber = transcriber
        self.llm = llm
        self.tts = tts
        self.emitter = emitter or AudioEmitter()
        self._tasks: Set[asyncio.Task] = set()
        self.runs_started = 0
        self.utterances_dropped = 0

    @property
    def active_runs(self) -> int:
        return len(self._tasks)

    def submit(self, session: Session, audio: bytes) -> Optional[asyncio.Task]:
        """
        Start a run for `audio` without waiting for it.

        Returns:
            The spawned task, or None if the session was busy (the overlap
            policy decides whether the audio is dropped or held)
        """
        if session.busy:
            self._handle_overlap(session, audio)
            return None

        session.busy = True
        task = asyncio.create_task(self._run_owned(session, audio))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, session: Session, audio: bytes) -> bool:
        """
        Run the pipeline and wait for it to finish.

        Returns:
            False without doing anything if the session is already busy
        """
        if session.busy:
            logger.info("Pipeline busy, run refused", **session.log_context())
            return False

        session.busy = True
        await self._run_owned(session, audio)
        return True

    async def wait_idle(self) -> None:
        """Wait until no run is in flight (including runs started by the queue policy)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _handle_overlap(self, session: Session, audio: bytes) -> None:
        if self.overlap_policy == OverlapPolicy.QUEUE:
            replaced = session.pending_audio is not None
            if replaced:
                self.utterances_dropped += 1
            session.pending_audio = audio
            logger.info(
                "Pipeline busy, utterance queued",
                replaced_pending=replaced,
                bytes=len(audio),
                **session.log_context(),
            )
            return

        self.utterances_dropped += 1
        logger.info(
            "Pipeline busy, utterance dropped",
            bytes=len(audio),
            audio_ms=round(get_audio_duration_ms(audio), 1),
            **session.log_context(),
        )

    async def _run_owned(self, session: Session, audio: bytes) -> None:
        """Run with the busy flag already held by the caller."""
        self.runs_started += 1
        metrics = TurnMetrics(start_time=time.time(), audio_ms=get_audio_duration_ms(audio))
        try:
            metrics.outcome = await self._process(session, audio, metrics)
        except AudioConversionError as e:
            metrics.outcome = TurnOutcome.DECODE_FAILED
            logger.error("Failed to decode caller audio", error=str(e), **session.log_context())
        except TranscriptionError as e:
            metrics.outcome = TurnOutcome.TRANSCRIPTION_FAILED
            logger.error("Transcription failed", error=str(e), **session.log_context())
        except ConversationError as e:
            metrics.outcome = TurnOutcome.CONVERSATION_FAILED
            logger.error("Conversation engine failed", error=str(e), **session.log_context())
        except SynthesisError as e:
            metrics.outcome = TurnOutcome.SYNTHESIS_FAILED
            logger.error(
                "Synthesis failed",
                error=str(e),
                status_code=e.status_code,
                **session.log_context(),
            )
        except Exception as e:
            metrics.outcome = TurnOutcome.ERROR
            logger.exception("Turn failed", error=str(e), **session.log_context())
        finally:
            session.busy = False
            metrics.finalize()
            logger.info("Turn finished", **metrics.to_log(), **session.log_context())
            self._drain_pending(session)

    def _drain_pending(self, session: Session) -> None:
        pending = session.pending_audio
        session.pending_audio = None
        if pending is None:
            return
        if session.closed:
            logger.info("Session closed, pending utterance discarded", **session.log_context())
            return
        self.submit(session, pending)

    async def _process(self, session: Session, audio: bytes, metrics: TurnMetrics) -> TurnOutcome:
        # 1. Decode
        stage_start = time.time()
        wav = decode_ulaw_to_wav(audio)
        metrics.decode_ms = _elapsed_ms(stage_start)

        # 2. Transcribe
        stage_start = time.time()
        transcript = (await self.transcriber.transcribe(wav) or "").strip()
        metrics.stt_ms = _elapsed_ms(stage_start)
        if not transcript:
            logger.debug("Empty transcript, nothing said", **session.log_context())
            return TurnOutcome.NO_SPEECH

        logger.info("Caller said", chars=len(transcript), **session.log_context())
        logger.debug("Caller transcript", text=_redact_transcript_for_logs(transcript), **session.log_context())

        async with session.conversation_lock:
            # 3. Converse
            session.history.add_user_message(transcript)
            stage_start = time.time()
            reply = await self.llm.converse(session.system_prompt, session.history.get_messages())
            reply = (reply or "").strip()
            metrics.llm_ms = _elapsed_ms(stage_start)
            if not reply:
                logger.warning("Conversation engine returned no reply", **session.log_context())
                # Keep user/assistant alternation; nothing is synthesized or sent
                session.history.add_assistant_message("")
                return TurnOutcome.NO_REPLY

            # 4. Synthesize
            stage_start = time.time()
            synthesized = await self.tts.synthesize(reply, voice_id=session.voice_id)
            metrics.tts_ms = _elapsed_ms(stage_start)
            session.history.add_assistant_message(reply)

        logger.debug("Assistant reply", text=_redact_transcript_for_logs(reply), **session.log_context())

        # 5. Encode + emit
        stage_start = time.time()
        result = await self.emitter.emit(session, synthesized)
        metrics.emit_ms = _elapsed_ms(stage_start)
        metrics.frames_sent = result.frames_sent
        session.turns_completed += 1
        return TurnOutcome.COMPLETED if result.ok else TurnOutcome.EMIT_FAILED
