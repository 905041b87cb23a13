"""
Media event routing.

Consumes Twilio frames for every connection and drives the session
lifecycle:

- start: resolve the campaign, register the session, launch the greeting
- media: buffer inbound caller audio, submit flushed utterances to the pipeline
- stop: unregister the session (in-flight runs finish on their own)

Nothing here awaits a pipeline run, so one slow turn never stalls event
consumption for its own call or any other.
"""

import asyncio
from typing import Any, Optional, Set

import structlog

from src.callbridge.accumulator import InboundAudioAccumulator
from src.callbridge.campaigns import CampaignResolver, resolve_session_profile
from src.callbridge.config import get_config
from src.callbridge.greeting import GreetingInitiator
from src.callbridge.pipeline import ConversationPipeline
from src.callbridge.session import Session, SessionRegistry, Transport
from src.callbridge.twilio_protocol import (
    MediaEvent,
    ProtocolError,
    StartEvent,
    StopEvent,
    TwilioEvent,
    UnknownEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

CAMPAIGN_PARAMETER = "campaign"


class MediaEventRouter:
    """Routes parsed Twilio events to the registry, accumulator, greeting and pipeline."""

    def __init__(
        self,
        registry: SessionRegistry,
        pipeline: ConversationPipeline,
        accumulator: Optional[InboundAudioAccumulator] = None,
        greeter: Optional[GreetingInitiator] = None,
        resolver: Optional[CampaignResolver] = None,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self.registry = registry
        self.pipeline = pipeline
        self.accumulator = accumulator or InboundAudioAccumulator()
        self.greeter = greeter
        self.resolver = resolver
        self._tasks: Set[asyncio.Task] = set()
        self.unknown_stream_frames = 0

    async def handle_message(
        self,
        raw_message: Any,
        transport: Transport,
        *,
        campaign: Optional[str] = None,
    ) -> Optional[TwilioEvent]:
        """
        Handle one WebSocket message from Twilio.

        Args:
            raw_message: Raw JSON message
            transport: Connection the message arrived on (used to reply)
            campaign: Campaign selector from the connection URL, if any

        Returns:
            The parsed event, or None if the message was malformed
        """
        try:
            event = parse_twilio_message(raw_message)
        except ProtocolError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return None

        if isinstance(event, StartEvent):
            await self._handle_start(event, transport, campaign)
        elif isinstance(event, MediaEvent):
            self._handle_media(event)
        elif isinstance(event, StopEvent):
            self._handle_stop(event)
        elif isinstance(event, UnknownEvent):
            logger.debug("Ignoring Twilio event", event_type=event.event_type)

        return event

    async def _handle_start(self, event: StartEvent, transport: Transport, campaign: Optional[str]) -> Session:
        selector = campaign or event.custom_parameters.get(CAMPAIGN_PARAMETER) or None
        profile = await resolve_session_profile(self.resolver, selector, self.config)

        session = self.registry.create(
            event.stream_sid,
            event.call_sid,
            transport,
            profile.system_prompt,
            profile.voice_id,
            campaign=profile.campaign,
        )
        logger.info(
            "Call started",
            campaign=profile.campaign,
            campaign_matched=profile.matched,
            voice_id=profile.voice_id,
            tracks=event.tracks,
            active_sessions=len(self.registry),
            **session.log_context(),
        )

        if self.greeter is not None and self.config.greeting_enabled:
            self._spawn(self._greet(session))
        return session

    async def _greet(self, session: Session) -> None:
        try:
            await self.greeter.greet(session)
        except Exception as e:
            logger.exception("Greeting task error", error=str(e), **session.log_context())

    def _handle_media(self, event: MediaEvent) -> None:
        if event.is_outbound:
            return

        session = self.registry.get(event.stream_sid)
        if session is None:
            self.unknown_stream_frames += 1
            logger.debug(
                "Received media for unknown stream",
                stream_sid=event.stream_sid,
                sequence_number=event.sequence_number,
            )
            return

        if session.frames_received == 0:
            logger.info("Inbound media received", bytes=len(event.payload), track=event.track, **session.log_context())

        utterance = self.accumulator.append(session, event.payload)
        if utterance is not None:
            self.pipeline.submit(session, utterance)

    def _handle_stop(self, event: StopEvent) -> None:
        session = self.registry.remove(event.stream_sid)
        if session is None:
            logger.info("Stop for unknown stream", stream_sid=event.stream_sid)
            return

        logger.info(
            "Call stopped",
            frames_received=session.frames_received,
            frames_discarded=session.buffered_frames,
            turns_completed=session.turns_completed,
            run_in_flight=session.busy,
            active_sessions=len(self.registry),
            **session.log_context(),
        )

    def transport_closed(self, transport: Transport) -> int:
        """Drop sessions whose connection closed without a stop event."""
        removed = self.registry.remove_transport(transport)
        for session in removed:
            logger.warning("Transport closed without stop, session removed", **session.log_context())
        return len(removed)

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for greetings and pipeline runs that are still in flight."""
        while self._tasks or self.pipeline.active_runs:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await self.pipeline.wait_idle()

    async def stop(self) -> None:
        """Let in-flight work finish, then close engine clients."""
        await self.wait_idle()
        for client in (self.pipeline.transcriber, self.pipeline.llm, self.pipeline.tts):
            close = getattr(client, "close", None) or getattr(client, "stop", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("Error closing engine client", client=type(client).__name__, error=str(e))


def create_media_router(config: Optional[Any] = None) -> MediaEventRouter:
    """
    Build the router with its registry, engines and campaign resolver.

    Call once at application startup.
    """
    from src.callbridge.accumulator import FrameCountFlushPolicy
    from src.callbridge.campaigns import StaticCampaignResolver
    from src.callbridge.llm import create_llm
    from src.callbridge.stt import Transcriber
    from src.callbridge.tts import TTSManager

    config = config or get_config()
    llm = create_llm(config)
    tts = TTSManager(config)

    resolver = StaticCampaignResolver.from_file(config.campaigns_file) if config.campaigns_file else StaticCampaignResolver()
    pipeline = ConversationPipeline(Transcriber(config), llm, tts, config=config)

    return MediaEventRouter(
        SessionRegistry(),
        pipeline,
        accumulator=InboundAudioAccumulator(FrameCountFlushPolicy(config.flush_threshold_frames)),
        greeter=GreetingInitiator(llm, tts, config=config),
        resolver=resolver,
        config=config,
    )
