"""
FastAPI server for the call bridge.

Endpoints:
- GET /: Status
- GET /health: Health check
- GET /metrics: JSON metrics
- WS /media-stream (alias /ws): Twilio Media Streams WebSocket
"""

import asyncio
import sys

# 2025 Performance: Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.callbridge.config import get_config, init_config, ConfigError
from src.callbridge.twilio_protocol import StartEvent


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "errors": self.errors,
        }


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call bridge server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        from src.callbridge.media_router import create_media_router
        router = create_media_router(config)

        # Fail fast on a misspelled model name
        if config.validate_llm_model:
            await router.pipeline.llm.validate_model()

        app.state.router = router

        logger.info("Server ready", port=config.port)

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await app.state.router.stop()


app = FastAPI(
    title="Call Bridge",
    description="Bridges Twilio calls to speech recognition, an LLM and speech synthesis",
    version="1.0.0",
    lifespan=lifespan,
)


def _active_sessions(app: FastAPI) -> int:
    router = getattr(app.state, "router", None)
    return len(router.registry) if router is not None else 0


@app.get("/")
async def root() -> JSONResponse:
    return JSONResponse(content={"status": "Call bridge running"})


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": _active_sessions(request.app),
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    content = metrics.to_dict()
    content["active_sessions"] = _active_sessions(request.app)
    router = getattr(request.app.state, "router", None)
    if router is not None:
        content["pipeline_runs"] = router.pipeline.runs_started
        content["pipeline_active_runs"] = router.pipeline.active_runs
        content["utterances_dropped"] = router.pipeline.utterances_dropped
    return JSONResponse(content=content)


@app.websocket("/media-stream")
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, campaign: Optional[str] = None) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    The campaign selector may be passed as `?campaign=<slug>`.
    """
    await websocket.accept()
    router = websocket.app.state.router

    metrics.total_connections += 1
    metrics.active_connections += 1

    logger.info("WebSocket connected", campaign=campaign, active_connections=metrics.active_connections)

    try:
        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected")
                break

            try:
                event = await router.handle_message(message, websocket, campaign=campaign)
            except Exception as e:
                logger.error("Error handling WebSocket message", error=str(e))
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

            if isinstance(event, StartEvent):
                metrics.total_calls += 1

    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1

    finally:
        router.transport_closed(websocket)
        metrics.active_connections -= 1
        logger.info("Connection closed", active_sessions=len(router.registry))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
