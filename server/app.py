"""
FastAPI server for the phone ordering agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /incoming-call, /twiml: TwiML for the Twilio voice webhook
- WS /media-stream (alias /ws): Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio when installed (Linux/macOS)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop is optional

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from urllib.parse import parse_qs
from xml.sax.saxutils import quoteattr
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.phone_orders.config import get_config, init_config, ConfigError
from src.phone_orders.finalize import TRIGGER_SWEEP, FinalizationGateway
from src.phone_orders.menu import MenuProvider
from src.phone_orders.realtime_session import RealtimeOrderPipeline
from src.phone_orders.session import SessionRegistry, normalize_phone
from src.phone_orders.sinks import build_sinks


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
    active_calls: int = 0
    tool_calls: int = 0
    rejected_actions: int = 0
    responses_cancelled: int = 0
    reconnects: int = 0
    sessions_swept: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "tool_calls": self.tool_calls,
            "rejected_actions": self.rejected_actions,
            "responses_cancelled": self.responses_cancelled,
            "reconnects": self.reconnects,
            "sessions_swept": self.sessions_swept,
            "errors": self.errors,
        }


class AppState:
    """Process-wide collaborators shared by every call."""

    def __init__(self) -> None:
        self.registry = SessionRegistry()
        self._gateway: Optional[FinalizationGateway] = None
        self._menu_provider: Optional[MenuProvider] = None
        self.sweep_task: Optional[asyncio.Task] = None

    @property
    def gateway(self) -> FinalizationGateway:
        if self._gateway is None:
            config = get_config()
            self._gateway = FinalizationGateway(
                build_sinks(config),
                tax_rate=config.tax_rate,
                store_name=config.store_name,
                store_location=config.store_location,
                timeout_s=config.sink_timeout_seconds,
            )
        return self._gateway

    @property
    def menu_provider(self) -> MenuProvider:
        if self._menu_provider is None:
            config = get_config()
            self._menu_provider = MenuProvider(config.menu_path, ttl_seconds=config.menu_cache_seconds)
        return self._menu_provider


metrics = ServerMetrics()
state = AppState()


def sweep_stale_sessions(max_age_seconds: float) -> int:
    """Evict sessions whose call went quiet without cleanup and give their orders a last chance."""
    evicted = state.registry.sweep(max_age_seconds)
    for session in evicted:
        state.gateway.submit(session, TRIGGER_SWEEP)
    metrics.sessions_swept += len(evicted)
    return len(evicted)


async def _sweep_loop(interval_seconds: float, max_age_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            sweep_stale_sessions(max_age_seconds)
        except Exception:
            logger.exception("Session sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting phone ordering server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        menu = state.menu_provider.snapshot()
        logger.info("Menu ready", num_items=len(menu))

        state.sweep_task = asyncio.create_task(
            _sweep_loop(config.session_sweep_interval_seconds, config.session_stale_seconds)
        )

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            sinks=[sink.name for sink in state.gateway.sinks],
        )

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
    if state.sweep_task and not state.sweep_task.done():
        state.sweep_task.cancel()
        await asyncio.gather(state.sweep_task, return_exceptions=True)
    await state.gateway.close()


app = FastAPI(
    title="Phone Ordering Agent",
    description="Voice ordering over Twilio Media Streams and OpenAI Realtime",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
            "active_sessions": len(state.registry),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    gateway = state.gateway
    content = metrics.to_dict()
    content.update(
        {
            "active_sessions": len(state.registry),
            "orders_logged": gateway.orders_logged,
            "orders_incomplete": gateway.orders_incomplete,
            "order_dispatch_failures": gateway.dispatch_failures,
            "order_dispatches_pending": gateway.pending,
        }
    )
    return JSONResponse(content=content)


async def _caller_number(request: Request) -> Optional[str]:
    caller = request.query_params.get("From")
    if caller is None and request.method == "POST":
        body = (await request.body()).decode("utf-8", errors="replace")
        values = parse_qs(body).get("From")
        caller = values[0] if values else None
    return caller


@app.post("/twiml")
@app.get("/twiml")
@app.post("/incoming-call")
@app.get("/incoming-call")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for the Twilio voice webhook.

    Connects the call to our media stream and forwards the caller's number as a
    stream parameter (blocked/anonymous callers get an empty value).
    """
    config = get_config()
    caller_phone = normalize_phone(await _caller_number(request)) or ""

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={quoteattr(config.ws_url)}>
            <Parameter name="callerPhone" value={quoteattr(caller_phone)} />
        </Stream>
    </Connect>
</Response>"""

    logger.info("Generated TwiML", ws_url=config.ws_url, caller_known=bool(caller_phone))

    return Response(
        content=twiml,
        media_type="application/xml",
    )


def create_pipeline(send_message) -> RealtimeOrderPipeline:
    return RealtimeOrderPipeline(
        send_message,
        registry=state.registry,
        gateway=state.gateway,
        menu_provider=state.menu_provider,
    )


def _record_call_stats(pipeline) -> None:
    stats = pipeline.stats
    metrics.tool_calls += stats.tool_calls
    metrics.rejected_actions += stats.tool_rejections
    metrics.responses_cancelled += stats.responses_cancelled
    metrics.reconnects += stats.reconnects


@app.websocket("/media-stream")
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Handles incoming audio and sends outgoing audio for a call.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    connection_id = f"conn_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        connection_id=connection_id,
        active_calls=metrics.active_calls,
    )

    pipeline = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.warning("Failed to send WebSocket message", connection_id=connection_id, error=str(e))

    try:
        pipeline = create_pipeline(send_message)
        await pipeline.start()

        while True:
            try:
                message = await websocket.receive_text()
                await pipeline.handle_message(message)
                if not pipeline.is_running:
                    break

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", connection_id=connection_id)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    connection_id=connection_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            connection_id=connection_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if pipeline:
            try:
                await pipeline.stop()
            except Exception as e:
                logger.error("Error stopping pipeline", error=str(e))
            _record_call_stats(pipeline)

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Connection closed",
            connection_id=connection_id,
            active_calls=metrics.active_calls,
        )


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
