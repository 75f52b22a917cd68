"""
FastAPI server for the intake voice agent.

Endpoints:
- GET /, /health: Health check
- GET /status: Active calls and pending transfers
- GET /metrics: JSON metrics
- POST|GET /incoming: Twilio voice webhook (connect to AI session or dial the human line)
- POST /stream-status: Twilio Media Streams status callback
- WS /connection: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
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

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState
import structlog
import uvicorn

from src.intake.config import get_config, init_config, ConfigError


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
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
    transfers_routed: int = 0
    transfers_forwarded: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "transfers_routed": self.transfers_routed,
            "transfers_forwarded": self.transfers_forwarded,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting intake voice agent server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        from src.intake.registry import get_registry
        get_registry()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            transfer_number=config.transfer_number,
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
    from src.intake.registry import reset_registry
    reset_registry()


app = FastAPI(
    title="Intake Voice Agent",
    description="AI intake agent for Twilio phone calls with live transfer to a human line",
    version="1.0.0",
    lifespan=lifespan,
)


def _get_router():
    from src.intake.call_control import get_call_control
    from src.intake.registry import get_registry
    from src.intake.routing import CallRouter

    return CallRouter(get_registry(), get_config(), get_call_control())


async def _request_params(request: Request) -> Dict[str, str]:
    """Twilio parameters from the query string and (for POST) the form body."""
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: str(v) for k, v in form.items()})
    return params


@app.get("/")
@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/status")
async def get_status() -> JSONResponse:
    """Active calls and transfers waiting for their webhook."""
    from src.intake.registry import get_registry

    pending = get_registry().pending()
    return JSONResponse(
        content={
            "status": "running",
            "active_calls": metrics.active_calls,
            "pending_transfers": len(pending),
            "transfers": pending,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/incoming")
@app.get("/incoming")
@app.post("/twiml")
@app.get("/twiml")
@app.post("/incoming-call")
@app.get("/incoming-call")
async def incoming_call(request: Request) -> Response:
    """
    Twilio voice webhook.

    Returns TwiML that either connects to our WebSocket endpoint or, when a
    transfer is due for this call, dials the human line.
    """
    from src.intake.routing import RouteAction

    params = await _request_params(request)
    decision = _get_router().route_incoming(params.get("CallSid"))
    if decision.action == RouteAction.DIAL:
        metrics.transfers_routed += 1

    return Response(
        content=decision.twiml,
        media_type="application/xml",
    )


@app.post("/stream-status")
async def stream_status(request: Request) -> Response:
    """Twilio Media Streams status callback."""
    params = await _request_params(request)
    forwarded = await _get_router().handle_stream_status(
        params.get("CallSid"),
        params.get("StreamEvent"),
    )
    if forwarded:
        metrics.transfers_forwarded += 1
    return Response(status_code=204)


class WebSocketTransport:
    """Adapts a FastAPI WebSocket to the session's transport interface."""

    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._closed = False
        self.close_code: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, message: str) -> None:
        await self._ws.send_text(message)

    async def receive_text(self) -> Optional[str]:
        if self._closed:
            return None
        try:
            return await self._ws.receive_text()
        except WebSocketDisconnect as e:
            self._closed = True
            self.close_code = e.code
            return None
        except RuntimeError:
            # Raised by Starlette when reading after the socket closed
            self._closed = True
            return None

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        self.close_code = code
        logger.info("Closing WebSocket", code=code, reason=reason)
        await self._ws.close(code=code, reason=reason)


@app.websocket("/connection")
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Runs one CallSession for the lifetime of the connection.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    call_id = f"call_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        call_id=call_id,
        active_calls=metrics.active_calls,
    )

    # Import here to avoid circular imports and speed up startup
    from src.intake.call_control import get_call_control
    from src.intake.session import CallSession

    session: Optional[CallSession] = None
    try:
        session = CallSession(WebSocketTransport(websocket), call_control=get_call_control())
        await session.run()

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if session:
            try:
                await session.close()
            except Exception as e:
                logger.error("Error closing session", error=str(e))

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Call ended",
            call_id=call_id,
            call_sid=session.call_sid if session else None,
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
