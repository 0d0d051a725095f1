import asyncio
import logging
import sys
import time
import traceback
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from aarogya.config import Settings
from aarogya.dependencies import AppContext
from aarogya.errors import MESSAGE_BY_KIND, STATUS_BY_KIND, ErrorKind, ProviderError
from aarogya.routers import chat
from aarogya.services.provider import ChatProvider, build_provider
from aarogya.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
BODY_TOO_LARGE = "Request body too large"

try:
    __version__ = version("aarogya-chat-relay")
except PackageNotFoundError:
    __version__ = "0.0.0"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _debug_fields(settings: Settings, exc: BaseException) -> dict:
    if not settings.is_development:
        return {}
    return {
        "type": type(exc).__name__,
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


class BodySizeLimitMiddleware:
    """Reject request bodies above ``max_bytes``, with or without Content-Length.

    Declared lengths are refused before the app runs; chunked bodies are
    counted as they are received and abort body parsing once over the limit.
    """

    def __init__(self, app: ASGIApp, max_bytes: int):
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        length = Headers(scope=scope).get("content-length")
        if length and length.isdigit() and int(length) > self.max_bytes:
            response = JSONResponse(status_code=413, content={"error": BODY_TOO_LARGE})
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    raise HTTPException(status_code=413, detail=BODY_TOO_LARGE)
            return message

        await self.app(scope, limited_receive, send)


def _register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError):
        logger.error("Provider error on %s %s (%s): %s",
                     request.method, request.url.path, exc.kind.value, exc)
        content = {"error": exc.public_message, "details": str(exc)}
        content.update(_debug_fields(settings, exc))
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            content = {"error": "Route not found", "path": request.url.path, "method": request.method}
        else:
            content = {"error": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if any("query" in err.get("loc", ()) for err in errors):
            message = MESSAGE_BY_KIND[ErrorKind.INVALID_REQUEST]
        else:
            message = "Invalid request body"
        logger.info("Rejected request to %s: %s", request.url.path, message)
        details = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
            for err in errors
        ]
        return JSONResponse(
            status_code=STATUS_BY_KIND[ErrorKind.INVALID_REQUEST],
            content={"error": message, "details": details},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        content = {"error": "Internal Server Error"}
        content.update(_debug_fields(settings, exc))
        return JSONResponse(status_code=500, content=content)


def create_app(settings: Settings, provider: ChatProvider | None = None) -> FastAPI:
    app = FastAPI(title="Aarogya Chat Relay", version=__version__)
    app.state.context = AppContext(
        settings=settings,
        provider=provider or build_provider(settings),
        rate_limiter=RateLimiter(
            max_requests=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        ),
    )

    app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)

    if settings.is_development:
        @app.middleware("http")
        async def log_requests(request: Request, call_next):
            start_time = time.time()
            client = request.client.host if request.client else "unknown"
            response = await call_next(request)
            logger.info("%s %s - %s - %d - %.3fs", request.method, request.url.path,
                        client, response.status_code, time.time() - start_time)
            return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    _register_exception_handlers(app, settings)
    app.include_router(chat.router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "UP",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.environment,
            "version": __version__,
        }

    return app


def load_settings() -> Settings:
    """Read settings or exit the process; nothing is bound before this succeeds."""
    try:
        return Settings()
    except ValidationError as e:
        missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        logger.critical("Invalid or missing configuration: %s", ", ".join(missing))
        sys.exit(1)


def make_fault_handler(server: uvicorn.Server, faults: list):
    """Event loop exception handler: record the fault and stop the server."""

    def handle(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        logger.critical("UNHANDLED EXCEPTION! Shutting down... %s",
                        context.get("message", ""), exc_info=exc)
        faults.append(exc or context.get("message"))
        server.should_exit = True

    return handle


async def _serve(server: uvicorn.Server, faults: list) -> None:
    asyncio.get_running_loop().set_exception_handler(make_fault_handler(server, faults))
    await server.serve()


def run() -> None:
    """Process entry point: configured entirely from the environment."""
    configure_logging()
    settings = load_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    app = create_app(settings)
    config = uvicorn.Config(app, host=settings.host, port=settings.port, log_config=None)
    server = uvicorn.Server(config)
    logger.info("Starting server on port %d in %s mode", settings.port, settings.environment)

    faults: list = []
    asyncio.run(_serve(server, faults))
    if faults:
        sys.exit(1)


if __name__ == "__main__":
    run()
