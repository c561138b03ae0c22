"""FastAPI application: sync API under /api, WebDAV under /dav."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from filehub.config import Settings, get_settings
from filehub.dav.multistatus import XML_CONTENT_TYPE, error_body
from filehub.dav.routes import router as dav_router
from filehub.errors import HubError
from filehub.hub import Hub
from filehub.limiter import limiter
from filehub.sync.routes import router as sync_router
from filehub.users.routes import router as users_router

log = logging.getLogger(__name__)


def _setup_logging(settings: Settings) -> None:
    """Configure logging from settings (stderr always; optional file)."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger("filehub")
    root.setLevel(level)
    root.handlers.clear()
    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root.addHandler(sh)
    if settings.log_file and str(settings.log_file).strip():
        try:
            fh = logging.FileHandler(settings.log_file, encoding="utf-8")
            fh.setLevel(level)
            fh.setFormatter(fmt)
            root.addHandler(fh)
            root.info("Logging to file %s", settings.log_file)
        except OSError as e:
            root.warning("Could not open log file %s: %s", settings.log_file, e)
    else:
        root.debug("Logging to stderr only (no log_file set)")


def _is_dav(request: Request) -> bool:
    return request.url.path == "/dav" or request.url.path.startswith("/dav/")


def _error_response(request: Request, status_code: int, message: str, headers=None) -> Response:
    if status_code == 304:
        return Response(status_code=304, headers=headers)
    if _is_dav(request):
        return Response(
            content=error_body(message),
            status_code=status_code,
            media_type=XML_CONTENT_TYPE,
            headers=headers,
        )
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


def create_app(settings: Optional[Settings] = None, hub: Optional[Hub] = None) -> FastAPI:
    """Build the application around one Hub (from settings, or get_settings() when neither is given)."""
    if hub is None:
        hub = Hub(settings or get_settings())
    settings = hub.settings
    _setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize the hub, run the upload reaper, close on shutdown."""
        log.info("Startup: initializing hub")
        await hub.init()
        if settings.web.grpc_port:
            log.info("grpc_port=%s is reserved; no listener is started", settings.web.grpc_port)
        reaper = asyncio.create_task(
            hub.uploads.run_reaper(settings.upload.reaper_interval_seconds)
        )
        log.info("Startup complete")
        yield
        log.info("Shutdown")
        reaper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reaper
        await hub.close()

    app = FastAPI(title="FileHub", version="0.1.0", lifespan=lifespan)
    app.state.hub = hub
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses, and the DAV compliance class under /dav."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if _is_dav(request):
            response.headers["DAV"] = "1"
        return response

    @app.exception_handler(HubError)
    async def hub_error_handler(request: Request, exc: HubError):
        if exc.status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error_response(request, exc.status_code, exc.message, exc.headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(request, exc.status_code, str(exc.detail), getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        log.debug("Rejected %s %s: %s", request.method, request.url.path, errors)
        return _error_response(request, 400, message)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Return generic 500 without leaking stack trace or internals."""
        log.exception("Unhandled exception: %s", exc)
        return _error_response(request, 500, "Internal server error")

    app.include_router(users_router)
    app.include_router(sync_router)
    app.include_router(dav_router)

    @app.get("/health")
    @limiter.exempt
    def health() -> JSONResponse:
        """Health check. Exempt from rate limiting."""
        return JSONResponse(content={"status": "ok"})

    return app


def run() -> None:
    """Console entry point: serve on web.port, and on webdav.port as well when it differs."""
    settings = get_settings()
    application = create_app(settings)
    configs = [uvicorn.Config(application, host=settings.web.host, port=settings.web.port)]
    if settings.webdav.port and settings.webdav.port != settings.web.port:
        # Second listener shares the app; the lifespan runs once
        configs.append(
            uvicorn.Config(
                application, host=settings.web.host, port=settings.webdav.port, lifespan="off"
            )
        )

    async def serve() -> None:
        await asyncio.gather(*(uvicorn.Server(config).serve() for config in configs))

    asyncio.run(serve())


if __name__ == "__main__":
    run()
