"""
Travel Connect application entry point.

`create_app()` builds the FastAPI app around an explicit AppContext: the
store, identity provider, media store and trip service are constructed once
from Settings during startup and reached from handlers via
`request.app.state.ctx`.

Run with: uvicorn travel_connect.main:app
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from travel_connect import APP_VERSION
from travel_connect.auth import IdentityProvider
from travel_connect.config import Settings
from travel_connect.db import TripStore
from travel_connect.errors import TripError
from travel_connect.media import LocalMediaStore
from travel_connect.routes_trips import router as trips_router
from travel_connect.trips import TripService

logger = logging.getLogger("travel_connect")

APP_TITLE = "Travel Connect"


# ─────────────────────────── LOGGING SETUP ───────────────────────────

log_format = logging.Formatter(
    '%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)


def configure_logging(settings: Settings):
    """Attach console (and optional rotating file) handlers to the root logger once per process."""
    level = getattr(logging, settings.log_level, logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    logger.setLevel(level)

    if any(getattr(h, "_travel_connect", False) for h in root_logger.handlers):
        return

    # Console handler - attached to root to capture uvicorn and fastapi too
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_format)
    console_handler.setLevel(level)
    console_handler._travel_connect = True
    root_logger.addHandler(console_handler)

    if settings.log_file:
        try:
            directory = os.path.dirname(settings.log_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = RotatingFileHandler(
                settings.log_file, maxBytes=10*1024*1024, backupCount=5  # 10MB per file, keep 5 backups
            )
            file_handler.setFormatter(log_format)
            file_handler.setLevel(level)
            file_handler._travel_connect = True
            root_logger.addHandler(file_handler)
            logger.info(f"File logging enabled: {settings.log_file}")
        except OSError as e:
            logger.warning(f"Could not enable file logging: {e}")

    logger.info(f"Logging initialized at level {settings.log_level}")


# ─────────────────────────── CONTEXT ───────────────────────────

@dataclass
class AppContext:
    settings: Settings
    store: TripStore
    identity: IdentityProvider
    media: LocalMediaStore
    trips: TripService

    @classmethod
    def build(cls, settings: Settings) -> "AppContext":
        store = TripStore(settings.db_path)
        identity = IdentityProvider(store)
        media = LocalMediaStore(settings)
        return cls(
            settings=settings,
            store=store,
            identity=identity,
            media=media,
            trips=TripService(store, media, identity, settings),
        )

    def startup(self):
        self.store.init_schema()
        os.makedirs(self.media.root, exist_ok=True)

    def shutdown(self):
        self.store.close()


# ─────────────────────────── ERROR HANDLING ───────────────────────────

class ExceptionLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except Exception as e:
            logger.error(
                f"Unhandled exception on {request.method} {request.url.path}: {e}",
                exc_info=True
            )
            raise


async def trip_error_handler(request: Request, exc: TripError):
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.detail}")
    else:
        logger.info(f"{exc.kind} on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP {exc.status_code} on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(
        {"ok": False, "error": f"http_{exc.status_code}", "detail": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


# ─────────────────────────── APP FACTORY ───────────────────────────

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)
    ctx = AppContext.build(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx.startup()
        logger.info(f"{APP_TITLE} {APP_VERSION} started")
        yield
        ctx.shutdown()

    app = FastAPI(title=APP_TITLE, version=APP_VERSION, lifespan=lifespan)
    app.state.ctx = ctx

    app.add_middleware(ExceptionLoggingMiddleware)
    app.add_exception_handler(TripError, trip_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    app.mount(settings.media_url_prefix, StaticFiles(directory=settings.media_dir, check_dir=False), name="media")
    app.include_router(trips_router)

    @app.get("/health")
    async def health():
        return {"ok": True, "version": APP_VERSION, "database": ctx.store.initialized}

    return app


app = create_app()
