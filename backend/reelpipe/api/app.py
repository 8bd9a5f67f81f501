"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from reelpipe import __version__
from reelpipe.api.routes import router
from reelpipe.config import settings
from reelpipe.db import init_database, shutdown
from reelpipe.errors import (
    ConfigurationError,
    PipelineNotFound,
    PreconditionError,
    SignatureError,
)
from reelpipe.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the application.

    With no runtime given, the lifespan builds one from settings, creates the
    schema and owns the database engine. A runtime passed in (tests) is
    started and stopped but its database is left to the caller.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting reelpipe API...")
        owns_database = runtime is None
        if owns_database:
            await init_database()
        app.state.runtime = runtime or build_runtime(settings)
        await app.state.runtime.start()
        logger.info("API startup complete")

        yield

        # Shutdown
        logger.info("Shutting down reelpipe API...")
        await app.state.runtime.stop()
        if owns_database:
            await shutdown()
        logger.info("API shutdown complete")

    app = FastAPI(
        title="reelpipe API",
        version=__version__,
        lifespan=lifespan,
    )
    if runtime is not None:
        # Available even when the ASGI lifespan is not run
        app.state.runtime = runtime

    # CORS for Vite dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(PipelineNotFound)
    async def not_found_handler(request: Request, exc: PipelineNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PreconditionError)
    async def precondition_handler(request: Request, exc: PreconditionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(SignatureError)
    async def signature_handler(request: Request, exc: SignatureError):
        logger.warning(f"Rejected request to {request.url.path}: {exc}")
        return JSONResponse(status_code=401, content={"detail": "Invalid signature"})

    @app.exception_handler(ValidationError)
    async def config_validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={"detail": exc.errors(include_url=False, include_context=False)},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler to prevent stack traces in API responses."""
        logger.error(
            f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}",
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc),
            }
        )

    return app


app = create_app()
