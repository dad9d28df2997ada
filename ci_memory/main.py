"""FastAPI main application with log ingestion and analysis workers"""
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ci_memory.core.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

logging.getLogger('kombu').setLevel(logging.WARNING)
logging.getLogger('amqp').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)

from ci_memory.api.routes import router
from ci_memory.core.engine import Engine
from ci_memory.core.exceptions import (
    DispatchRejectedError, EventRejectedError, MalformedEventError, StorageError,
)


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    """Build the application; an engine is created from settings at startup unless given"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting CI Memory Analyzer...")
        app.state.engine = engine or Engine(settings)
        app.state.engine.start()

        logger.info("=" * 80)
        logger.info("Application ready")
        logger.info("=" * 80)

        yield

        logger.info("Shutting down...")
        try:
            app.state.engine.stop()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
        logger.info("Application stopped")

    app = FastAPI(
        title="CI Memory Analyzer",
        description="Per-job conversational memory and AI anomaly detection for CI builds",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(MalformedEventError)
    async def malformed_event_handler(request, exc):
        logger.warning(f"Malformed event: {exc}")
        return JSONResponse(status_code=422, content={"detail": "Malformed event", "error": str(exc)})

    @app.exception_handler(EventRejectedError)
    async def rejected_event_handler(request, exc):
        logger.info(f"Event rejected: {exc}")
        return JSONResponse(status_code=422, content={"detail": "Event rejected", "error": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_error_handler(request, exc):
        logger.error(f"Storage error: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable", "error": str(exc)})

    @app.exception_handler(DispatchRejectedError)
    async def dispatch_rejected_handler(request, exc):
        logger.warning(f"Dispatch rejected: {exc}")
        return JSONResponse(status_code=429, content={"detail": "Analysis pool saturated", "error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request, exc):
        logger.error(f"Validation error: {exc}")
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": exc.errors()}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "error": str(exc)}
        )

    @app.get("/health")
    async def health_check():
        current = getattr(app.state, "engine", None)
        return {
            "status": "healthy" if current is not None else "starting",
            "service": "ci-memory",
            "version": "1.0.0",
            **(current.status() if current is not None else {}),
        }

    @app.get("/")
    async def root():
        return {
            "message": "CI Memory Analyzer API",
            "version": "1.0.0",
            "status": "running",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 80)
    logger.info("Starting CI Memory Analyzer")
    logger.info("=" * 80)

    config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=8000,
        log_level=settings.log_level.lower(),
        access_log=True,
        timeout_keep_alive=30,
        timeout_graceful_shutdown=30,
    )
    server = uvicorn.Server(config)

    try:
        server.run()
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        sys.exit(0)
    except Exception as e:
        logger.exception(f"Server error: {e}")
        sys.exit(1)
