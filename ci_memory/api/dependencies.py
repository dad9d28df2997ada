"""FastAPI dependency functions"""
import logging

from fastapi import HTTPException, Request

from ci_memory.core.engine import Engine


logger = logging.getLogger(__name__)


def get_engine(request: Request) -> Engine:
    """Engine created by the application lifespan"""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        logger.error("Request received before the engine was started")
        raise HTTPException(status_code=503, detail="Service is starting")
    return engine
