"""
HTTP entry point: ``uvicorn questforge.main:app``
"""

import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from questforge.api.sessions import router as sessions_router
from questforge.config import Settings, settings
from questforge.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

VERSION = "0.1.0"


async def _timed_request(request: Request, call_next):
    request_id = uuid.uuid4().hex[:8]
    request.state.request_id = request_id
    context = {"component": "API", "request_id": request_id}
    route = f"{request.method} {request.url.path}"
    started = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        logger.exception(
            f"[API] {route} raised after {(time.perf_counter() - started) * 1000:.0f}ms",
            extra=context,
        )
        raise

    logger.info(
        f"[API] {route} {response.status_code} {(time.perf_counter() - started) * 1000:.0f}ms",
        extra=context,
    )
    response.headers["X-Request-ID"] = request_id
    return response


def create_app(config: Settings = settings) -> FastAPI:
    """Build the application with logging, CORS and the session routes"""
    setup_logging(level=config.log_level, log_file=config.log_file)

    application = FastAPI(
        title="questforge",
        description="Generates playable role-playing sessions with an LLM",
        version=VERSION,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.middleware("http")(_timed_request)
    application.include_router(sessions_router, prefix="/sessions", tags=["sessions"])

    @application.get("/")
    async def root():
        return {"service": "questforge", "version": VERSION, "status": "running"}

    @application.get("/health")
    async def health():
        return {"status": "healthy", "provider": config.model_provider, "model": config.model_name}

    logger.info(
        f"questforge {VERSION} ready (provider={config.model_provider}, model={config.model_name})"
    )
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "questforge.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
