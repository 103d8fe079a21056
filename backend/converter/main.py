"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from converter.api.routes import router
from converter.config import CORS_ORIGINS, logger as config_logger
from converter.conversion.engine import get_engine_manager
from converter.db import init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config_logger.info("Media converter API started")
    yield
    get_engine_manager().shutdown()
    config_logger.info("Media converter API shutting down")


app = FastAPI(
    title="Media Converter API",
    description="Batch image and video conversion with resize, filters and progress tracking.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Session-ID"],
)


async def session_header_middleware(request, call_next):
    """Set X-Session-ID on response when the session was created by the dependency."""
    response = await call_next(request)
    if hasattr(request.state, "session_id"):
        response.headers["X-Session-ID"] = request.state.session_id
    return response


app.middleware("http")(session_header_middleware)
app.include_router(router)


def run() -> None:
    import uvicorn
    from converter.config import HOST, PORT
    uvicorn.run("converter.main:app", host=HOST, port=PORT, reload=True)


if __name__ == "__main__":
    run()
