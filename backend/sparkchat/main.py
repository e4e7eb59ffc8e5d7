"""SparkChat application: mounts the API routers on one FastAPI app.

Run with ``uvicorn sparkchat.main:app``.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sparkchat.apis.ai import router as ai_router
from sparkchat.apis.chat import router as chat_router
from sparkchat.apis.messages import router as messages_router
from sparkchat.apis.projects import router as projects_router
from sparkchat.apis.sandbox import router as sandbox_router
from sparkchat.apis.users import router as users_router
from sparkchat.libs.config import CORS_ORIGINS, LOG_LEVEL
from sparkchat.libs.database import init_schema
from sparkchat.libs.sandbox import sandbox_manager

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("sparkchat")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Startup …")
    await init_schema()
    yield
    stopped = await sandbox_manager.stop_all()
    logger.info("Shutdown: stopped %d sandbox(es)", len(stopped))


def create_app(init_db: bool = True) -> FastAPI:
    app = FastAPI(title="SparkChat", lifespan=lifespan if init_db else None)

    # no configured origins means any origin (with credentials)
    if CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=CORS_ORIGINS, allow_credentials=True,
            allow_methods=["*"], allow_headers=["*"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origin_regex=".*", allow_credentials=True,
            allow_methods=["*"], allow_headers=["*"],
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - started) * 1000
        logger.info("%s %s %s %.1f ms", request.method, request.url.path, response.status_code, elapsed)
        return response

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    app.include_router(users_router)
    app.include_router(projects_router)
    app.include_router(messages_router)
    app.include_router(ai_router)
    app.include_router(sandbox_router)
    app.include_router(chat_router)

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "sparkchat"}

    return app


app = create_app()
