from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ridgelab.api.routes import router
from ridgelab.db.session import create_db_and_tables
from ridgelab.errors import RidgeLabError, http_status_for
from ridgelab.settings import settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("ridgelab")


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings.storage_dir.mkdir(parents=True, exist_ok=True)
    create_db_and_tables()
    logger.info(
        "Texture service ready: storage=%s oracle=%s notifier=%s prompt=v%s",
        settings.storage_dir,
        "on" if settings.oracle_url else "off",
        "on" if settings.notify_url else "off",
        settings.prompt_version,
    )
    yield


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RidgeLabError)
async def ridgelab_error_handler(_: Request, exc: RidgeLabError) -> JSONResponse:
    status_code = http_status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log("%s: %s", exc.error_code, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


@app.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(router)
