import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from shopbot.core.config import ENV
from shopbot.core.database import Base, engine
from shopbot.core.logging_setup import configure_logging
from shopbot.middleware.observability import ObservabilityMiddleware
import shopbot.models  # registers the tables before create_all

from shopbot.routers.webhook import router as webhook_router

configure_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    logger.info("shopbot started env=%s", ENV)
    yield


app = FastAPI(
    title="Shopbot Messenger API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(ObservabilityMiddleware)

app.include_router(webhook_router)


@app.get("/health")
def health():
    return {"status": "ok"}
