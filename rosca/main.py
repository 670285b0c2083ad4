import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rosca.config import LOG_LEVEL
from rosca.database import init_db
from rosca.routers import engine


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    yield


app = FastAPI(title="ROSCA Cycle & Payout Engine", lifespan=lifespan)

app.include_router(engine.router)
