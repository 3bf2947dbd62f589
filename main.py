import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from async_message_service.api import create_app
from async_message_service.config_loader import core_kwargs, load_settings
from async_message_service.core import AsyncMessageCore


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True  # Force reconfiguration to avoid duplicate handlers
    )


def build_app(settings: dict[str, object]) -> FastAPI:
    service = AsyncMessageCore(**core_kwargs(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    return create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(str(settings["log_level"]))
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
