"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from animegenre.api.middleware import register_error_handlers
from animegenre.api.routes import router
from animegenre.config import Settings, get_settings
from animegenre.ml.image_classifier import GenrePredictor
from animegenre.ml.inference import InferencePool
from animegenre.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings) -> None:
    """Build the service objects and attach them to the app."""
    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    app.state.settings = settings
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.predictor = GenrePredictor(model_manager, inference_pool, settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, release it on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting AnimeGenre (device=%s, max_concurrent=%s, model=%s, labels=%d)",
        settings.device,
        settings.max_concurrent,
        settings.model_location,
        len(settings.labels),
    )

    init_app_state(app, settings)
    model_manager: OnnxModelManager = app.state.model_manager
    await model_manager.initialize()

    logger.info("AnimeGenre ready")
    yield

    logger.info("Shutting down AnimeGenre")
    model_manager.dispose()
    app.state.inference_pool.shutdown()
    logger.info("AnimeGenre shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="AnimeGenre",
        description="Local anime genre classifier for uploaded images",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    register_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run("animegenre.main:app", host=settings.host, port=settings.port)
