"""Environment-based configuration for AnimeGenre."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ANIME_GENRES: tuple[str, ...] = (
    "Action",
    "Adventure",
    "Comedy",
    "Drama",
    "Fantasy",
    "Horror",
    "Mystery",
    "Romance",
    "Sci-Fi",
    "Slice of Life",
)


class Settings(BaseSettings):
    """Application settings loaded from ANIMEGENRE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ANIMEGENRE_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server (local adapter, loopback by default)
    host: str = "127.0.0.1"
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model artifact
    model_location: str = "models/model.onnx"
    models_dir: str = "models"
    strict_model_loading: bool = False

    # Classification
    labels: tuple[str, ...] = Field(default=ANIME_GENRES, min_length=1)
    image_size: int = Field(default=224, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Readiness polling
    ready_poll_interval: float = Field(default=0.1, ge=0)
    ready_poll_attempts: int = Field(default=50, ge=0)

    # Input limits
    fetch_timeout: float = Field(default=10.0, gt=0)
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
