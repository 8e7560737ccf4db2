"""Pydantic request/response schemas for the AnimeGenre API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


class GenrePrediction(BaseModel):
    """A single genre with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class PredictionResponse(BaseModel):
    """Ranked genre predictions for one image."""

    predictions: list[GenrePrediction] = Field(description="One entry per genre, highest confidence first")
    processing_time_ms: float = Field(ge=0.0)


class PredictUrlRequest(BaseModel):
    """Request body for classifying an image by URL."""

    url: HttpUrl


class LabelsResponse(BaseModel):
    """The genres the model can predict, in output order."""

    labels: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = Field(description="'ok' when the model is ready, 'loading' otherwise")
    state: str = Field(description="Model state: 'unloaded', 'loading', 'ready', or 'disposed'")
    model_source: str | None = Field(description="'artifact', 'placeholder', or null before loading")
    backend: str
    labels: int
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
