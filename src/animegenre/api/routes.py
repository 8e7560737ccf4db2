"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from animegenre.api.middleware import verify_api_key
from animegenre.api.schemas import (
    ErrorResponse,
    GenrePrediction,
    HealthResponse,
    LabelsResponse,
    PredictionResponse,
    PredictUrlRequest,
)

if TYPE_CHECKING:
    from animegenre.config import Settings
    from animegenre.ml.image_classifier import GenrePredictor, PredictionResult
    from animegenre.ml.inference import InferencePool
    from animegenre.ml.model_manager import OnnxModelManager

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_PREDICT_ERRORS: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def _get_predictor(request: Request) -> GenrePredictor:
    predictor: GenrePredictor = request.app.state.predictor
    return predictor


def _to_response(result: PredictionResult) -> PredictionResponse:
    return PredictionResponse(
        predictions=[GenrePrediction(label=p.label, confidence=p.confidence) for p in result.predictions],
        processing_time_ms=result.processing_time_ms,
    )


@router.post(
    "/predict",
    response_model=PredictionResponse,
    responses=_PREDICT_ERRORS,
    summary="Predict genres for an uploaded image",
)
async def predict(request: Request, file: UploadFile) -> PredictionResponse:
    """Classify an uploaded image and return every genre ranked by confidence."""
    settings = _get_settings(request)
    if file.content_type is None or not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Upload a valid image file (JPG, PNG, ...)",
        )

    contents = await file.read(settings.max_file_size + 1)
    if len(contents) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    result = await _get_predictor(request).predict_from_image(contents)
    return _to_response(result)


@router.post(
    "/predict-url",
    response_model=PredictionResponse,
    responses=_PREDICT_ERRORS,
    summary="Predict genres for an image URL",
)
async def predict_url(request: Request, body: PredictUrlRequest) -> PredictionResponse:
    """Fetch an image by URL, classify it, and return every genre ranked by confidence."""
    result = await _get_predictor(request).predict_from_image_location(str(body.url))
    return _to_response(result)


@router.get(
    "/labels",
    response_model=LabelsResponse,
    summary="List predictable genres",
)
async def list_labels(request: Request) -> LabelsResponse:
    """Return the genres in model output order."""
    return LabelsResponse(labels=list(_get_predictor(request).labels))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return model readiness and inference queue status."""
    manager = _get_model_manager(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok" if manager.is_ready() else "loading",
        state=manager.state.value,
        model_source=manager.source.value if manager.source is not None else None,
        backend=manager.backend,
        labels=len(_get_settings(request).labels),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
