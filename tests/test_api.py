"""Tests for the AnimeGenre HTTP API."""

from __future__ import annotations

import importlib
import io
import os
import warnings
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI, status
from PIL import Image

import animegenre.api.middleware
import animegenre.api.routes
from animegenre.config import ANIME_GENRES, get_settings
from animegenre.main import create_app, init_app_state
from animegenre.ml.errors import InferenceError
from animegenre.ml.inference import InferencePool
from animegenre.ml.model_manager import OnnxModelManager


def _init_app_state(app: FastAPI, models_dir: Path, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    env = {
        "ANIMEGENRE_MODEL_LOCATION": str(models_dir / "missing.onnx"),
        "ANIMEGENRE_MODELS_DIR": str(models_dir),
        "ANIMEGENRE_IMAGE_SIZE": "64",
        "ANIMEGENRE_READY_POLL_INTERVAL": "0",
        "ANIMEGENRE_READY_POLL_ATTEMPTS": "1",
    }
    env.update(env_overrides)
    with patch.dict(os.environ, env):
        settings = get_settings()
    init_app_state(app, settings)


async def _make_client(app: FastAPI, *, load_model: bool = True) -> AsyncIterator[httpx.AsyncClient]:
    manager: OnnxModelManager = app.state.model_manager
    if load_model:
        await manager.initialize()
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    manager.dispose()
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _png_file(width: int = 32, height: int = 24) -> io.BytesIO:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (10, 200, 90)).save(buf, format="PNG")
    buf.seek(0)
    return buf


@pytest.fixture()
def app(tmp_path: Path) -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application, tmp_path)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app, with the model loaded."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["state"] == "ready"
        assert data["model_source"] == "placeholder"
        assert data["backend"] == "CPUExecutionProvider"
        assert data["labels"] == len(ANIME_GENRES)
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_loading_before_initialize(self, app: FastAPI) -> None:
        async for ac in _make_client(app, load_model=False):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert data["status"] == "loading"
            assert data["state"] == "unloaded"
            assert data["model_source"] is None


class TestLabelsEndpoint:
    async def test_labels_in_output_order(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/labels")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["labels"] == list(ANIME_GENRES)

    async def test_custom_labels(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ANIMEGENRE_LABELS='["Cat", "Dog"]')
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/labels")
            assert response.json()["labels"] == ["Cat", "Dog"]

            response = await ac.post("/api/v1/predict", files={"file": ("a.png", _png_file(), "image/png")})
            assert response.status_code == status.HTTP_200_OK
            assert {p["label"] for p in response.json()["predictions"]} == {"Cat", "Dog"}


class TestPredictEndpoint:
    async def test_predict_returns_ranked_genres(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/predict",
            files={"file": ("poster.png", _png_file(), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        predictions = data["predictions"]
        assert len(predictions) == len(ANIME_GENRES)
        assert {p["label"] for p in predictions} == set(ANIME_GENRES)
        confidences = [p["confidence"] for p in predictions]
        assert confidences == sorted(confidences, reverse=True)
        assert all(0.0 <= c <= 1.0 for c in confidences)
        assert data["processing_time_ms"] >= 0.0

    async def test_non_image_upload_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/predict",
            files={"file": ("notes.txt", io.BytesIO(b"hello"), "text/plain")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_undecodable_image_returns_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/predict",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert "cannot decode" in response.json()["detail"].lower()

    async def test_oversized_upload_returns_413(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ANIMEGENRE_MAX_FILE_SIZE="16")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/predict",
                files={"file": ("poster.png", _png_file(), "image/png")},
            )
            assert response.status_code == status.HTTP_413_CONTENT_TOO_LARGE

    async def test_not_ready_returns_503(self, app: FastAPI) -> None:
        async for ac in _make_client(app, load_model=False):
            response = await ac.post(
                "/api/v1/predict",
                files={"file": ("poster.png", _png_file(), "image/png")},
            )
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            assert "not ready" in response.json()["detail"].lower()

    async def test_inference_error_returns_500(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        with patch.object(app.state.predictor, "predict_from_image", side_effect=InferenceError("boom")):
            response = await client.post(
                "/api/v1/predict",
                files={"file": ("poster.png", _png_file(), "image/png")},
            )
        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["detail"] == "boom"

    async def test_queue_timeout_returns_503(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        with patch.object(app.state.predictor, "predict_from_image", side_effect=TimeoutError()):
            response = await client.post(
                "/api/v1/predict",
                files={"file": ("poster.png", _png_file(), "image/png")},
            )
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_recovers_after_failed_request(self, client: httpx.AsyncClient) -> None:
        bad = await client.post(
            "/api/v1/predict",
            files={"file": ("test.jpg", io.BytesIO(b"garbage"), "image/jpeg")},
        )
        assert bad.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT

        good = await client.post(
            "/api/v1/predict",
            files={"file": ("poster.png", _png_file(), "image/png")},
        )
        assert good.status_code == status.HTTP_200_OK


class TestPredictUrlEndpoint:
    async def test_predict_url(self, client: httpx.AsyncClient) -> None:
        image = _png_file().getvalue()
        real_client = httpx.AsyncClient

        def client_factory(**kwargs: object) -> httpx.AsyncClient:
            transport = httpx.MockTransport(lambda request: httpx.Response(200, content=image))
            return real_client(transport=transport, **kwargs)  # type: ignore[arg-type]

        with patch("animegenre.ml.image_classifier.httpx.AsyncClient", side_effect=client_factory):
            response = await client.post("/api/v1/predict-url", json={"url": "https://example.com/poster.png"})

        assert response.status_code == status.HTTP_200_OK
        assert len(response.json()["predictions"]) == len(ANIME_GENRES)

    async def test_invalid_url_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/predict-url", json={"url": "not a url"})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ANIMEGENRE_API_KEY="test-secret-key")
        async for ac in _make_client(app, load_model=False):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_correct_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ANIMEGENRE_API_KEY="test-secret-key")
        async for ac in _make_client(app, load_model=False):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ANIMEGENRE_API_KEY="test-secret-key")
        async for ac in _make_client(app, load_model=False):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED


class TestStatusCodes:
    def test_api_modules_use_current_status_names(self) -> None:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            importlib.reload(animegenre.api.middleware)
            importlib.reload(animegenre.api.routes)

        deprecated = [str(w.message) for w in caught if "deprecated" in str(w.message).lower()]
        assert deprecated == []
