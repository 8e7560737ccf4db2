"""Genre classification: result formatting and the end-to-end predict operations."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from animegenre.ml.errors import DecodeError, NotReadyError
from animegenre.ml.inference import run_inference
from animegenre.ml.preprocessing import decode_image, preprocess

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray

    from animegenre.config import Settings
    from animegenre.ml.inference import InferencePool
    from animegenre.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    """A single genre prediction."""

    label: str
    confidence: float


@dataclass(frozen=True)
class PredictionResult:
    """Ranked predictions for one image and how long they took."""

    predictions: tuple[Prediction, ...]
    processing_time_ms: float


def _clamp(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


def format_predictions(raw: Sequence[float] | NDArray[np.float32], labels: Sequence[str]) -> tuple[Prediction, ...]:
    """Map raw model scores onto labels, ranked by confidence.

    One prediction is returned per label. Scores are clamped into [0, 1] and
    a missing score counts as 0. Ties keep label order.
    """
    predictions = [
        Prediction(label=label, confidence=_clamp(float(raw[index])) if index < len(raw) else 0.0)
        for index, label in enumerate(labels)
    ]
    return tuple(sorted(predictions, key=lambda p: p.confidence, reverse=True))


class GenrePredictor:
    """Runs decode -> preprocess -> inference -> formatting for one image."""

    def __init__(self, manager: ModelManager, pool: InferencePool, settings: Settings) -> None:
        self._manager = manager
        self._pool = pool
        self._settings = settings
        self._labels = tuple(settings.labels)

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    async def wait_until_ready(self) -> None:
        """Poll the model manager until it is ready.

        Raises:
            NotReadyError: If the model is still not ready after the
                configured number of attempts.
        """
        attempts = 0
        while not self._manager.is_ready() and attempts < self._settings.ready_poll_attempts:
            await asyncio.sleep(self._settings.ready_poll_interval)
            attempts += 1

        if not self._manager.is_ready():
            raise NotReadyError("Model is not ready for predictions")

    async def predict_from_image(self, image_bytes: bytes) -> PredictionResult:
        """Classify raw image bytes.

        Raises:
            NotReadyError: If the model does not become ready in time.
            DecodeError: If the bytes are not a readable image.
            InferenceError: If model execution fails.
            TimeoutError: If the inference queue is saturated.
        """
        start = time.perf_counter()
        await self.wait_until_ready()
        image = decode_image(image_bytes, max_pixels=self._settings.max_image_pixels)
        return await self._classify(image, start)

    async def predict_from_image_location(self, url: str) -> PredictionResult:
        """Fetch an image by URL and classify it."""
        start = time.perf_counter()
        await self.wait_until_ready()
        image_bytes = await self._fetch_image(url)
        image = decode_image(image_bytes, max_pixels=self._settings.max_image_pixels)
        return await self._classify(image, start)

    async def _classify(self, image: NDArray[np.uint8], start: float) -> PredictionResult:
        raw = await self._pool.run(self._infer, image)
        predictions = format_predictions(raw, self._labels)
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        top = predictions[0]
        logger.info("Prediction: %s (%.2f%%) in %.1f ms", top.label, top.confidence * 100, elapsed_ms)
        return PredictionResult(predictions=predictions, processing_time_ms=elapsed_ms)

    def _infer(self, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        tensor = preprocess(image, self._settings.image_size)
        return run_inference(self._manager, tensor)

    async def _fetch_image(self, url: str) -> bytes:
        limit = self._settings.max_file_size
        too_large = DecodeError(f"Image at {url} exceeds {limit} bytes")
        chunks: list[bytes] = []
        received = 0
        try:
            async with (
                httpx.AsyncClient(timeout=self._settings.fetch_timeout, follow_redirects=True) as client,
                client.stream("GET", url) as response,
            ):
                response.raise_for_status()
                declared = response.headers.get("content-length")
                if declared is not None and declared.isdigit() and int(declared) > limit:
                    raise too_large
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > limit:
                        raise too_large
                    chunks.append(chunk)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise DecodeError(f"Cannot read image from URL {url}: {exc}") from exc
        return b"".join(chunks)
