"""Model manager: fetch, load, and dispose the genre classification model.

Owns the single ONNX InferenceSession used for prediction and its lifecycle
state machine (unloaded -> loading -> ready -> disposed). Artifacts can come
from a local path, an HTTP(S) URL, or a HuggingFace Hub repository. When the
artifact cannot be loaded, a placeholder classifier is built instead unless
strict loading is enabled.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import threading
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlparse

import httpx
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions, get_available_providers
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from animegenre.ml.errors import BackendSelectionError, LoadError, NotReadyError
from animegenre.ml.placeholder import build_placeholder_model

if TYPE_CHECKING:
    from animegenre.config import Settings

logger = logging.getLogger(__name__)

HF_SCHEME = "hf://"
CPU_PROVIDER = "CPUExecutionProvider"

Provider = str | tuple[str, dict[str, object]]


class ModelState(StrEnum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    DISPOSED = "disposed"


class ModelSource(StrEnum):
    ARTIFACT = "artifact"
    PLACEHOLDER = "placeholder"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    async def initialize(self, source_location: str | None = None) -> None:
        """Load the model once; later calls are no-ops while loading or ready."""
        ...

    def is_ready(self) -> bool:
        """Return True only when the model can be used for inference."""
        ...

    def is_loading(self) -> bool:
        """Return True while a load is in progress."""
        ...

    @property
    def session(self) -> InferenceSession:
        """Return the loaded session or raise NotReadyError."""
        ...

    @property
    def input_name(self) -> str:
        """Return the name of the model's first input."""
        ...

    def dispose(self) -> None:
        """Release the session."""
        ...


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Loads, holds, and releases the ONNX classification session."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._state = ModelState.UNLOADED
        self._session: InferenceSession | None = None
        self._source: ModelSource | None = None

        self._providers = self._select_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    async def initialize(self, source_location: str | None = None) -> None:
        """Load the model from ``source_location`` (default: configured location).

        Returns immediately when the model is already ready or being loaded.

        Raises:
            LoadError: If neither the artifact nor the placeholder could be
                loaded, or the artifact failed in strict mode.
        """
        with self._lock:
            if self._state in (ModelState.READY, ModelState.LOADING):
                return
            self._state = ModelState.LOADING

        location = source_location or self._settings.model_location
        try:
            session, source = await asyncio.to_thread(self._load, location)
        except BaseException:
            with self._lock:
                if self._state is ModelState.LOADING:
                    self._state = ModelState.UNLOADED
            raise

        with self._lock:
            if self._state is not ModelState.LOADING:
                # Disposed while the load was in flight.
                logger.info("Discarding model loaded after dispose")
                return
            self._session = session
            self._source = source
            self._state = ModelState.READY
        logger.info("Model ready (source=%s, backend=%s)", source, self.backend)

    def is_ready(self) -> bool:
        return self._state is ModelState.READY

    def is_loading(self) -> bool:
        return self._state is ModelState.LOADING

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def source(self) -> ModelSource | None:
        """Which kind of model is loaded, or None before the first load."""
        return self._source

    @property
    def backend(self) -> str:
        """Name of the preferred execution provider."""
        first = self._providers[0]
        return first if isinstance(first, str) else first[0]

    @property
    def session(self) -> InferenceSession:
        with self._lock:
            if self._state is not ModelState.READY or self._session is None:
                raise NotReadyError(f"Model is not ready (state={self._state})")
            return self._session

    @property
    def input_name(self) -> str:
        return self.session.get_inputs()[0].name

    def dispose(self) -> None:
        """Drop the session; a later initialize() loads it again."""
        with self._lock:
            if self._state is ModelState.DISPOSED:
                return
            self._session = None
            self._source = None
            self._state = ModelState.DISPOSED
        logger.info("Model disposed")

    def resolve_location(self, location: str) -> Path:
        """Return a local file path for ``location``, downloading it if remote."""
        if location.startswith(HF_SCHEME):
            return self._download_from_hub(location)
        try:
            scheme = urlparse(location).scheme
        except ValueError as exc:
            raise LoadError(f"Malformed model location {location!r}: {exc}") from exc
        if scheme in ("http", "https"):
            return self._download_from_url(location)

        path = Path(location)
        try:
            found = path.is_file()
        except (OSError, ValueError) as exc:
            raise LoadError(f"Invalid model path {location!r}: {exc}") from exc
        if not found:
            raise LoadError(f"Model file not found: {path}")
        return path

    # -- Internal -----------------------------------------------------------

    def _load(self, location: str) -> tuple[InferenceSession, ModelSource]:
        try:
            path = self.resolve_location(location)
            session = self._create_session(str(path))
        except LoadError as exc:
            if self._settings.strict_model_loading:
                logger.error("Failed to load model from %s: %s", location, exc)
                raise
            logger.warning("Failed to load model from %s, using placeholder model: %s", location, exc)
            return self._load_placeholder(), ModelSource.PLACEHOLDER

        logger.info("Loaded model from %s", path)
        return session, ModelSource.ARTIFACT

    def _load_placeholder(self) -> InferenceSession:
        try:
            model_bytes = build_placeholder_model(
                image_size=self._settings.image_size,
                num_labels=len(self._settings.labels),
            )
        except Exception as exc:
            raise LoadError("Failed to build placeholder model") from exc
        session = self._create_session(model_bytes)
        logger.info("Placeholder model created")
        return session

    def _create_session(self, model: str | bytes) -> InferenceSession:
        try:
            return InferenceSession(
                model,
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise LoadError(f"Cannot create inference session: {exc}") from exc

    def _download_from_hub(self, location: str) -> Path:
        parts = location[len(HF_SCHEME) :].split("/", 2)
        if len(parts) != 3 or not all(parts):
            raise LoadError(f"Expected hf://<owner>/<repo>/<filename>, got {location!r}")
        repo_id = f"{parts[0]}/{parts[1]}"
        try:
            downloaded = hf_hub_download(
                repo_id=repo_id,
                filename=parts[2],
                local_dir=str(self._models_dir),
            )
        except Exception as exc:
            raise LoadError(f"Cannot download {parts[2]} from {repo_id}: {exc}") from exc
        logger.info("Downloaded %s to %s", location, downloaded)
        return Path(downloaded)

    def _download_from_url(self, url: str) -> Path:
        filename = Path(urlparse(url).path).name or "model.onnx"
        target = self._models_dir / filename
        partial: Path | None = None
        try:
            self._models_dir.mkdir(parents=True, exist_ok=True)
            with httpx.Client(timeout=self._settings.fetch_timeout, follow_redirects=True) as client:
                with client.stream("GET", url) as response:
                    response.raise_for_status()
                    # Written to a sibling temp file, renamed into place once complete.
                    with tempfile.NamedTemporaryFile(
                        dir=self._models_dir, prefix=f".{filename}.", suffix=".part", delete=False
                    ) as out:
                        partial = Path(out.name)
                        for chunk in response.iter_bytes():
                            out.write(chunk)
            os.replace(partial, target)
            partial = None
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as exc:
            raise LoadError(f"Cannot fetch model from {url}: {exc}") from exc
        finally:
            if partial is not None:
                partial.unlink(missing_ok=True)
        logger.info("Downloaded %s to %s", url, target)
        return target

    def _provider_candidates(self) -> list[Provider]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                CPU_PROVIDER,
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                CPU_PROVIDER,
            ]
        return [CPU_PROVIDER]

    @staticmethod
    def _check_provider(name: str, available: set[str]) -> None:
        if name not in available:
            raise BackendSelectionError(f"{name} is not available")

    def _select_providers(self) -> list[Provider]:
        available = set(get_available_providers())
        selected: list[Provider] = []
        for candidate in self._provider_candidates():
            name = candidate if isinstance(candidate, str) else candidate[0]
            try:
                self._check_provider(name, available)
            except BackendSelectionError as exc:
                logger.warning("Skipping execution provider: %s", exc)
                continue
            selected.append(candidate)

        if CPU_PROVIDER not in selected:
            selected.append(CPU_PROVIDER)
        logger.info("Execution providers: %s", [p if isinstance(p, str) else p[0] for p in selected])
        return selected

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self.backend == "OpenVINOExecutionProvider":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
