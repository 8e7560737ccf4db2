"""Inference invocation and concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

N defaults to 1, so overlapping predictions against the shared session run
one at a time. Requests beyond the semaphore limit queue with a timeout,
then get 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

import numpy as np

from animegenre.ml.errors import InferenceError

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from animegenre.config import Settings
    from animegenre.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_inference(manager: ModelManager, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
    """Run the loaded model on a preprocessed batch of one image.

    Args:
        manager: Model manager holding a ready session.
        tensor: 1xSxSx3 float32 input.

    Returns:
        1-D float32 array with one raw score per label.

    Raises:
        NotReadyError: If the manager is not ready.
        InferenceError: If the model fails to execute.
    """
    session = manager.session
    input_name = manager.input_name
    try:
        outputs = session.run(None, {input_name: tensor})
    except Exception as exc:
        raise InferenceError(f"Model execution failed: {exc}") from exc

    if not outputs:
        raise InferenceError("Model returned no outputs")
    # Copy out so the session's output buffers can be released.
    return np.array(outputs[0], dtype=np.float32).reshape(-1)


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Acquires the semaphore (with timeout), runs the function in the
        executor, then releases.

        Raises:
            TimeoutError: If the semaphore cannot be acquired within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        except TimeoutError:
            logger.warning("Inference queue wait exceeded %.1fs", self._timeout)
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
