"""Exceptions raised by the prediction pipeline."""

from __future__ import annotations


class PredictorError(Exception):
    """Base class for prediction pipeline failures."""


class LoadError(PredictorError):
    """The model artifact could not be fetched or parsed."""


class BackendSelectionError(PredictorError):
    """An execution provider candidate is not available on this host."""


class DecodeError(PredictorError, ValueError):
    """Input image bytes or URL could not be decoded."""


class NotReadyError(PredictorError, RuntimeError):
    """Inference was requested before the model became ready."""


class InferenceError(PredictorError):
    """Model execution failed."""
