"""Exception hierarchy shared by preprocessing, training and inference."""

from __future__ import annotations


class DigitSketchError(Exception):
    """Base class for every error raised by this package."""


class EmptyInput(DigitSketchError):
    """The raster holds no ink; the normalization pipeline turns this into zeros."""


class TrainingFailed(DigitSketchError):
    """Fitting or saving a freshly trained model failed."""


class DatasetUnavailable(TrainingFailed):
    """Training images or labels could not be retrieved."""


class PersistedLoadFailed(DigitSketchError):
    """The stored model slot is missing, corrupt or built for another architecture."""


class InferenceFailed(DigitSketchError):
    """A forward pass could not be run on the given tensor."""
