"""Hand-drawn digit classification: canvas preprocessing and a cached CNN."""

from .errors import (
    DatasetUnavailable,
    DigitSketchError,
    EmptyInput,
    InferenceFailed,
    PersistedLoadFailed,
    TrainingFailed,
)
from .inference import InferenceService, PredictionSummary, summarize_scores
from .lifecycle import LifecycleState, LifecycleStatus, ModelLifecycle
from .model import CompiledModel, LayerDescriptor, build_network
from .preprocessing import raster_to_tensor
from .store import ModelStore

__all__ = [
    "CompiledModel",
    "DatasetUnavailable",
    "DigitSketchError",
    "EmptyInput",
    "InferenceFailed",
    "InferenceService",
    "LayerDescriptor",
    "LifecycleState",
    "LifecycleStatus",
    "ModelLifecycle",
    "ModelStore",
    "PersistedLoadFailed",
    "PredictionSummary",
    "TrainingFailed",
    "build_network",
    "raster_to_tensor",
    "summarize_scores",
]
