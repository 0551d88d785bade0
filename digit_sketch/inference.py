"""Digit prediction on canonical 28x28 tensors."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Sequence, Union

import numpy as np
import torch

from .config import IMAGE_PIXELS, IMAGE_SIZE, NUM_CLASSES
from .errors import InferenceFailed
from .lifecycle import ModelLifecycle
from .model import CompiledModel
from .scope import TensorScope

logger = logging.getLogger(__name__)

TensorLike = Union[np.ndarray, Sequence[float]]


@dataclass
class PredictionSummary:
    digit: int
    confidence: float
    percentages: List[float]


def summarize_scores(scores: Sequence[float]) -> PredictionSummary:
    """
    Turn a score vector into display-ready percentages and the top digit.

    Scores are rescaled to sum to 100 so rounding in the softmax never shows
    up as bars that do not add up. Ties go to the lower digit.
    """
    if len(scores) == 0:
        raise ValueError("Cannot summarize an empty score vector.")
    total = float(sum(scores)) or 1.0
    percentages = [100.0 * float(value) / total for value in scores]
    digit = 0
    for index, value in enumerate(percentages):
        if value > percentages[digit]:
            digit = index
    return PredictionSummary(digit=digit, confidence=percentages[digit] / 100.0, percentages=percentages)


def forward(model: CompiledModel, tensor: TensorLike) -> List[float]:
    """
    Run one canonical tensor through `model`.

    Raises:
        InferenceFailed: on a tensor that is not 784 numbers or a runtime error.
    """
    try:
        values = np.asarray(tensor, dtype=np.float32).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise InferenceFailed(f"Input is not a numeric tensor: {exc}") from exc
    if values.size != IMAGE_PIXELS:
        raise InferenceFailed(f"Expected {IMAGE_PIXELS} values, got {values.size}.")

    with torch.inference_mode(), TensorScope() as scope:
        try:
            inputs = scope.track(torch.tensor(values)).reshape(1, 1, IMAGE_SIZE, IMAGE_SIZE)
            scores = scope.track(model.predict(inputs))
            result = [float(value) for value in scores.reshape(-1).tolist()]
        except RuntimeError as exc:
            raise InferenceFailed(f"Forward pass failed: {exc}") from exc

    if len(result) != NUM_CLASSES:
        raise InferenceFailed(f"Model returned {len(result)} scores instead of {NUM_CLASSES}.")
    return result


class InferenceService:
    """Predicts with whatever model the lifecycle currently holds."""

    def __init__(self, lifecycle: ModelLifecycle) -> None:
        self.lifecycle = lifecycle

    async def predict(self, tensor: TensorLike) -> List[float]:
        """
        Score a canonical tensor, resolving the model first if needed.

        A failed forward pass raises `InferenceFailed` and leaves the cached
        model untouched; a failed resolution propagates as raised.
        """
        model = await self.lifecycle.load_model()
        return await asyncio.to_thread(forward, model, tensor)

    async def classify(self, tensor: TensorLike) -> PredictionSummary:
        return summarize_scores(await self.predict(tensor))
