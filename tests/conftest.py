from __future__ import annotations

import threading
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pytest
import torch
from PIL import Image, ImageDraw

from digit_sketch.config import CANVAS_SIZE, IMAGE_PIXELS, NUM_CLASSES, DigitSketchConfig
from digit_sketch.dataset import MnistData
from digit_sketch.errors import PersistedLoadFailed
from digit_sketch.model import CompiledModel, build_network

CPU = torch.device("cpu")


def draw_strokes(
    strokes: Iterable[Sequence[Tuple[int, int]]],
    size: int = CANVAS_SIZE,
    width: int = 20,
) -> np.ndarray:
    """Paint round-capped white polylines on a black RGBA canvas."""
    image = Image.new("RGBA", (size, size), (0, 0, 0, 255))
    draw = ImageDraw.Draw(image)
    radius = width // 2
    for points in strokes:
        points = list(points)
        draw.line(points, fill=(255, 255, 255, 255), width=width, joint="curve")
        for x, y in (points[0], points[-1]):
            draw.ellipse((x - radius, y - radius, x + radius, y + radius), fill=(255, 255, 255, 255))
    return np.asarray(image).copy()


def blank_canvas(size: int = CANVAS_SIZE) -> np.ndarray:
    raster = np.zeros((size, size, 4), dtype=np.uint8)
    raster[:, :, 3] = 255
    return raster


def synthetic_mnist(num_train: int = 64, num_test: int = 16, seed: int = 0) -> MnistData:
    rng = np.random.default_rng(seed)

    def split(count: int) -> Tuple[np.ndarray, np.ndarray]:
        images = rng.random(count * IMAGE_PIXELS, dtype=np.float32)
        classes = rng.integers(0, NUM_CLASSES, size=count)
        labels = np.zeros((count, NUM_CLASSES), dtype=np.uint8)
        labels[np.arange(count), classes] = 1
        return images, labels.reshape(-1)

    train_images, train_labels = split(num_train)
    test_images, test_labels = split(num_test)
    return MnistData(train_images, train_labels, test_images, test_labels)


class StaticLoader:
    def __init__(self, data: MnistData) -> None:
        self.data = data
        self.calls = 0

    def load(self) -> MnistData:
        self.calls += 1
        return self.data


class FailingLoader:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    def load(self) -> MnistData:
        self.calls += 1
        raise self.error


class FakeStore:
    """Counts load attempts; empty unless `model` is set."""

    def __init__(self, model: Optional[CompiledModel] = None) -> None:
        self.model = model
        self.loads = 0

    def load(self) -> CompiledModel:
        self.loads += 1
        if self.model is None:
            raise PersistedLoadFailed("empty slot")
        return self.model


class FakeTrainer:
    """
    Counts training runs and hands out a fresh CPU model each time.

    `errors` are raised by the first runs, in order. When `gate` is given,
    each run blocks until the gate is set; `entered` is set as soon as a
    run starts.
    """

    def __init__(self, errors: Optional[List[Exception]] = None, gate: Optional[threading.Event] = None) -> None:
        self.errors = list(errors or [])
        self.gate = gate
        self.entered = threading.Event()
        self.calls = 0

    def train(self) -> CompiledModel:
        self.calls += 1
        self.entered.set()
        if self.gate is not None and not self.gate.wait(timeout=10):
            raise TimeoutError("training gate never opened")
        if self.errors:
            raise self.errors.pop(0)
        return build_network(device=CPU)


@pytest.fixture
def cpu_model() -> CompiledModel:
    torch.manual_seed(0)
    return build_network(device=CPU)


@pytest.fixture
def small_config(tmp_path: Path) -> DigitSketchConfig:
    return DigitSketchConfig(
        cache_dir=tmp_path / "models",
        data_dir=tmp_path / "data",
        train_subset_size=32,
        test_subset_size=8,
        epochs=1,
        batch_size=16,
        seed=0,
    )
