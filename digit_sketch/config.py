"""
Fixed constants and paths for the digit sketch classifier.

The numbers here describe one frozen recipe: canvas preprocessing, network
shape and training schedule all depend on each other, so they live in one
place instead of being passed around as loose arguments.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

# Canonical grid the network consumes.
IMAGE_SIZE = 28
IMAGE_PIXELS = IMAGE_SIZE * IMAGE_SIZE
NUM_CLASSES = 10

# Drawing canvas preprocessing.
CANVAS_SIZE = 280
INK_THRESHOLD = 10
CROP_PADDING = 20

# Dataset layout of the MNIST sprite used by the web demo.
NUM_DATASET_ELEMENTS = 65000
NUM_TRAIN_ELEMENTS = 55000
NUM_TEST_ELEMENTS = NUM_DATASET_ELEMENTS - NUM_TRAIN_ELEMENTS

# Training recipe.
TRAIN_SUBSET_SIZE = 8000
TEST_SUBSET_SIZE = 1000
EPOCHS = 5
BATCH_SIZE = 128
LEARNING_RATE = 1e-3
DROPOUT_RATE = 0.3

# Bump together with any change to `digit_sketch.model.DigitNet`.
ARCHITECTURE_VERSION = 2
MODEL_STORAGE_KEY = f"mnist-demo-model-v{ARCHITECTURE_VERSION}"

DEFAULT_DATA_DIR = Path("data")
DEFAULT_CACHE_DIR = DEFAULT_DATA_DIR / "models"
CACHE_DIR_ENV = "DIGIT_SKETCH_CACHE_DIR"


def default_cache_dir() -> Path:
    """Model slot directory, overridable through `DIGIT_SKETCH_CACHE_DIR`."""
    override = os.environ.get(CACHE_DIR_ENV)
    if override:
        return Path(override)
    return DEFAULT_CACHE_DIR


@dataclass
class DigitSketchConfig:
    """Container for paths and the training schedule."""

    cache_dir: Path = field(default_factory=default_cache_dir)
    data_dir: Path = DEFAULT_DATA_DIR
    storage_key: str = MODEL_STORAGE_KEY
    train_subset_size: int = TRAIN_SUBSET_SIZE
    test_subset_size: int = TEST_SUBSET_SIZE
    epochs: int = EPOCHS
    batch_size: int = BATCH_SIZE
    learning_rate: float = LEARNING_RATE
    seed: Optional[int] = None
