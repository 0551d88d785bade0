"""
MNIST sources that feed the trainer.

Every loader returns the same flat layout: image buffers hold
`N * 28 * 28` float32 intensities in `[0, 1]` (row-major, one image after
another) and label buffers hold `N * 10` one-hot uint8 values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Tuple

import numpy as np
import torch
import torch.nn.functional as F
from PIL import Image
from torchvision import datasets
from torchvision.datasets.utils import download_url

from .config import DEFAULT_DATA_DIR, IMAGE_PIXELS, NUM_CLASSES, NUM_DATASET_ELEMENTS, NUM_TRAIN_ELEMENTS
from .errors import DatasetUnavailable

logger = logging.getLogger(__name__)

MNIST_IMAGES_SPRITE_URL = "https://storage.googleapis.com/learnjs-data/model-builder/mnist_images.png"
MNIST_LABELS_URL = "https://storage.googleapis.com/learnjs-data/model-builder/mnist_labels_uint8"


@dataclass(frozen=True)
class MnistData:
    """Flat train/test buffers, already split."""

    train_images: np.ndarray
    train_labels: np.ndarray
    test_images: np.ndarray
    test_labels: np.ndarray

    @property
    def num_train(self) -> int:
        return self.train_images.size // IMAGE_PIXELS

    @property
    def num_test(self) -> int:
        return self.test_images.size // IMAGE_PIXELS


class DatasetLoader(Protocol):
    def load(self) -> MnistData:
        """Fetch the dataset or raise `DatasetUnavailable`."""
        ...


class SpriteDatasetLoader:
    """
    The 65000-digit sprite and label blob published for the TensorFlow.js demos.

    The sprite is one PNG with an image per row (784 pixels wide); labels are
    one-hot bytes in the same order. The first 55000 rows are used for
    training and the rest for testing. Both files are cached in `cache_dir`.
    """

    def __init__(
        self,
        cache_dir: Path = DEFAULT_DATA_DIR,
        images_url: str = MNIST_IMAGES_SPRITE_URL,
        labels_url: str = MNIST_LABELS_URL,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.images_url = images_url
        self.labels_url = labels_url

    def _fetch(self, url: str, what: str) -> Path:
        filename = url.rsplit("/", 1)[-1]
        try:
            download_url(url, root=str(self.cache_dir), filename=filename)
        except (OSError, RuntimeError, ValueError) as exc:
            raise DatasetUnavailable(f"MNIST {what} could not be downloaded from {url}: {exc}") from exc
        return self.cache_dir / filename

    def load(self) -> MnistData:
        images_path = self._fetch(self.images_url, "image sprite")
        labels_path = self._fetch(self.labels_url, "labels")

        try:
            with Image.open(images_path) as sprite:
                pixels = np.asarray(sprite.convert("RGB"))[:, :, 0]
        except OSError as exc:
            raise DatasetUnavailable(f"MNIST image sprite at {images_path} is unreadable: {exc}") from exc
        try:
            labels = np.fromfile(labels_path, dtype=np.uint8)
        except OSError as exc:
            raise DatasetUnavailable(f"MNIST labels at {labels_path} are unreadable: {exc}") from exc

        if pixels.size < NUM_DATASET_ELEMENTS * IMAGE_PIXELS or labels.size < NUM_DATASET_ELEMENTS * NUM_CLASSES:
            raise DatasetUnavailable(
                f"MNIST sprite holds {pixels.size // IMAGE_PIXELS} images and "
                f"{labels.size // NUM_CLASSES} labels; expected {NUM_DATASET_ELEMENTS}."
            )

        images = (pixels.reshape(-1)[: NUM_DATASET_ELEMENTS * IMAGE_PIXELS] / 255.0).astype(np.float32)
        labels = labels[: NUM_DATASET_ELEMENTS * NUM_CLASSES]
        split_images = NUM_TRAIN_ELEMENTS * IMAGE_PIXELS
        split_labels = NUM_TRAIN_ELEMENTS * NUM_CLASSES

        logger.info("Loaded MNIST sprite with %d images", NUM_DATASET_ELEMENTS)
        return MnistData(
            train_images=images[:split_images],
            train_labels=labels[:split_labels],
            test_images=images[split_images:],
            test_labels=labels[split_labels:],
        )


class TorchvisionDatasetLoader:
    """MNIST through `torchvision.datasets`, downloaded to `data_dir` on first use."""

    def __init__(self, data_dir: Path = DEFAULT_DATA_DIR) -> None:
        self.data_dir = Path(data_dir)

    def _split(self, train: bool) -> datasets.MNIST:
        try:
            return datasets.MNIST(root=self.data_dir, train=train, download=True)
        except (OSError, RuntimeError, ValueError) as exc:
            split = "train" if train else "test"
            raise DatasetUnavailable(f"MNIST {split} split could not be loaded: {exc}") from exc

    @staticmethod
    def _flatten(split: datasets.MNIST) -> Tuple[np.ndarray, np.ndarray]:
        images = split.data.to(torch.float32).div(255.0).reshape(-1).numpy()
        labels = F.one_hot(split.targets.to(torch.int64), NUM_CLASSES).to(torch.uint8).reshape(-1).numpy()
        return images, labels

    def load(self) -> MnistData:
        train_images, train_labels = self._flatten(self._split(train=True))
        test_images, test_labels = self._flatten(self._split(train=False))
        logger.info("Loaded torchvision MNIST from %s", self.data_dir)
        return MnistData(
            train_images=train_images,
            train_labels=train_labels,
            test_images=test_images,
            test_labels=test_labels,
        )
