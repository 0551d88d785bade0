"""
Training for the digit sketch classifier.

`Trainer.train` pulls MNIST from a dataset loader, fits the fixed network on a
random subset for a few quick epochs and stores the result in the model slot.
Running this module warms that slot from the command line:

    python -m digit_sketch.train --cache-dir data/models

which loads the stored model if one exists, otherwise trains and saves it,
then prints the layer table and held-out accuracy.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import torch

from .config import IMAGE_SIZE, NUM_CLASSES, DigitSketchConfig, default_cache_dir
from .dataset import DatasetLoader, MnistData, SpriteDatasetLoader, TorchvisionDatasetLoader
from .errors import DatasetUnavailable, TrainingFailed
from .lifecycle import ModelLifecycle
from .model import CompiledModel, FitHistory, build_network
from .scope import TensorScope
from .store import ModelStore

logger = logging.getLogger(__name__)


def materialize(
    images: np.ndarray,
    labels: np.ndarray,
    count: int,
    scope: TensorScope,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Copy flat buffers into `(count, 1, 28, 28)` images and `(count, 10)` labels.

    Raises:
        TrainingFailed: if either buffer does not hold exactly `count` examples.
    """
    if images.size != count * IMAGE_SIZE * IMAGE_SIZE or labels.size != count * NUM_CLASSES:
        raise TrainingFailed(
            f"Dataset shape mismatch: {images.size} image values and {labels.size} "
            f"label values for {count} examples."
        )
    xs = scope.track(torch.tensor(images, dtype=torch.float32))
    ys = scope.track(torch.tensor(labels, dtype=torch.float32))
    return xs.reshape(count, 1, IMAGE_SIZE, IMAGE_SIZE), ys.reshape(count, NUM_CLASSES)


def random_subset(
    xs: torch.Tensor,
    ys: torch.Tensor,
    size: int,
    scope: TensorScope,
    generator: Optional[torch.Generator] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Pick `size` examples uniformly at random without replacement."""
    indices = scope.track(torch.randperm(xs.size(0), generator=generator)[:size])
    return scope.track(xs.index_select(0, indices)), scope.track(ys.index_select(0, indices))


class Trainer:
    """Builds, fits and stores a fresh model."""

    def __init__(self, loader: DatasetLoader, store: ModelStore, config: Optional[DigitSketchConfig] = None) -> None:
        self.loader = loader
        self.store = store
        self.config = config or DigitSketchConfig()
        self.last_history: Optional[FitHistory] = None

    def _generator(self) -> Optional[torch.Generator]:
        if self.config.seed is None:
            return None
        return torch.Generator().manual_seed(self.config.seed)

    def _fit(self, data: MnistData, scope: TensorScope) -> CompiledModel:
        generator = self._generator()
        train_xs, train_ys = materialize(data.train_images, data.train_labels, data.num_train, scope)
        test_xs, test_ys = materialize(data.test_images, data.test_labels, data.num_test, scope)

        train_x, train_y = random_subset(train_xs, train_ys, self.config.train_subset_size, scope, generator)
        test_x, test_y = random_subset(test_xs, test_ys, self.config.test_subset_size, scope, generator)
        logger.info("Training on %d examples, validating on %d", train_x.size(0), test_x.size(0))

        model = build_network(learning_rate=self.config.learning_rate)
        self.last_history = model.fit(
            train_x,
            train_y,
            epochs=self.config.epochs,
            batch_size=self.config.batch_size,
            validation_data=(test_x, test_y),
            shuffle=True,
            generator=generator,
        )
        return model

    def train(self) -> CompiledModel:
        """
        Run the whole recipe and persist the result.

        Raises:
            DatasetUnavailable: if the loader cannot deliver MNIST, whatever
                the loader raised is chained as the cause.
            TrainingFailed: on shape mismatch, divergence or a failed save.
        """
        try:
            data = self.loader.load()
        except DatasetUnavailable:
            raise
        except Exception as exc:
            raise DatasetUnavailable(f"Loading MNIST failed: {exc}") from exc

        with TensorScope() as scope:
            try:
                model = self._fit(data, scope)
            except TrainingFailed:
                raise
            except Exception as exc:
                raise TrainingFailed(f"Fitting the model failed: {exc}") from exc

        try:
            self.store.save(model)
        except Exception as exc:
            raise TrainingFailed(f"Saving the trained model failed: {exc}") from exc
        return model


@dataclass
class WarmupConfig:
    """Runtime parameters for the warm-up script."""

    cache_dir: Path
    data_dir: Path
    source: str = "sprite"


def build_loader(source: str, data_dir: Path) -> DatasetLoader:
    if source == "sprite":
        return SpriteDatasetLoader(data_dir)
    if source == "torchvision":
        return TorchvisionDatasetLoader(data_dir)
    raise ValueError(f"Unknown dataset source: {source}")


async def warm_up(config: WarmupConfig) -> None:
    """Resolve the model slot and report on the result."""
    loader = build_loader(config.source, config.data_dir)
    store = ModelStore(config.cache_dir)
    trainer = Trainer(loader, store, DigitSketchConfig(cache_dir=config.cache_dir, data_dir=config.data_dir))
    lifecycle = ModelLifecycle(store, trainer)

    def report(status: str) -> None:
        if status == "training":
            print("No usable stored model, training a new one...")
        else:
            print(f"Looking for a stored model at {store.path}")

    layers = await lifecycle.get_model_layers(report)
    print("\nLayers:")
    for layer in layers:
        print(f"- {layer.name:<10} {layer.output_shape}")

    if trainer.last_history is not None and trainer.last_history.val_acc:
        print(f"\nHeld-out accuracy: {100.0 * trainer.last_history.val_acc[-1]:.2f}%")
    print(f"Model ready at {store.path.resolve()}")


def parse_args() -> WarmupConfig:
    """Parse CLI arguments into a WarmupConfig instance."""
    parser = argparse.ArgumentParser(description="Load or train the digit sketch classifier.")
    parser.add_argument(
        "--cache-dir",
        type=Path,
        default=default_cache_dir(),
        help="Directory holding the stored model.",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DigitSketchConfig.data_dir,
        help="Directory where MNIST downloads are cached.",
    )
    parser.add_argument(
        "--source",
        choices=("sprite", "torchvision"),
        default="sprite",
        help="Where to fetch MNIST from when training is needed.",
    )

    args = parser.parse_args()
    return WarmupConfig(cache_dir=args.cache_dir, data_dir=args.data_dir, source=args.source)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(warm_up(parse_args()))
