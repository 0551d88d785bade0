"""
Single-slot model storage on local disk.

A storage key such as `mnist-demo-model-v2` maps to `<cache_dir>/<key>.pt`.
The version segment of the key changes with the architecture, so a stale
checkpoint is simply never looked up again.
"""

from __future__ import annotations

import logging
import pickle
import zipfile
from pathlib import Path
from typing import Optional, Tuple, Type

import torch

from .config import MODEL_STORAGE_KEY, default_cache_dir
from .errors import PersistedLoadFailed
from .model import CompiledModel

logger = logging.getLogger(__name__)

_LOAD_ERRORS: Tuple[Type[BaseException], ...] = (
    OSError,
    EOFError,
    KeyError,
    TypeError,
    ValueError,
    AttributeError,
    RuntimeError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


class ModelStore:
    """Reads and writes the one persisted model slot."""

    def __init__(self, cache_dir: Optional[Path] = None, key: str = MODEL_STORAGE_KEY) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir is not None else default_cache_dir()
        self.key = key

    @property
    def path(self) -> Path:
        return self.cache_dir / f"{self.key}.pt"

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> CompiledModel:
        """
        Restore the stored model.

        Raises:
            PersistedLoadFailed: when the slot is empty, unreadable or holds a
                model for a different architecture.
        """
        if not self.path.exists():
            raise PersistedLoadFailed(f"No stored model under '{self.key}'.")
        try:
            state = torch.load(self.path, map_location="cpu")
            model = CompiledModel.from_state(state)
        except _LOAD_ERRORS as exc:
            raise PersistedLoadFailed(
                f"Stored model '{self.key}' could not be loaded: {exc.__class__.__name__}: {exc}"
            ) from exc
        logger.info("Loaded stored model from %s", self.path)
        return model

    def save(self, model: CompiledModel) -> Path:
        """Write `model` into the slot, replacing whatever was there."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write next to the target first so a failed save never leaves half a file.
        partial = self.path.with_suffix(".pt.partial")
        torch.save(model.state(), partial)
        partial.replace(self.path)
        logger.info("Saved model to %s", self.path.resolve())
        return self.path

    def clear(self) -> None:
        """Forget the stored model, if any."""
        self.path.unlink(missing_ok=True)
