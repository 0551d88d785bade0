"""Scoped release of bulk tensors built during training and inference."""

from __future__ import annotations

from types import TracebackType
from typing import List, Optional, Type

import torch


class TensorScope:
    """
    Collects intermediate tensors and frees their storage when the scope ends.

    Dropping Python references is not enough when other objects (views,
    closures, tracebacks) still point at a buffer, so `release` shrinks each
    tracked storage to zero bytes. Tracked tensors must not be used afterwards.
    Storages borrowed from numpy cannot be resized and are only dereferenced.
    """

    def __init__(self) -> None:
        self._tensors: List[torch.Tensor] = []

    def track(self, tensor: torch.Tensor) -> torch.Tensor:
        self._tensors.append(tensor)
        return tensor

    def __len__(self) -> int:
        return len(self._tensors)

    def release(self) -> None:
        while self._tensors:
            storage = self._tensors.pop().untyped_storage()
            if storage.resizable():
                storage.resize_(0)

    def __enter__(self) -> "TensorScope":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.release()
