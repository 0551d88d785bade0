"""
Canvas preprocessing: turn a free-hand RGBA drawing into the 28x28 grid the
classifier was trained on.

The drawing surface paints white strokes on a black background, so every
colour channel carries the same intensity and only the first one is read.
Preprocessing runs in two stages:

1. Crop the ink's bounding box with some padding and square it up so the
   next stage does not distort the aspect ratio.
2. Resample the square down to 28x28 with antialiased bilinear filtering and
   stretch intensities so the brightest pixel is exactly 1.0.

The crop centres the bounding box, not the stroke's centre of mass.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch
import torch.nn.functional as F

from .config import CROP_PADDING, IMAGE_SIZE, INK_THRESHOLD
from .errors import EmptyInput


@dataclass(frozen=True)
class BoundingBox:
    """Pixel box in raster coordinates, `max_*` exclusive."""

    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y


def _as_raster(raster: np.ndarray) -> np.ndarray:
    array = np.asarray(raster)
    if array.ndim == 2:
        array = array[:, :, np.newaxis]
    if array.ndim != 3 or array.shape[2] < 1:
        raise ValueError(f"Expected a (height, width, channels) raster, got shape {array.shape}.")
    return array


def find_ink_bounds(raster: np.ndarray, threshold: int = INK_THRESHOLD) -> Optional[BoundingBox]:
    """
    Locate the smallest box covering every ink pixel.

    Args:
        raster: `(height, width, channels)` array; only channel 0 is sampled.
        threshold: A pixel counts as ink when its value is strictly greater.

    Returns:
        The box with exclusive upper bounds, or `None` for a blank canvas.
    """
    ink = _as_raster(raster)[:, :, 0] > threshold
    rows = np.flatnonzero(ink.any(axis=1))
    cols = np.flatnonzero(ink.any(axis=0))
    if rows.size == 0:
        return None
    return BoundingBox(
        min_x=int(cols[0]),
        min_y=int(rows[0]),
        max_x=int(cols[-1]) + 1,
        max_y=int(rows[-1]) + 1,
    )


def padded_bounds(box: BoundingBox, width: int, height: int, padding: int = CROP_PADDING) -> BoundingBox:
    """
    Grow `box` by `padding` on every side, clamped to the raster.

    Padding is added to the last ink column/row rather than to the exclusive
    bound, matching the canvas code that produced the training drawings. The
    result always keeps at least the ink itself.
    """
    return BoundingBox(
        min_x=max(box.min_x - padding, 0),
        min_y=max(box.min_y - padding, 0),
        max_x=min(max(box.max_x - 1 + padding, box.max_x), width),
        max_y=min(max(box.max_y - 1 + padding, box.max_y), height),
    )


def crop_to_square(
    raster: np.ndarray,
    threshold: int = INK_THRESHOLD,
    padding: int = CROP_PADDING,
) -> np.ndarray:
    """
    Cut the padded ink region out of `raster` and centre it on a square.

    Raises:
        EmptyInput: when the raster has no ink at all.
    """
    array = _as_raster(raster)
    height, width = array.shape[:2]

    box = find_ink_bounds(array, threshold)
    if box is None:
        raise EmptyInput("Canvas is blank; draw something first.")

    box = padded_bounds(box, width, height, padding)
    box_size = max(box.width, box.height)

    square = np.zeros((box_size, box_size, array.shape[2]), dtype=array.dtype)
    offset_x = (box_size - box.width) // 2
    offset_y = (box_size - box.height) // 2
    square[offset_y : offset_y + box.height, offset_x : offset_x + box.width] = array[
        box.min_y : box.max_y, box.min_x : box.max_x
    ]
    return square


def resample(square: np.ndarray, size: int = IMAGE_SIZE) -> np.ndarray:
    """
    Shrink a square crop to `size x size` and map it to `[0, 1]`.

    The result is flattened row-major and peak-normalized: whenever any pixel
    is lit the maximum is exactly 1.0, otherwise the grid stays all zeros.
    """
    channel = _as_raster(square)[:, :, 0].astype(np.float32)

    with torch.inference_mode():
        source = torch.from_numpy(channel)[None, None]
        resized = F.interpolate(
            source,
            size=(size, size),
            mode="bilinear",
            align_corners=False,
            antialias=True,
        )
        grid = resized[0, 0].clamp_(0.0, 255.0).div_(255.0).numpy().copy()

    peak = float(grid.max())
    if peak > 0.0:
        grid /= peak
    return grid.reshape(-1).astype(np.float32, copy=False)


def raster_to_tensor(
    raster: np.ndarray,
    threshold: int = INK_THRESHOLD,
    padding: int = CROP_PADDING,
    size: int = IMAGE_SIZE,
) -> np.ndarray:
    """
    Convert a drawing into the flat canonical tensor fed to the classifier.

    A blank canvas is not an error: it yields `size * size` zeros and the
    caller decides how to present that.
    """
    try:
        square = crop_to_square(raster, threshold=threshold, padding=padding)
    except EmptyInput:
        return np.zeros(size * size, dtype=np.float32)
    return resample(square, size=size)
