"""
1-bit raster value type and size correction.

A MonoBitmap is the owned pixel buffer of an image layer and of the
composited canvas. True means ink (black), False means paper (white).
"""

import logging
import numpy as np
from typing import Tuple
from PIL import Image

from errors import DimensionMismatch, InvalidInput

logger = logging.getLogger('thermal_studio.raster')

__all__ = [
    'MonoBitmap',
    'rasterize',
    'target_size',
]


def target_size(width: float, height: float) -> Tuple[int, int]:
    """
    Integer raster size for a layer box. Never smaller than 1x1.
    """
    return max(1, int(round(width))), max(1, int(round(height)))


class MonoBitmap:
    """
    Immutable boolean raster. The underlying array is read-only, so a
    bitmap can be shared freely and is only ever replaced, never mutated.
    """

    __slots__ = ('_ink',)

    def __init__(self, ink):
        arr = np.array(ink, dtype=bool, copy=True)
        if arr.ndim != 2 or arr.shape[0] == 0 or arr.shape[1] == 0:
            raise InvalidInput(f"Bitmap must be a non-empty 2D matrix, got shape {arr.shape}")
        arr.setflags(write=False)
        self._ink = arr

    @classmethod
    def blank(cls, width: int, height: int) -> 'MonoBitmap':
        return cls(np.zeros((height, width), dtype=bool))

    @classmethod
    def from_image(cls, image: Image.Image) -> 'MonoBitmap':
        """Black pixels of a mode '1' (or thresholded 'L') image become ink."""
        if image.mode != '1':
            image = image.convert('L').point(lambda v: 255 if v >= 128 else 0).convert(
                '1', dither=Image.Dither.NONE)
        return cls(~np.asarray(image, dtype=bool))

    @property
    def ink(self) -> np.ndarray:
        return self._ink

    @property
    def width(self) -> int:
        return self._ink.shape[1]

    @property
    def height(self) -> int:
        return self._ink.shape[0]

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def ink_count(self) -> int:
        return int(self._ink.sum())

    def invert(self) -> 'MonoBitmap':
        return MonoBitmap(~self._ink)

    def to_image(self) -> Image.Image:
        """Mode '1' image, one solid black or white pixel per cell."""
        gray = np.where(self._ink, 0, 255).astype(np.uint8)
        return Image.fromarray(gray).convert('1', dither=Image.Dither.NONE)

    def resized(self, width: int, height: int) -> 'MonoBitmap':
        """
        Nearest-neighbour resize. Smoothing would introduce gray levels,
        so no other resampling filter is ever used here.
        """
        if (width, height) == self.size:
            return self
        resized = self.to_image().resize((width, height), Image.Resampling.NEAREST)
        return MonoBitmap.from_image(resized)

    def pack_rows(self) -> bytes:
        """
        Pack rows MSB first, one bit per pixel (1 = ink), each row padded
        to a whole number of bytes. This is the layout thermal heads consume.
        """
        return np.packbits(self._ink, axis=1).tobytes()

    def __eq__(self, other):
        if not isinstance(other, MonoBitmap):
            return NotImplemented
        return self._ink.shape == other._ink.shape and bool(np.array_equal(self._ink, other._ink))

    def __hash__(self):
        return hash((self._ink.shape, self._ink.tobytes()))

    def __repr__(self):
        return f"MonoBitmap({self.width}x{self.height}, ink={self.ink_count()})"


def rasterize(ink: np.ndarray, width: float, height: float) -> MonoBitmap:
    """
    Materialize a dithered matrix as a bitmap of exactly the layer's size.

    A size mismatch (from scaling the source before dithering) is corrected
    with nearest-neighbour resampling and logged, never surfaced.

    Args:
        ink: Boolean matrix from the ditherer
        width: Layer width (rounded)
        height: Layer height (rounded)

    Returns:
        MonoBitmap with size (round(width), round(height))
    """
    bitmap = MonoBitmap(ink)
    expected = target_size(width, height)
    if bitmap.size != expected:
        mismatch = DimensionMismatch(
            f"raster {bitmap.width}x{bitmap.height} != layer {expected[0]}x{expected[1]}")
        logger.warning("Canvas size mismatch, resizing: %s", mismatch)
        bitmap = bitmap.resized(*expected)
    return bitmap
