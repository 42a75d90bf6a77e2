"""
Monochrome dithering for a thermal print head.
Converts images to adjusted grayscale intensities and then to a strict
boolean ink matrix using one of several interchangeable strategies.
"""

import math
import logging
import numpy as np
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union
from PIL import Image

from errors import DimensionMismatch, InvalidInput, InvalidParameter

logger = logging.getLogger('thermal_studio.dithering')

__all__ = [
    'DitherMethod',
    'DitherParams',
    'PARAMETER_RANGES',
    'clamp_parameter',
    'normalize_bayer_size',
    'to_intensity',
    'BaseDitherStrategy',
    'ThresholdDitherStrategy',
    'ErrorDiffusionDitherStrategy',
    'FloydSteinbergDitherStrategy',
    'AtkinsonDitherStrategy',
    'BayerDitherStrategy',
    'HalftoneDitherStrategy',
    'OrderedMatrix',
    'MonoDitherer',
]


# -------------------- Enumerations --------------------

class DitherMethod(Enum):
    THRESHOLD = "threshold"
    FLOYD_STEINBERG = "floyd-steinberg"
    ATKINSON = "atkinson"
    BAYER = "bayer"
    HALFTONE = "halftone"

    @classmethod
    def parse(cls, value: Union[str, 'DitherMethod']) -> 'DitherMethod':
        """
        Resolve a method from its value or from a name used by older project files.
        """
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        if key in _LEGACY_METHOD_NAMES:
            return _LEGACY_METHOD_NAMES[key]
        return cls(key)


_LEGACY_METHOD_NAMES = {
    "steinberg": DitherMethod.FLOYD_STEINBERG,
    "floydsteinberg": DitherMethod.FLOYD_STEINBERG,
    "floyd_steinberg": DitherMethod.FLOYD_STEINBERG,
    "pattern": DitherMethod.HALFTONE,
    "none": DitherMethod.THRESHOLD,
}


# -------------------- Parameters --------------------

PARAMETER_RANGES = {
    'threshold': (0, 255),
    'brightness': (0, 255),
    'contrast': (0, 200),
    'bayer_matrix_size': (2, 16),
    'halftone_cell_size': (2, 16),
}


def clamp_parameter(name: str, value) -> int:
    """
    Clamp a slider value to the nearest valid bound.

    Args:
        name: Key in PARAMETER_RANGES
        value: Raw value (int, float or numeric string)

    Returns:
        Integer inside the parameter's range
    """
    lo, hi = PARAMETER_RANGES[name]
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidParameter(f"Parameter '{name}' must be numeric, got {value!r}")
    if math.isnan(number):
        logger.warning("Parameter %s is NaN, using %d", name, lo)
        return lo
    if math.isinf(number):
        bound = hi if number > 0 else lo
        logger.warning("Parameter %s=%r clamped to %d", name, value, bound)
        return bound
    clamped = int(min(hi, max(lo, math.floor(number + 0.5))))
    if clamped != number:
        logger.warning("Parameter %s=%r clamped to %d", name, value, clamped)
    return clamped


def normalize_bayer_size(value) -> int:
    """
    Clamp a Bayer matrix size to [2, 16] and round odd sizes up to the next even one.
    """
    size = clamp_parameter('bayer_matrix_size', value)
    if size % 2:
        size += 1
    return size


class DitherParams:
    """
    Complete, clamped parameter set for one image layer.
    Instances are treated as values: use .replace() to derive a changed copy.
    """

    FIELDS = ('method', 'threshold', 'brightness', 'contrast', 'invert',
              'bayer_matrix_size', 'halftone_cell_size')

    def __init__(self,
                 method: Union[str, DitherMethod] = DitherMethod.FLOYD_STEINBERG,
                 threshold: int = 128,
                 brightness: int = 128,
                 contrast: int = 100,
                 invert: bool = False,
                 bayer_matrix_size: int = 4,
                 halftone_cell_size: int = 4):
        self.method = DitherMethod.parse(method)
        self.threshold = clamp_parameter('threshold', threshold)
        self.brightness = clamp_parameter('brightness', brightness)
        self.contrast = clamp_parameter('contrast', contrast)
        self.invert = bool(invert)
        self.bayer_matrix_size = normalize_bayer_size(bayer_matrix_size)
        self.halftone_cell_size = clamp_parameter('halftone_cell_size', halftone_cell_size)

    def replace(self, **changes) -> 'DitherParams':
        unknown = set(changes) - set(self.FIELDS)
        if unknown:
            raise KeyError(f"Unknown dither parameter(s): {sorted(unknown)}")
        values = self.to_dict()
        values.update(changes)
        return DitherParams(**values)

    def to_dict(self) -> Dict:
        return {
            'method': self.method,
            'threshold': self.threshold,
            'brightness': self.brightness,
            'contrast': self.contrast,
            'invert': self.invert,
            'bayer_matrix_size': self.bayer_matrix_size,
            'halftone_cell_size': self.halftone_cell_size,
        }

    def _key(self) -> Tuple:
        return tuple(getattr(self, f) for f in self.FIELDS)

    def __eq__(self, other):
        if not isinstance(other, DitherParams):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self):
        body = ", ".join(f"{f}={getattr(self, f)!r}" for f in self.FIELDS)
        return f"DitherParams({body})"


# -------------------- Preprocessor --------------------

def _as_pixel_grid(source) -> np.ndarray:
    if isinstance(source, Image.Image):
        if source.mode not in ('RGB', 'RGBA', 'L', 'LA'):
            source = source.convert('RGBA')
        source = np.asarray(source)
    arr = np.asarray(source)
    if arr.ndim not in (2, 3):
        raise InvalidInput(f"Expected a 2D or 3D pixel grid, got shape {arr.shape}")
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise InvalidInput(f"Pixel grid has zero size: {arr.shape}")
    if arr.ndim == 3 and arr.shape[2] not in (1, 2, 3, 4):
        raise InvalidInput(f"Unsupported channel count: {arr.shape[2]}")
    return arr


def to_intensity(source, brightness: int = 128, contrast: int = 100) -> np.ndarray:
    """
    Convert a source image to adjusted grayscale intensities.

    Luminance is 0.299R + 0.587G + 0.114B, contrast scales around 128 by
    contrast/100, brightness shifts by (brightness - 128). Transparent pixels
    are composited over white paper first.

    Args:
        source: PIL image or array of shape (H,W), (H,W,1..4)
        brightness: 0..255, 128 is neutral
        contrast: 0..200 percent, 100 is neutral

    Returns:
        uint8 array of shape (H, W)

    Raises:
        InvalidInput: If the grid has an unusable shape
    """
    arr = _as_pixel_grid(source).astype(np.float64)

    if arr.ndim == 2:
        lum = arr
        alpha = None
    elif arr.shape[2] in (1, 2):
        lum = arr[:, :, 0]
        alpha = arr[:, :, 1] if arr.shape[2] == 2 else None
    else:
        lum = 0.299 * arr[:, :, 0] + 0.587 * arr[:, :, 1] + 0.114 * arr[:, :, 2]
        alpha = arr[:, :, 3] if arr.shape[2] == 4 else None

    if alpha is not None:
        a = alpha / 255.0
        lum = lum * a + 255.0 * (1.0 - a)

    adjusted = (lum - 128.0) * (contrast / 100.0) + 128.0
    adjusted += (brightness - 128)
    return np.clip(np.rint(adjusted), 0, 255).astype(np.uint8)


# -------------------- Base Class for Dithering Strategies --------------------

class BaseDitherStrategy:
    """
    Base class for monochrome dithering strategies.
    Each strategy implements .dither(intensity) taking an (H, W) intensity grid
    and returning a boolean ink matrix of the same shape.
    """

    @staticmethod
    def get_parameter_info() -> Dict:
        return {}

    def get_current_parameters(self) -> Dict:
        return {}

    def dither(self, intensity: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class ThresholdDitherStrategy(BaseDitherStrategy):
    """
    Plain threshold: a pixel is ink iff its intensity is below the threshold.
    """

    @staticmethod
    def get_parameter_info():
        return {
            'threshold': {
                'type': 'int',
                'default': 128,
                'min': 0,
                'max': 255,
                'label': 'Threshold',
                'description': 'Intensities below this value print as ink'
            }
        }

    def __init__(self, threshold: int = 128):
        self.threshold = threshold

    def get_current_parameters(self):
        return {'threshold': self.threshold}

    def dither(self, intensity: np.ndarray) -> np.ndarray:
        return intensity < self.threshold


# -------------------- Error Diffusion --------------------

class ErrorDiffusionDitherStrategy(BaseDitherStrategy):
    """
    Row-major, left-to-right error diffusion (no serpentine scan).
    Each pixel is quantized to 0 or 255 against the threshold and the
    weighted error is pushed to the neighbours listed in OFFSETS.
    Error that would land outside the grid is dropped.
    """

    # (dx, dy, weight)
    OFFSETS: List[Tuple[int, int, float]] = []

    @staticmethod
    def get_parameter_info():
        return ThresholdDitherStrategy.get_parameter_info()

    def __init__(self, threshold: int = 128):
        self.threshold = threshold

    def get_current_parameters(self):
        return {'threshold': self.threshold}

    def dither(self, intensity: np.ndarray) -> np.ndarray:
        h, w = intensity.shape
        # Python lists are much faster than numpy scalar indexing in this loop
        work = intensity.astype(np.float64).tolist()
        ink = np.zeros((h, w), dtype=bool)
        threshold = self.threshold
        offsets = self.OFFSETS

        for y in range(h):
            row = work[y]
            out = [False] * w
            for x in range(w):
                old_val = row[x]
                if old_val < threshold:
                    out[x] = True
                    err = old_val
                else:
                    err = old_val - 255.0
                if err == 0.0:
                    continue
                for dx, dy, weight in offsets:
                    nx = x + dx
                    ny = y + dy
                    if 0 <= nx < w and ny < h:
                        work[ny][nx] += err * weight
            ink[y] = out
        return ink


class FloydSteinbergDitherStrategy(ErrorDiffusionDitherStrategy):
    """
    Classic Floyd-Steinberg weights: 7/16 right, 3/16 below-left,
    5/16 below, 1/16 below-right.
    """
    OFFSETS = [(1, 0, 7 / 16), (-1, 1, 3 / 16), (0, 1, 5 / 16), (1, 1, 1 / 16)]


class AtkinsonDitherStrategy(ErrorDiffusionDitherStrategy):
    """
    Atkinson dithering. Only 6/8 of the error is diffused (1/8 to each of six
    neighbours); the remaining 2/8 is discarded, which raises local contrast.
    """
    OFFSETS = [
        (1, 0, 1 / 8), (2, 0, 1 / 8),
        (-1, 1, 1 / 8), (0, 1, 1 / 8), (1, 1, 1 / 8),
        (0, 2, 1 / 8),
    ]


# -------------------- Ordered (Bayer) Dithering --------------------

def _bayer_index_matrix(size: int) -> np.ndarray:
    m = np.array([[0, 2], [3, 1]], dtype=np.int64)
    while m.shape[0] < size:
        m = np.block([[4 * m, 4 * m + 2],
                      [4 * m + 3, 4 * m + 1]])
    return m


def _blue_noise_index_matrix(size: int, seed: int = 42) -> np.ndarray:
    """
    Rank every cell of a size x size torus by greedy farthest-point insertion.
    Consecutive ranks land far apart, giving a dispersed, blue-noise-like order.
    """
    rng = np.random.RandomState(seed)
    ys, xs = np.mgrid[0:size, 0:size]
    ys = ys.ravel()
    xs = xs.ravel()
    n = size * size
    rank = np.full(n, -1, dtype=np.int64)
    min_dist = np.full(n, np.inf)
    # tiny jitter only breaks ties between equal integer distances
    jitter = rng.random_sample(n) * 1e-3

    for i in range(n):
        score = np.where(rank < 0, min_dist + jitter, -np.inf)
        best = int(np.argmax(score))
        rank[best] = i
        dy = np.abs(ys - ys[best])
        dx = np.abs(xs - xs[best])
        dy = np.minimum(dy, size - dy)
        dx = np.minimum(dx, size - dx)
        np.minimum(min_dist, (dx * dx + dy * dy).astype(np.float64), out=min_dist)
    return rank.reshape((size, size))


class OrderedMatrix:
    """
    Threshold matrices for ordered dithering, cached per size.
    Power-of-two sizes use the recursive Bayer matrix, other even sizes a
    farthest-point ranking. Rank r maps to threshold floor((r+0.5)*255/N^2)+1,
    so every value lies in [1, 255]: black stays black and white stays white.
    """

    # In-memory cache (does not persist between runs)
    _cache: Dict[int, np.ndarray] = {}

    @staticmethod
    def ranks(size: int) -> np.ndarray:
        if (size & (size - 1)) == 0:
            return _bayer_index_matrix(size)
        return _blue_noise_index_matrix(size)

    @classmethod
    def get(cls, size: int) -> np.ndarray:
        size = normalize_bayer_size(size)
        if size not in cls._cache:
            ranks = cls.ranks(size)
            n = size * size
            matrix = np.floor((ranks + 0.5) * 255.0 / n).astype(np.int16) + 1
            matrix.setflags(write=False)
            cls._cache[size] = matrix
        return cls._cache[size]


class BayerDitherStrategy(BaseDitherStrategy):
    """
    Ordered dithering with an N x N threshold matrix tiled over the image:
    pixel (x, y) is ink iff intensity(x, y) < matrix[y mod N][x mod N].
    The threshold slider shifts the whole matrix by (threshold - 128).
    """

    @staticmethod
    def get_parameter_info():
        return {
            'matrix_size': {
                'type': 'int',
                'default': 4,
                'min': 2,
                'max': 16,
                'label': 'Matrix Size',
                'description': 'Side of the ordered threshold matrix (even sizes only)'
            },
            'threshold': {
                'type': 'int',
                'default': 128,
                'min': 0,
                'max': 255,
                'label': 'Threshold',
                'description': 'Shifts the matrix darker (higher) or lighter (lower)'
            }
        }

    def __init__(self, matrix_size: int = 4, threshold: int = 128):
        self.matrix_size = normalize_bayer_size(matrix_size)
        self.threshold = threshold
        self.threshold_matrix = OrderedMatrix.get(self.matrix_size)

    def get_current_parameters(self):
        return {
            'matrix_size': self.matrix_size,
            'threshold': self.threshold
        }

    def dither(self, intensity: np.ndarray) -> np.ndarray:
        h, w = intensity.shape
        n = self.matrix_size
        tiled = np.tile(self.threshold_matrix, ((h + n - 1) // n, (w + n - 1) // n))
        tiled = tiled[:h, :w].astype(np.int32) + (self.threshold - 128)
        return intensity.astype(np.int32) < tiled


# -------------------- Halftone (clustered dot) --------------------

class HalftoneDitherStrategy(BaseDitherStrategy):
    """
    Clustered-dot halftone on a square grid of cell_size x cell_size blocks.
    Each block's mean intensity gives the ink fraction f = 1 - mean/255 and
    the round(f * area) pixels nearest the block centre are inked, so the
    dot radius encodes local darkness. Partial blocks at the right and bottom
    edges use their own area and centre.
    """

    @staticmethod
    def get_parameter_info():
        return {
            'cell_size': {
                'type': 'int',
                'default': 4,
                'min': 2,
                'max': 16,
                'label': 'Cell Size',
                'description': 'Distance between dot centers (smaller = finer detail)'
            }
        }

    def __init__(self, cell_size: int = 4):
        self.cell_size = cell_size
        self._order_cache: Dict[Tuple[int, int], np.ndarray] = {}

    def get_current_parameters(self):
        return {'cell_size': self.cell_size}

    def _fill_order(self, bh: int, bw: int) -> np.ndarray:
        """Flat indices of a bh x bw block sorted by distance to its centre."""
        key = (bh, bw)
        if key not in self._order_cache:
            yy, xx = np.mgrid[0:bh, 0:bw]
            cy = (bh - 1) / 2.0
            cx = (bw - 1) / 2.0
            d2 = ((yy - cy) ** 2 + (xx - cx) ** 2).ravel()
            # stable sort keeps row-major order among equal distances
            self._order_cache[key] = np.argsort(d2, kind='stable')
        return self._order_cache[key]

    def dither(self, intensity: np.ndarray) -> np.ndarray:
        h, w = intensity.shape
        cs = self.cell_size
        ink = np.zeros((h, w), dtype=bool)

        for by in range(0, h, cs):
            for bx in range(0, w, cs):
                block = intensity[by:by + cs, bx:bx + cs]
                bh, bw = block.shape
                area = bh * bw
                fill = 1.0 - float(block.mean()) / 255.0
                count = int(math.floor(fill * area + 0.5))
                if count <= 0:
                    continue
                flat = np.zeros(area, dtype=bool)
                flat[self._fill_order(bh, bw)[:count]] = True
                ink[by:by + bh, bx:bx + bw] = flat.reshape((bh, bw))
        return ink


# -------------------- Mono Ditherer --------------------

class MonoDitherer:
    """
    Orchestrates preprocessing plus dithering with the chosen strategy,
    then applies inversion. The result always has the input's dimensions.
    """

    def __init__(self, params: Optional[DitherParams] = None):
        self.params = params or DitherParams()

    @staticmethod
    def get_method_parameters(method: DitherMethod) -> Dict:
        """
        Get parameter metadata for a dithering method (used to build slider panels).
        """
        method = DitherMethod.parse(method)
        if method == DitherMethod.THRESHOLD:
            return ThresholdDitherStrategy.get_parameter_info()
        elif method == DitherMethod.FLOYD_STEINBERG:
            return FloydSteinbergDitherStrategy.get_parameter_info()
        elif method == DitherMethod.ATKINSON:
            return AtkinsonDitherStrategy.get_parameter_info()
        elif method == DitherMethod.BAYER:
            return BayerDitherStrategy.get_parameter_info()
        elif method == DitherMethod.HALFTONE:
            return HalftoneDitherStrategy.get_parameter_info()
        raise ValueError(f"Unrecognized DitherMethod: {method}")

    def _get_dither_strategy(self) -> BaseDitherStrategy:
        p = self.params
        if p.method == DitherMethod.THRESHOLD:
            return ThresholdDitherStrategy(p.threshold)
        elif p.method == DitherMethod.FLOYD_STEINBERG:
            return FloydSteinbergDitherStrategy(p.threshold)
        elif p.method == DitherMethod.ATKINSON:
            return AtkinsonDitherStrategy(p.threshold)
        elif p.method == DitherMethod.BAYER:
            return BayerDitherStrategy(p.bayer_matrix_size, p.threshold)
        elif p.method == DitherMethod.HALFTONE:
            return HalftoneDitherStrategy(p.halftone_cell_size)
        raise ValueError(f"Unrecognized DitherMethod: {p.method}")

    def dither_intensity(self, intensity: np.ndarray) -> np.ndarray:
        strategy = self._get_dither_strategy()
        ink = np.asarray(strategy.dither(intensity), dtype=bool)
        if ink.shape != intensity.shape:
            # every strategy must preserve dimensions
            raise DimensionMismatch(
                f"{type(strategy).__name__} returned {ink.shape}, expected {intensity.shape}")
        if self.params.invert:
            ink = ~ink
        return ink

    def apply_dithering(self, source) -> np.ndarray:
        """
        Run Preprocessor and Ditherer on a source image.

        Args:
            source: PIL image or pixel array

        Returns:
            Boolean ink matrix with the source's (H, W)
        """
        intensity = to_intensity(source, self.params.brightness, self.params.contrast)
        return self.dither_intensity(intensity)
