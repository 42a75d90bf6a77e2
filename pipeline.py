"""
Preprocessor -> Ditherer -> Rasterizer chain for one image layer.
"""

import logging
from PIL import Image

from dithering_lib import DitherParams, MonoDitherer
from raster import MonoBitmap, rasterize, target_size

logger = logging.getLogger('thermal_studio.pipeline')

__all__ = [
    'process_image',
]


def process_image(original: Image.Image, params: DitherParams,
                  width: float, height: float) -> MonoBitmap:
    """
    Produce the 1-bit bitmap of an image layer.

    The result depends only on the arguments: the original is scaled to the
    layer size with a high quality filter, converted to adjusted intensities,
    dithered, inverted if requested and rasterized to exactly
    (round(width), round(height)).

    Args:
        original: Immutable source image of the layer
        params: Dither parameters
        width: Layer width in canvas pixels
        height: Layer height in canvas pixels

    Returns:
        MonoBitmap of the layer's exact size
    """
    tw, th = target_size(width, height)
    if original.size != (tw, th):
        scaled = original.resize((tw, th), Image.Resampling.LANCZOS)
    else:
        scaled = original

    ink = MonoDitherer(params).apply_dithering(scaled)
    bitmap = rasterize(ink, width, height)
    logger.debug("Processed %dx%d source -> %r with %s",
                 original.width, original.height, bitmap, params.method.value)
    return bitmap
