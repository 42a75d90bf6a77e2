"""
Utility functions for loading and embedding source images.
"""

import base64
import binascii
import io
import logging
import os
from typing import Dict, Optional, Union
from PIL import Image, ImageOps, UnidentifiedImageError

from errors import DecodeError

logger = logging.getLogger('thermal_studio.utils')

__all__ = [
    'IMAGE_EXTENSIONS',
    'validate_image_file',
    'decode_image',
    'load_image',
    'image_to_data_url',
    'data_url_to_image',
    'get_image_info',
    'ensure_rgba',
    'fit_to_width',
]

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}


def validate_image_file(filepath: str) -> bool:
    """
    Check if file is a valid image file.

    Args:
        filepath: Path to image file

    Returns:
        True if the extension is supported and the file exists
    """
    ext = os.path.splitext(filepath)[1].lower()
    return ext in IMAGE_EXTENSIONS and os.path.exists(filepath)


def ensure_rgba(image: Image.Image) -> Image.Image:
    """
    Ensure image is in RGBA mode.

    Args:
        image: PIL Image

    Returns:
        Image in RGBA mode
    """
    if image.mode != 'RGBA':
        return image.convert('RGBA')
    return image


def decode_image(data: bytes) -> Image.Image:
    """
    Decode encoded image bytes into a fully loaded RGBA image.

    EXIF orientation is applied so the pixels match what viewers show.

    Raises:
        DecodeError: If the bytes are not a readable image
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            img = ImageOps.exif_transpose(img)
            return ensure_rgba(img)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise DecodeError(f"Failed to decode image: {e}") from e


def load_image(filepath: Union[str, os.PathLike]) -> Image.Image:
    """
    Load an image file from disk.

    Raises:
        DecodeError: If the file is missing or not a readable image
    """
    try:
        with open(filepath, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise DecodeError(f"Failed to read image {filepath}: {e}") from e
    return decode_image(data)


def image_to_data_url(image: Image.Image) -> str:
    """Embed an image as a PNG data URL (lossless, keeps alpha)."""
    buffer = io.BytesIO()
    ensure_rgba(image).save(buffer, format='PNG')
    payload = base64.b64encode(buffer.getvalue()).decode('ascii')
    return f"data:image/png;base64,{payload}"


def data_url_to_image(data_url: str) -> Image.Image:
    """
    Decode a base64 data URL (or bare base64 string) into an RGBA image.

    Raises:
        DecodeError: If the payload is not valid base64 or not an image
    """
    if not isinstance(data_url, str) or not data_url:
        raise DecodeError("Empty image payload")
    payload = data_url
    if data_url.startswith('data:'):
        header, sep, payload = data_url.partition(',')
        if not sep or ';base64' not in header:
            raise DecodeError("Only base64 data URLs are supported")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 image payload: {e}") from e
    return decode_image(raw)


def get_image_info(filepath: str) -> Optional[Dict]:
    """
    Get basic image information.

    Args:
        filepath: Path to image file

    Returns:
        Dictionary with width, height, mode, format, or None if unreadable
    """
    try:
        with Image.open(filepath) as img:
            return {
                'width': img.width,
                'height': img.height,
                'mode': img.mode,
                'format': img.format
            }
    except (OSError, UnidentifiedImageError) as e:
        logger.warning("Error getting image info for %s: %s", filepath, e)
        return None


def fit_to_width(image: Image.Image, max_width: int) -> tuple:
    """
    Layer size for an image placed on the canvas: scaled down (never up)
    to max_width, keeping the aspect ratio.

    Returns:
        (width, height) as integers
    """
    w, h = image.size
    if w <= max_width:
        return w, h
    return max_width, max(1, int(round(h * max_width / w)))
