"""
Font loading and text measurement for text layers.
"""

import logging
from functools import lru_cache
from typing import List, Tuple
from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger('thermal_studio.fonts')

__all__ = [
    'LINE_HEIGHT_FACTOR',
    'load_font',
    'measure_text',
    'split_lines',
]

LINE_HEIGHT_FACTOR = 1.2


def _candidate_files(family: str, bold: bool, italic: bool) -> List[str]:
    base = family.strip().replace(' ', '')
    style = ('Bold' if bold else '') + ('Italic' if italic else '')
    names = []
    if style:
        names += [f"{base}-{style}.ttf", f"{base}{style}.ttf"]
    names += [f"{base}.ttf", f"{base}-Regular.ttf", family]
    return names


@lru_cache(maxsize=64)
def load_font(family: str, size: int, bold: bool = False, italic: bool = False):
    """
    Load a TrueType font by family name, falling back to Pillow's bundled font.

    Returns:
        An ImageFont font object at the requested pixel size
    """
    size = max(1, int(round(size)))
    for name in _candidate_files(family or '', bold, italic):
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    logger.debug("Font %r not found, using default font", family)
    return ImageFont.load_default(size=size)


def split_lines(text: str) -> List[str]:
    return (text or '').split('\n')


def measure_text(text: str, font_size: int, font_family: str,
                 bold: bool = False, italic: bool = False) -> Tuple[int, int]:
    """
    Size of the box a text layer needs: widest line by line_count * 1.2 * font_size.
    """
    font = load_font(font_family, font_size, bold, italic)
    draw = ImageDraw.Draw(Image.new('1', (1, 1)))
    lines = split_lines(text)
    width = max((draw.textlength(line, font=font) for line in lines), default=0)
    height = len(lines) * font_size * LINE_HEIGHT_FACTOR
    return max(1, int(round(width))), max(1, int(round(height)))
