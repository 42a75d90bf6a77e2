"""
Compositor: draws every visible layer bottom-to-top onto the 384 px canvas.

compose() produces the 1-bit raster that is sent to the printer.
render_preview() is the same raster as an RGB image with the selection
outline and handles drawn on top, so preview pixels are print pixels.
"""

import math
import logging
import numpy as np
from typing import List, Optional, Tuple
from PIL import Image, ImageDraw

from errors import ContextUnavailable
from fonts import LINE_HEIGHT_FACTOR, load_font, split_lines
from layer_store import CANVAS_WIDTH, ImageLayer, Layer, LayerStore, TextLayer
from raster import MonoBitmap, target_size

logger = logging.getLogger('thermal_studio.compositor')

__all__ = [
    'MAX_CANVAS_HEIGHT',
    'compose',
    'render_preview',
    'layer_raster',
]

MAX_CANVAS_HEIGHT = 3000

# Opacity below this draws nothing; at or above it the layer is fully opaque
OPACITY_CUTOFF = 0.5

SELECTION_COLOR = '#3B82F6'
SELECTION_WIDTH = 2
SELECTION_PADDING = 2
DASH_PATTERN = (5, 5)
HANDLE_SIZE = 8


def _check_height(height) -> int:
    try:
        h = int(height)
    except (TypeError, ValueError):
        raise ContextUnavailable(f"Canvas height must be an integer, got {height!r}")
    if h <= 0 or h > MAX_CANVAS_HEIGHT:
        raise ContextUnavailable(
            f"Cannot create a {CANVAS_WIDTH}x{h} canvas (height must be 1..{MAX_CANVAS_HEIGHT})")
    return h


# -------------------- Layer rasters --------------------

def _render_text(layer: TextLayer) -> np.ndarray:
    """Text glyphs as an ink mask of the layer box, no anti-aliasing."""
    w, h = target_size(layer.width, layer.height)
    img = Image.new('L', (w, h), 0)
    draw = ImageDraw.Draw(img)
    draw.fontmode = "1"
    font = load_font(layer.font_family, layer.font_size, layer.bold, layer.italic)
    line_height = layer.font_size * LINE_HEIGHT_FACTOR

    for i, line in enumerate(split_lines(layer.text)):
        if not line:
            continue
        line_width = draw.textlength(line, font=font)
        if layer.align == 'center':
            x = (w - line_width) / 2.0
        elif layer.align == 'right':
            x = w - line_width
        else:
            x = 0
        draw.text((x, i * line_height), line, fill=255, font=font)

    return np.asarray(img) > 0


def _rotate_mask(mask: np.ndarray, rotation: float) -> np.ndarray:
    img = Image.fromarray(mask.astype(np.uint8) * 255)
    # Pillow rotates counter-clockwise; canvas rotation is clockwise (y points down)
    rotated = img.rotate(-rotation, resample=Image.Resampling.NEAREST, expand=True, fillcolor=0)
    return np.asarray(rotated) > 127


def layer_raster(layer: Layer) -> Optional[Tuple[np.ndarray, np.ndarray, int, int]]:
    """
    Rasterize one layer in canvas orientation.

    Returns:
        (ink, cover, left, top): ink and coverage masks and their canvas
        offset, or None for a layer that draws nothing. Image layers cover
        their whole box (white paper hides what is below); text covers only
        its glyphs.
    """
    if isinstance(layer, ImageLayer):
        ink = layer.bitmap.ink
        cover = np.ones_like(ink)
    elif isinstance(layer, TextLayer):
        ink = _render_text(layer)
        cover = ink
    else:
        logger.warning("Skipping layer %s of unknown kind %r", layer.id, layer.kind)
        return None

    rotation = layer.rotation % 360.0
    if rotation == 0:
        return ink, cover, int(round(layer.x)), int(round(layer.y))

    h, w = ink.shape
    cx = layer.x + w / 2.0
    cy = layer.y + h / 2.0
    ink = _rotate_mask(ink, rotation)
    cover = ink if isinstance(layer, TextLayer) else _rotate_mask(cover, rotation)
    rh, rw = ink.shape
    return ink, cover, int(round(cx - rw / 2.0)), int(round(cy - rh / 2.0))


def _paste(canvas: np.ndarray, ink: np.ndarray, cover: np.ndarray, left: int, top: int):
    ch, cw = canvas.shape
    h, w = ink.shape
    x0, y0 = max(left, 0), max(top, 0)
    x1, y1 = min(left + w, cw), min(top + h, ch)
    if x0 >= x1 or y0 >= y1:
        return
    src = (slice(y0 - top, y1 - top), slice(x0 - left, x1 - left))
    region = canvas[y0:y1, x0:x1]
    mask = cover[src]
    region[mask] = ink[src][mask]


# -------------------- Public API --------------------

def compose(store: LayerStore, height: int) -> MonoBitmap:
    """
    Composite all visible layers into the print raster.

    Args:
        store: Layer Store (index 0 drawn first)
        height: Canvas height in pixels

    Returns:
        MonoBitmap of CANVAS_WIDTH x height

    Raises:
        ContextUnavailable: If the canvas cannot be created at this height
    """
    height = _check_height(height)
    canvas = np.zeros((height, CANVAS_WIDTH), dtype=bool)
    drawn = 0

    for layer in store.layers:
        if not layer.visible or layer.opacity < OPACITY_CUTOFF:
            continue
        raster = layer_raster(layer)
        if raster is None:
            continue
        _paste(canvas, *raster)
        drawn += 1

    logger.debug("Composed %d of %d layer(s) onto %dx%d", drawn, len(store), CANVAS_WIDTH, height)
    return MonoBitmap(canvas)


def _frame_points(layer: Layer, x: float, y: float, w: float, h: float) -> List[Tuple[float, float]]:
    """Corners of a rectangle rotated with the layer about the layer centre."""
    lw, lh = target_size(layer.width, layer.height)
    cx = layer.x + lw / 2.0
    cy = layer.y + lh / 2.0
    angle = math.radians(layer.rotation)
    cos_a, sin_a = math.cos(angle), math.sin(angle)
    points = []
    for px, py in ((x, y), (x + w, y), (x + w, y + h), (x, y + h)):
        dx, dy = px - cx, py - cy
        points.append((cx + dx * cos_a - dy * sin_a, cy + dx * sin_a + dy * cos_a))
    return points


def _dashed_line(draw: ImageDraw.ImageDraw, start, end, offset: float) -> float:
    """Draw one dashed segment; returns the dash phase carried to the next edge."""
    on, off = DASH_PATTERN
    period = on + off
    length = math.hypot(end[0] - start[0], end[1] - start[1])
    if length == 0:
        return offset
    ux, uy = (end[0] - start[0]) / length, (end[1] - start[1]) / length
    pos = -offset
    while pos < length:
        a = max(pos, 0.0)
        b = min(pos + on, length)
        if b > a:
            draw.line([(start[0] + ux * a, start[1] + uy * a),
                       (start[0] + ux * b, start[1] + uy * b)],
                      fill=SELECTION_COLOR, width=SELECTION_WIDTH)
        pos += period
    return (offset + length) % period


def _draw_selection(image: Image.Image, layer: Layer):
    draw = ImageDraw.Draw(image)
    w, h = target_size(layer.width, layer.height)
    pad = SELECTION_PADDING
    outline = _frame_points(layer, layer.x - pad, layer.y - pad, w + 2 * pad, h + 2 * pad)
    phase = 0.0
    for i in range(4):
        phase = _dashed_line(draw, outline[i], outline[(i + 1) % 4], phase)

    half = HANDLE_SIZE / 2.0
    box = _frame_points(layer, layer.x, layer.y, w, h)
    for corner_x, corner_y in box:
        # handles share the layer rotation
        square = [(corner_x + px, corner_y + py) for px, py in
                  _rotated_square(half, layer.rotation)]
        draw.polygon(square, fill='#ffffff', outline=SELECTION_COLOR, width=SELECTION_WIDTH)


def _rotated_square(half: float, rotation: float) -> List[Tuple[float, float]]:
    angle = math.radians(rotation)
    cos_a, sin_a = math.cos(angle), math.sin(angle)
    return [(dx * cos_a - dy * sin_a, dx * sin_a + dy * cos_a)
            for dx, dy in ((-half, -half), (half, -half), (half, half), (-half, half))]


def render_preview(store: LayerStore, height: int, selected_id: Optional[str] = None,
                   decorate: bool = True) -> Image.Image:
    """
    Editor preview: the print raster as RGB plus selection decoration.

    Args:
        store: Layer Store
        height: Canvas height in pixels
        selected_id: Layer to decorate, defaults to the store's selection
        decorate: Draw the selection outline and corner handles

    Returns:
        RGB image of CANVAS_WIDTH x height
    """
    image = compose(store, height).to_image().convert('RGB')
    if not decorate:
        return image

    if selected_id is None:
        selected_id = store.selected_id
    layer = store.find(selected_id) if selected_id else None
    if layer is not None and layer.visible and not layer.locked:
        _draw_selection(image, layer)
    return image
