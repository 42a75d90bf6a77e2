"""
Layer model and the Layer Store.

The store is the single owner of the ordered layer list (index 0 is the
bottom of the stack) and of the current selection. Everything else reads
layers through it and changes them through its mutation methods.
"""

import itertools
import logging
import threading
from typing import Callable, Iterator, List, Optional, Tuple
from PIL import Image

from dithering_lib import DitherParams
from fonts import measure_text
from pipeline import process_image
from raster import MonoBitmap, target_size
from utils import ensure_rgba, fit_to_width

logger = logging.getLogger('thermal_studio.layers')

__all__ = [
    'CANVAS_WIDTH',
    'Layer',
    'ImageLayer',
    'TextLayer',
    'LayerStore',
]

# Thermal print head width in dots
CANVAS_WIDTH = 384

TEXT_ALIGNMENTS = ('left', 'center', 'right')


class Layer:
    """Fields shared by every layer kind."""

    kind = None

    def __init__(self, layer_id: str, name: str, x: float = 0.0, y: float = 0.0,
                 width: float = 1.0, height: float = 1.0, visible: bool = True,
                 locked: bool = False, opacity: float = 1.0, rotation: float = 0.0):
        self.id = layer_id
        self.name = name
        self.visible = visible
        self.locked = locked
        self.x = float(x)
        self.y = float(y)
        self.width = float(width)
        self.height = float(height)
        self.opacity = min(1.0, max(0.0, float(opacity)))
        self.rotation = float(rotation)

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    def __repr__(self):
        return f"<{type(self).__name__} {self.id} {self.name!r}>"


class ImageLayer(Layer):
    """
    Image layer. original_image is never modified after creation; bitmap is
    always derived from it and the dither parameters at the layer's size.
    """

    kind = 'image'

    def __init__(self, layer_id: str, name: str, original_image: Image.Image,
                 bitmap: MonoBitmap, params: DitherParams, **kwargs):
        super().__init__(layer_id, name, **kwargs)
        self.original_image = original_image
        self.bitmap = bitmap
        self.params = params
        self.applied_sequence = -1

    @property
    def dither_method(self):
        return self.params.method

    @property
    def threshold(self) -> int:
        return self.params.threshold

    @property
    def brightness(self) -> int:
        return self.params.brightness

    @property
    def contrast(self) -> int:
        return self.params.contrast

    @property
    def invert(self) -> bool:
        return self.params.invert

    @property
    def bayer_matrix_size(self) -> int:
        return self.params.bayer_matrix_size

    @property
    def halftone_cell_size(self) -> int:
        return self.params.halftone_cell_size


class TextLayer(Layer):
    """
    Text layer. color is stored for round-tripping only; text always prints black.
    """

    kind = 'text'

    def __init__(self, layer_id: str, name: str, text: str, font_size: int = 24,
                 font_family: str = 'Inter', bold: bool = False, italic: bool = False,
                 align: str = 'left', color: str = '#000000', **kwargs):
        super().__init__(layer_id, name, **kwargs)
        if align not in TEXT_ALIGNMENTS:
            raise ValueError(f"align must be one of {TEXT_ALIGNMENTS}, got {align!r}")
        self.text = text
        self.font_size = int(font_size)
        self.font_family = font_family
        self.bold = bool(bold)
        self.italic = bool(italic)
        self.align = align
        self.color = color


_COMMON_FIELDS = {'name', 'visible', 'locked', 'x', 'y', 'width', 'height', 'opacity', 'rotation'}
_TEXT_FIELDS = {'text', 'font_size', 'font_family', 'bold', 'italic', 'align', 'color'}


class LayerStore:
    """
    Ordered, owned collection of layers with a narrow mutation API.

    At most one layer is selected; the selection always names an existing,
    unlocked layer or is None. Bitmaps are swapped whole under a lock, so a
    reader never sees a partially replaced layer.
    """

    def __init__(self, canvas_width: int = CANVAS_WIDTH):
        self.canvas_width = canvas_width
        self._layers: List[Layer] = []
        self._selected_id: Optional[str] = None
        self._next_id = 1
        self._sequence = itertools.count(1)
        self._lock = threading.RLock()
        self._listeners: List[Callable[[str, Optional[str]], None]] = []

    # ---------- queries ----------

    @property
    def layers(self) -> Tuple[Layer, ...]:
        with self._lock:
            return tuple(self._layers)

    def __iter__(self) -> Iterator[Layer]:
        return iter(self.layers)

    def __len__(self) -> int:
        return len(self._layers)

    def __contains__(self, layer_id) -> bool:
        return self.find(layer_id) is not None

    @property
    def next_id(self) -> int:
        return self._next_id

    @property
    def selected_id(self) -> Optional[str]:
        return self._selected_id

    @property
    def selected_layer(self) -> Optional[Layer]:
        return self.find(self._selected_id) if self._selected_id else None

    def find(self, layer_id: Optional[str]) -> Optional[Layer]:
        with self._lock:
            for layer in self._layers:
                if layer.id == layer_id:
                    return layer
        return None

    def get(self, layer_id: str) -> Layer:
        layer = self.find(layer_id)
        if layer is None:
            raise KeyError(f"No layer with id {layer_id!r}")
        return layer

    def index_of(self, layer_id: str) -> int:
        with self._lock:
            for i, layer in enumerate(self._layers):
                if layer.id == layer_id:
                    return i
        return -1

    # ---------- change notification ----------

    def add_listener(self, callback: Callable[[str, Optional[str]], None]):
        """Register callback(event, layer_id), called after every mutation."""
        self._listeners.append(callback)

    def remove_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self, event: str, layer_id: Optional[str] = None):
        for callback in list(self._listeners):
            callback(event, layer_id)

    # ---------- ids ----------

    def _allocate_id(self, layer_id: Optional[str] = None) -> str:
        if layer_id is None:
            layer_id = f"layer-{self._next_id}"
            self._next_id += 1
            return layer_id
        if self.find(layer_id) is not None:
            raise ValueError(f"Duplicate layer id {layer_id!r}")
        # keep the counter ahead of restored ids
        prefix, _, number = layer_id.rpartition('-')
        if prefix == 'layer' and number.isdigit():
            self._next_id = max(self._next_id, int(number) + 1)
        return layer_id

    def next_sequence(self) -> int:
        """
        Next number in the order of bitmap changes. Reprocess requests and
        synchronous regenerations draw from the same counter.
        """
        with self._lock:
            return next(self._sequence)

    def restore_counter(self, next_id: int):
        """Set the id counter after a project load (never moves it backwards)."""
        self._next_id = max(self._next_id, int(next_id))

    # ---------- mutations ----------

    def add_image_layer(self, original_image: Image.Image, name: Optional[str] = None,
                        params: Optional[DitherParams] = None,
                        x: float = 0.0, y: float = 0.0,
                        width: Optional[float] = None, height: Optional[float] = None,
                        layer_id: Optional[str] = None, select: bool = True,
                        **kwargs) -> ImageLayer:
        """
        Create an image layer and generate its first bitmap.

        Args:
            original_image: Decoded source image; a private copy is kept
            name: Display name (defaults to "Image N")
            params: Dither parameters (defaults to DitherParams())
            x, y: Top-left position on the canvas
            width, height: Layer size (defaults to the image fitted to the canvas width)
            layer_id: Explicit id, used when restoring a project
            select: Select the new layer
            **kwargs: visible, locked, opacity, rotation

        Returns:
            The new ImageLayer
        """
        original = ensure_rgba(original_image).copy()
        params = params or DitherParams()
        if width is None or height is None:
            fw, fh = fit_to_width(original, self.canvas_width)
            width = fw if width is None else width
            height = fh if height is None else height

        bitmap = process_image(original, params, width, height)

        with self._lock:
            layer_id = self._allocate_id(layer_id)
            number = layer_id.rpartition('-')[2]
            layer = ImageLayer(layer_id, name or f"Image {number}", original, bitmap, params,
                               x=x, y=y, width=width, height=height, **kwargs)
            self._layers.append(layer)
            if select and not layer.locked:
                self._selected_id = layer.id

        logger.info("Image layer added: %s %r size=%dx%d method=%s threshold=%d invert=%s",
                    layer.id, layer.name, bitmap.width, bitmap.height,
                    params.method.value, params.threshold, params.invert)
        self._notify('added', layer.id)
        return layer

    def add_text_layer(self, text: str, name: Optional[str] = None,
                       x: float = 50.0, y: float = 50.0,
                       width: Optional[float] = None, height: Optional[float] = None,
                       layer_id: Optional[str] = None, select: bool = True,
                       **options) -> TextLayer:
        """
        Create a text layer. Without an explicit size the box is measured
        from the rendered text.
        """
        text_opts = {k: options.pop(k) for k in list(options) if k in _TEXT_FIELDS}
        font_size = int(text_opts.get('font_size', 24))
        if width is None or height is None:
            mw, mh = measure_text(text, font_size, text_opts.get('font_family', 'Inter'),
                                  text_opts.get('bold', False), text_opts.get('italic', False))
            width = mw if width is None else width
            height = mh if height is None else height

        with self._lock:
            layer_id = self._allocate_id(layer_id)
            number = layer_id.rpartition('-')[2]
            layer = TextLayer(layer_id, name or f"Text {number}", text,
                              x=x, y=y, width=width, height=height, **text_opts, **options)
            self._layers.append(layer)
            if select and not layer.locked:
                self._selected_id = layer.id

        preview = text[:20] + ("..." if len(text) > 20 else "")
        logger.info("Text layer added: %s %r text=%r", layer.id, layer.name, preview)
        self._notify('added', layer.id)
        return layer

    def remove_layer(self, layer_id: str):
        with self._lock:
            layer = self.get(layer_id)
            self._layers.remove(layer)
            if self._selected_id == layer_id:
                self._selected_id = None
        logger.info("Layer removed: %s %r", layer_id, layer.name)
        self._notify('removed', layer_id)

    def toggle_visibility(self, layer_id: str) -> bool:
        with self._lock:
            layer = self.get(layer_id)
            layer.visible = not layer.visible
        self._notify('updated', layer_id)
        return layer.visible

    def toggle_lock(self, layer_id: str) -> bool:
        """
        Lock or unlock a layer. Locking the selected layer clears the
        selection; unlocking a layer selects it.
        """
        with self._lock:
            layer = self.get(layer_id)
            layer.locked = not layer.locked
            if layer.locked and self._selected_id == layer_id:
                self._selected_id = None
            elif not layer.locked:
                self._selected_id = layer_id
        logger.debug("Layer %s %s", layer_id, "locked" if layer.locked else "unlocked")
        self._notify('updated', layer_id)
        self._notify('selection', self._selected_id)
        return layer.locked

    def select_layer(self, layer_id: Optional[str]) -> bool:
        """
        Select a layer, or clear the selection with None.

        Returns:
            False if the layer is locked (selection unchanged), True otherwise

        Raises:
            KeyError: If no layer has this id
        """
        with self._lock:
            if layer_id is not None:
                layer = self.get(layer_id)
                if layer.locked:
                    logger.debug("Refusing to select locked layer %s", layer_id)
                    return False
            self._selected_id = layer_id
        self._notify('selection', layer_id)
        return True

    def move_layer(self, from_index: int, to_index: int):
        """
        Move a layer in the z-order (0 = bottom). Locked layers cannot be dragged.

        Raises:
            IndexError: If an index is out of range
            ValueError: If the layer at from_index is locked
        """
        with self._lock:
            n = len(self._layers)
            if not (0 <= from_index < n and 0 <= to_index < n):
                raise IndexError(f"Cannot move layer {from_index} -> {to_index} in a stack of {n}")
            layer = self._layers[from_index]
            if layer.locked:
                raise ValueError(f"Layer {layer.id} is locked and cannot be reordered")
            self._layers.insert(to_index, self._layers.pop(from_index))
        logger.debug("Layer reordered: %s %d -> %d", layer.id, from_index, to_index)
        self._notify('reordered', layer.id)

    def rename_layer(self, layer_id: str, name: str):
        self.update_layer(layer_id, name=name)

    def update_layer(self, layer_id: str, **updates) -> Layer:
        """
        Change layer fields. For image layers, a change of width, height or of
        any dither parameter regenerates the bitmap before the layer is updated.

        Raises:
            KeyError: Unknown layer id or field
        """
        layer = self.get(layer_id)
        if isinstance(layer, ImageLayer):
            allowed = _COMMON_FIELDS | set(DitherParams.FIELDS)
        else:
            allowed = _COMMON_FIELDS | _TEXT_FIELDS
        unknown = set(updates) - allowed
        if unknown:
            raise KeyError(f"Unknown field(s) for {layer.kind} layer: {sorted(unknown)}")

        param_changes = {k: updates.pop(k) for k in list(updates) if k in DitherParams.FIELDS}
        if 'opacity' in updates:
            updates['opacity'] = min(1.0, max(0.0, float(updates['opacity'])))
        if 'align' in updates and updates['align'] not in TEXT_ALIGNMENTS:
            raise ValueError(f"align must be one of {TEXT_ALIGNMENTS}")

        if isinstance(layer, ImageLayer):
            width = float(updates.get('width', layer.width))
            height = float(updates.get('height', layer.height))
            params = layer.params.replace(**param_changes) if param_changes else layer.params
            resized = target_size(width, height) != layer.bitmap.size
            if resized or params != layer.params:
                bitmap = process_image(layer.original_image, params, width, height)
                with self._lock:
                    for key, value in updates.items():
                        setattr(layer, key, value)
                    layer.params = params
                    layer.bitmap = bitmap
                    # results started before this change are now stale
                    layer.applied_sequence = next(self._sequence)
                logger.debug("Layer %s regenerated at %dx%d", layer_id, bitmap.width, bitmap.height)
                self._notify('updated', layer_id)
                return layer

        with self._lock:
            for key, value in updates.items():
                setattr(layer, key, value)
            if updates.get('locked') and self._selected_id == layer_id:
                self._selected_id = None
        logger.debug("Layer updated: %s %s", layer_id, updates)
        self._notify('updated', layer_id)
        return layer

    def apply_bitmap(self, layer_id: str, bitmap: MonoBitmap, params: DitherParams,
                     sequence: Optional[int] = None,
                     size: Optional[Tuple[int, int]] = None) -> bool:
        """
        Atomically replace an image layer's bitmap and parameters with a
        completed reprocessing result.

        A result carrying a sequence number not newer than the last applied
        one is stale and dropped. So is a result produced for a size (the
        layer size the run used) that no longer matches the layer.

        Returns:
            True if applied, False if dropped (stale or layer gone)
        """
        with self._lock:
            layer = self.find(layer_id)
            if not isinstance(layer, ImageLayer):
                logger.debug("Dropping result for missing layer %s", layer_id)
                return False
            if sequence is not None and sequence <= layer.applied_sequence:
                logger.debug("Dropping stale result #%d for %s (applied #%d)",
                             sequence, layer_id, layer.applied_sequence)
                return False
            expected = target_size(layer.width, layer.height)
            if size is not None and tuple(size) != expected:
                logger.debug("Dropping result for %s made at %dx%d, layer is now %dx%d",
                             layer_id, size[0], size[1], *expected)
                return False
            if bitmap.size != expected:
                logger.warning("Result for %s is %dx%d, expected %dx%d; resizing",
                               layer_id, bitmap.width, bitmap.height, *expected)
                bitmap = bitmap.resized(*expected)
            layer.bitmap = bitmap
            layer.params = params
            if sequence is not None:
                layer.applied_sequence = sequence

        logger.info("Image layer reprocessed: %s %dx%d method=%s",
                    layer_id, bitmap.width, bitmap.height, params.method.value)
        self._notify('reprocessed', layer_id)
        return True

    def clear(self):
        """Remove every layer and reset the id counter (new project)."""
        with self._lock:
            self._layers = []
            self._selected_id = None
            self._next_id = 1
        logger.info("All layers cleared")
        self._notify('cleared')
