"""
Project files: JSON documents holding every layer plus the canvas height.

Image layers are stored as their original image (PNG data URL) and scalar
dither parameters only. Bitmaps are rebuilt from those on load.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from dithering_lib import DitherMethod, DitherParams
from errors import DecodeError, ProjectFormatError
from layer_store import ImageLayer, Layer, LayerStore, TextLayer
from utils import data_url_to_image, image_to_data_url

logger = logging.getLogger('thermal_studio.project')

__all__ = [
    'PROJECT_VERSION',
    'PROJECT_EXTENSION',
    'DEFAULT_CANVAS_HEIGHT',
    'to_document',
    'from_document',
    'save_project',
    'load_project',
]

PROJECT_VERSION = "1.0.0"
PROJECT_EXTENSION = ".json"
DEFAULT_CANVAS_HEIGHT = 800

# attribute name -> JSON key
_COMMON_KEYS = {
    'name': 'name', 'visible': 'visible', 'locked': 'locked',
    'x': 'x', 'y': 'y', 'width': 'width', 'height': 'height',
    'opacity': 'opacity', 'rotation': 'rotation',
}
_PARAM_KEYS = {
    'threshold': 'threshold', 'brightness': 'brightness', 'contrast': 'contrast',
    'invert': 'invert', 'bayer_matrix_size': 'bayerMatrixSize',
    'halftone_cell_size': 'halftoneCellSize',
}
_TEXT_KEYS = {
    'text': 'text', 'font_size': 'fontSize', 'font_family': 'fontFamily',
    'bold': 'bold', 'italic': 'italic', 'align': 'align', 'color': 'color',
}


def _layer_to_dict(layer: Layer) -> Dict:
    data = {'id': layer.id, 'type': layer.kind}
    for attr, key in _COMMON_KEYS.items():
        data[key] = getattr(layer, attr)
    if isinstance(layer, ImageLayer):
        data['originalImageData'] = image_to_data_url(layer.original_image)
        data['ditherMethod'] = layer.params.method.value
        for attr, key in _PARAM_KEYS.items():
            data[key] = getattr(layer.params, attr)
    elif isinstance(layer, TextLayer):
        for attr, key in _TEXT_KEYS.items():
            data[key] = getattr(layer, attr)
    return data


def to_document(store: LayerStore, canvas_height: int) -> Dict:
    """Serializable project document for the current store."""
    return {
        'version': PROJECT_VERSION,
        'layers': [_layer_to_dict(layer) for layer in store.layers],
        'canvasHeight': int(canvas_height),
        'savedAt': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        'nextId': store.next_id,
        'selectedLayerId': store.selected_id,
    }


def validate_document(document) -> List[str]:
    """
    Check the structure of a project document.

    Returns:
        List of problems (empty when the document is usable)
    """
    errors = []
    if not isinstance(document, dict):
        return ["Project must be a JSON object"]
    if not document.get('version'):
        errors.append("Missing 'version'")
    elif str(document['version']).split('.')[0] != PROJECT_VERSION.split('.')[0]:
        errors.append(f"Unsupported project version {document['version']!r}")
    if not isinstance(document.get('layers'), list):
        errors.append("'layers' must be a list")
    else:
        for i, layer in enumerate(document['layers']):
            if not isinstance(layer, dict):
                errors.append(f"Layer {i} must be an object")
            elif layer.get('type') not in ('image', 'text', 'shape'):
                errors.append(f"Layer {i} has unknown type {layer.get('type')!r}")
    height = document.get('canvasHeight', DEFAULT_CANVAS_HEIGHT)
    if isinstance(height, bool) or not isinstance(height, (int, float)) or height <= 0:
        errors.append(f"'canvasHeight' must be a positive number, got {height!r}")
    return errors


def _common_kwargs(data: Dict) -> Dict:
    kwargs = {}
    for attr, key in _COMMON_KEYS.items():
        if key in data and attr != 'name':
            kwargs[attr] = data[key]
    return kwargs


def _params_from_dict(data: Dict) -> DitherParams:
    values = {'method': DitherMethod.parse(data.get('ditherMethod') or 'steinberg')}
    for attr, key in _PARAM_KEYS.items():
        if data.get(key) is not None:
            values[attr] = data[key]
    return DitherParams(**values)


def _restore_layer(store: LayerStore, data: Dict) -> Optional[Layer]:
    kind = data.get('type')
    common = _common_kwargs(data)
    if kind == 'image':
        original = data_url_to_image(data.get('originalImageData') or '')
        return store.add_image_layer(original, name=data.get('name'), params=_params_from_dict(data),
                                     layer_id=data.get('id'), select=False, **common)
    if kind == 'text':
        text_opts = {attr: data[key] for attr, key in _TEXT_KEYS.items()
                     if key in data and attr != 'text'}
        return store.add_text_layer(data.get('text', ''), name=data.get('name'),
                                    layer_id=data.get('id'), select=False, **common, **text_opts)
    logger.warning("Skipping unsupported %s layer %s", kind, data.get('id'))
    return None


def from_document(store: LayerStore, document: Dict,
                  default_height: int = DEFAULT_CANVAS_HEIGHT) -> int:
    """
    Replace the store's contents with the layers of a project document.

    Every image bitmap is regenerated, one layer after another, before this
    returns. Layers whose image payload cannot be decoded are skipped.

    Returns:
        The project's canvas height, or default_height if it has none

    Raises:
        ProjectFormatError: If the document structure is invalid
    """
    errors = validate_document(document)
    if errors:
        raise ProjectFormatError("Invalid project: " + "; ".join(errors))

    store.clear()
    restored = 0
    for i, data in enumerate(document['layers']):
        try:
            layer = _restore_layer(store, data)
        except (DecodeError, ValueError, KeyError, TypeError) as e:
            logger.error("Skipping layer %d (%s): %s", i, data.get('id'), e)
            continue
        if layer is not None:
            restored += 1

    if document.get('nextId') is not None:
        store.restore_counter(document['nextId'])
    selected = document.get('selectedLayerId')
    if selected and selected in store:
        store.select_layer(selected)

    height = int(round(document.get('canvasHeight', default_height)))
    logger.info("Project loaded: %d/%d layer(s), canvas height %d, saved %s",
                restored, len(document['layers']), height, document.get('savedAt', 'unknown'))
    return height


def save_project(store: LayerStore, canvas_height: int, filepath: Union[str, os.PathLike]) -> Dict:
    """Write the project as indented JSON. Returns the written document."""
    document = to_document(store, canvas_height)
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump(document, f, indent=2)
    logger.info("Project saved to %s (%d layer(s))", filepath, len(document['layers']))
    return document


def load_project(store: LayerStore, filepath: Union[str, os.PathLike],
                 default_height: int = DEFAULT_CANVAS_HEIGHT) -> int:
    """
    Read a project file into the store.

    Returns:
        Canvas height stored in the project

    Raises:
        ProjectFormatError: If the file is not valid JSON or not a project
    """
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            document = json.load(f)
    except json.JSONDecodeError as e:
        raise ProjectFormatError(f"Project file {filepath} is not valid JSON: {e}") from e
    return from_document(store, document, default_height)
