"""
Boundary to the thermal printer transport.

The transport (Bluetooth pairing, job framing, status polling) lives
outside this package. PrinterClient is the interface it implements;
print_canvas() hands it the composited raster, unchanged.
"""

import logging
import os
from typing import Callable, Dict, List, Optional, Union

from compositor import compose
from errors import DimensionMismatch
from layer_store import CANVAS_WIDTH, LayerStore
from raster import MonoBitmap

logger = logging.getLogger('thermal_studio.printer')

__all__ = [
    'PRINTER_EVENTS',
    'DEFAULT_INTENSITY',
    'PrintOptions',
    'PrinterClient',
    'FilePrinterClient',
    'print_canvas',
]

PRINTER_EVENTS = ('connected', 'disconnected', 'stateChange', 'error')

# Print head energy the stock firmware uses
DEFAULT_INTENSITY = 0x5D


class PrintOptions:
    """Per-job settings passed through to the transport."""

    def __init__(self, intensity: int = DEFAULT_INTENSITY, copies: int = 1):
        if not 0 <= int(intensity) <= 255:
            raise ValueError(f"Print intensity must be 0..255, got {intensity}")
        if int(copies) < 1:
            raise ValueError(f"Copies must be at least 1, got {copies}")
        self.intensity = int(intensity)
        self.copies = int(copies)

    def to_dict(self) -> Dict:
        return {'intensity': self.intensity, 'copies': self.copies}

    def __repr__(self):
        return f"PrintOptions(intensity={self.intensity}, copies={self.copies})"


class PrinterClient:
    """
    Interface of a printer transport.

    Subclasses implement connect, disconnect, print, get_status and dispose,
    and call emit() for 'connected', 'disconnected', 'stateChange' and 'error'.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {name: [] for name in PRINTER_EVENTS}

    def on(self, event: str, handler: Callable) -> Callable[[], None]:
        """
        Subscribe to a printer event.

        Returns:
            A function that removes the subscription
        """
        if event not in self._handlers:
            raise ValueError(f"Unknown printer event {event!r}; expected one of {PRINTER_EVENTS}")
        self._handlers[event].append(handler)

        def unsubscribe():
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)
        return unsubscribe

    def emit(self, event: str, payload=None):
        if event not in self._handlers:
            raise ValueError(f"Unknown printer event {event!r}")
        logger.debug("Printer event %s: %s", event, payload)
        for handler in list(self._handlers[event]):
            handler(payload)

    @property
    def is_connected(self) -> bool:
        return False

    def connect(self):
        raise NotImplementedError

    def disconnect(self):
        raise NotImplementedError

    def print(self, raster: MonoBitmap, options: Optional[PrintOptions] = None):
        raise NotImplementedError

    def get_status(self) -> Optional[Dict]:
        raise NotImplementedError

    def dispose(self):
        raise NotImplementedError


class FilePrinterClient(PrinterClient):
    """
    Printer that writes each job's packed rows to a file (1 bit per dot,
    MSB first, 48 bytes per row). Used for offline batch output.
    """

    def __init__(self, filepath: Union[str, os.PathLike]):
        super().__init__()
        self.filepath = filepath
        self._connected = False
        self.jobs = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self):
        self._connected = True
        self.emit('connected', {'target': str(self.filepath)})

    def disconnect(self):
        if self._connected:
            self._connected = False
            self.emit('disconnected')

    def print(self, raster: MonoBitmap, options: Optional[PrintOptions] = None):
        if not self._connected:
            error = RuntimeError("Printer is not connected")
            self.emit('error', error)
            raise error
        options = options or PrintOptions()
        self.emit('stateChange', {'state': 'printing'})
        data = raster.pack_rows() * options.copies
        with open(self.filepath, 'wb') as f:
            f.write(data)
        self.jobs += 1
        self.emit('stateChange', {'state': 'idle'})
        logger.info("Wrote %d byte(s) (%dx%d, %d cop%s) to %s", len(data), raster.width,
                    raster.height, options.copies, 'y' if options.copies == 1 else 'ies',
                    self.filepath)

    def get_status(self) -> Optional[Dict]:
        return {'connected': self._connected, 'jobs': self.jobs}

    def dispose(self):
        self.disconnect()
        for handlers in self._handlers.values():
            handlers.clear()


def print_canvas(client: PrinterClient, store: LayerStore, height: int,
                 options: Optional[PrintOptions] = None) -> MonoBitmap:
    """
    Compose the canvas and send it to the printer.

    The raster handed over is exactly the one the preview shows.

    Returns:
        The raster that was printed
    """
    raster = compose(store, height)
    if raster.width != CANVAS_WIDTH:
        raise DimensionMismatch(f"Print raster must be {CANVAS_WIDTH} px wide, got {raster.width}")
    logger.info("Printing %dx%d canvas (%d layer(s), %d ink dots)",
                raster.width, raster.height, len(store), raster.ink_count())
    client.print(raster, options)
    return raster
