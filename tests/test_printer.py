"""
Tests for the printer boundary: events, file printer and canvas hand-over.
"""
import pytest

from compositor import compose
from conftest import gray_image
from dithering_lib import DitherParams
from errors import DimensionMismatch
import printer_interface
from printer_interface import FilePrinterClient, PrinterClient, PrintOptions, print_canvas
from raster import MonoBitmap


class RecordingPrinter(PrinterClient):

    def __init__(self):
        super().__init__()
        self.jobs = []

    def print(self, raster, options=None):
        self.jobs.append((raster, options))


@pytest.fixture
def label_store(store):
    store.add_image_layer(gray_image(0, 40, 20), params=DitherParams(method='threshold'), x=8, y=4)
    store.add_text_layer("PRICE", x=60, y=0, font_size=16)
    return store


class TestPrinterClient:

    @pytest.mark.parametrize("method, args", [
        ('connect', ()), ('disconnect', ()), ('print', (None,)), ('get_status', ()), ('dispose', ()),
    ])
    def test_interface_methods_are_abstract(self, method, args):
        with pytest.raises(NotImplementedError):
            getattr(PrinterClient(), method)(*args)

    def test_events_and_unsubscribe(self):
        client = PrinterClient()
        received = []
        unsubscribe = client.on('stateChange', received.append)
        client.emit('stateChange', {'state': 'printing'})
        unsubscribe()
        client.emit('stateChange', {'state': 'idle'})
        assert received == [{'state': 'printing'}]

    def test_unknown_event(self):
        with pytest.raises(ValueError):
            PrinterClient().on('paperJam', print)


class TestPrintOptions:

    def test_defaults(self):
        assert PrintOptions().to_dict() == {'intensity': 0x5D, 'copies': 1}

    @pytest.mark.parametrize("kwargs", [{'intensity': 256}, {'intensity': -1}, {'copies': 0}])
    def test_validation(self, kwargs):
        with pytest.raises(ValueError):
            PrintOptions(**kwargs)


class TestFilePrinter:

    def test_writes_packed_rows(self, label_store, tmp_path):
        path = tmp_path / "job.bin"
        client = FilePrinterClient(path)
        events = []
        for name in ('connected', 'stateChange', 'disconnected'):
            client.on(name, lambda payload, name=name: events.append(name))

        assert not client.is_connected
        client.connect()
        raster = print_canvas(client, label_store, 30)
        assert client.is_connected
        client.disconnect()

        assert path.read_bytes() == raster.pack_rows()
        assert len(path.read_bytes()) == 48 * 30
        assert events == ['connected', 'stateChange', 'stateChange', 'disconnected']
        assert client.get_status() == {'connected': False, 'jobs': 1}

    def test_copies_repeat_job(self, label_store, tmp_path):
        path = tmp_path / "job.bin"
        client = FilePrinterClient(path)
        client.connect()
        raster = print_canvas(client, label_store, 10, PrintOptions(copies=3))
        assert path.read_bytes() == raster.pack_rows() * 3

    def test_print_requires_connection(self, label_store, tmp_path):
        client = FilePrinterClient(tmp_path / "job.bin")
        errors = []
        client.on('error', errors.append)
        with pytest.raises(RuntimeError):
            print_canvas(client, label_store, 10)
        assert len(errors) == 1


def test_printed_raster_is_the_preview_raster(label_store):
    printer = RecordingPrinter()
    options = PrintOptions(intensity=120)
    raster = print_canvas(printer, label_store, 40, options)
    sent, sent_options = printer.jobs[0]
    assert sent is raster
    assert sent == compose(label_store, 40)
    assert sent.width == 384
    assert sent_options is options


def test_narrow_raster_is_not_printed(label_store, monkeypatch):
    monkeypatch.setattr(printer_interface, 'compose', lambda store, height: MonoBitmap.blank(100, height))
    printer = RecordingPrinter()
    with pytest.raises(DimensionMismatch):
        print_canvas(printer, label_store, 10)
    assert printer.jobs == []
