"""
Tests for MonoBitmap, size correction and the full image pipeline.
"""
import logging
import numpy as np
import pytest

from conftest import gradient_image, gray_image
from dithering_lib import DitherMethod, DitherParams
from errors import InvalidInput
from pipeline import process_image
from raster import MonoBitmap, rasterize, target_size


CHECKER = [[True, False], [False, True]]


class TestMonoBitmap:

    def test_dimensions(self):
        bitmap = MonoBitmap(np.zeros((3, 5), dtype=bool))
        assert bitmap.size == (5, 3)
        assert bitmap.width == 5
        assert bitmap.height == 3

    def test_empty_rejected(self):
        with pytest.raises(InvalidInput):
            MonoBitmap(np.zeros((0, 4), dtype=bool))

    def test_read_only(self):
        bitmap = MonoBitmap(CHECKER)
        with pytest.raises(ValueError):
            bitmap.ink[0, 0] = False

    def test_copies_input(self):
        source = np.array(CHECKER)
        bitmap = MonoBitmap(source)
        source[0, 0] = False
        assert bitmap.ink[0, 0]

    def test_image_round_trip(self):
        bitmap = MonoBitmap(CHECKER)
        image = bitmap.to_image()
        assert image.mode == '1'
        assert image.getpixel((0, 0)) == 0      # ink prints black
        assert image.getpixel((1, 0)) == 255
        assert MonoBitmap.from_image(image) == bitmap

    def test_invert(self):
        bitmap = MonoBitmap(CHECKER)
        assert bitmap.invert().ink.tolist() == [[False, True], [True, False]]
        assert bitmap.invert().invert() == bitmap

    def test_nearest_resize_stays_binary(self):
        resized = MonoBitmap(CHECKER).resized(4, 4)
        assert resized.ink.tolist() == [
            [True, True, False, False],
            [True, True, False, False],
            [False, False, True, True],
            [False, False, True, True],
        ]

    def test_resize_to_same_size_is_identity(self):
        bitmap = MonoBitmap(CHECKER)
        assert bitmap.resized(2, 2) is bitmap

    def test_pack_rows_full_width(self):
        bitmap = MonoBitmap(np.ones((2, 384), dtype=bool))
        data = bitmap.pack_rows()
        assert len(data) == 2 * 48
        assert set(data) == {0xFF}

    def test_pack_rows_pads_to_byte(self):
        row = np.zeros((1, 10), dtype=bool)
        row[0, 0] = True
        row[0, 9] = True
        assert MonoBitmap(row).pack_rows() == bytes([0x80, 0x40])

    def test_equality_and_hash(self):
        a = MonoBitmap(CHECKER)
        b = MonoBitmap(np.array(CHECKER))
        assert a == b
        assert hash(a) == hash(b)
        assert a != MonoBitmap.blank(2, 2)


class TestRasterize:

    @pytest.mark.parametrize("width, height, expected", [
        (10, 10, (10, 10)), (9.5, 3.4, (10, 3)), (0.2, 0.2, (1, 1)),
    ])
    def test_target_size(self, width, height, expected):
        assert target_size(width, height) == expected

    def test_exact_size_untouched(self, caplog):
        ink = np.ones((3, 4), dtype=bool)
        with caplog.at_level(logging.WARNING):
            bitmap = rasterize(ink, 4, 3)
        assert bitmap.size == (4, 3)
        assert not caplog.records

    def test_mismatch_is_resampled_and_logged(self, caplog):
        ink = np.ones((3, 4), dtype=bool)
        with caplog.at_level(logging.WARNING, logger='thermal_studio.raster'):
            bitmap = rasterize(ink, 8, 6)
        assert bitmap.size == (8, 6)
        assert bitmap.ink.all()
        assert any("mismatch" in r.getMessage() for r in caplog.records)


class TestPipeline:

    @pytest.mark.parametrize("method", list(DitherMethod))
    @pytest.mark.parametrize("width, height", [(50.4, 20.6), (1, 1), (384, 7), (13, 99.5)])
    def test_bitmap_matches_layer_size(self, method, width, height):
        bitmap = process_image(gradient_image(64, 32), DitherParams(method=method), width, height)
        assert bitmap.size == target_size(width, height)

    def test_deterministic(self):
        params = DitherParams(method='atkinson', brightness=140, contrast=120)
        img = gradient_image(80, 40)
        assert process_image(img, params, 60, 30) == process_image(img, params, 60, 30)

    def test_original_not_modified(self):
        img = gradient_image(20, 20)
        before = img.tobytes()
        process_image(img, DitherParams(invert=True), 10, 10)
        assert img.tobytes() == before

    def test_mid_gray_threshold_scenario(self):
        img = gray_image(128, 2, 2, mode='RGBA')
        assert process_image(img, DitherParams(method='threshold', threshold=128), 2, 2).ink_count() == 0
        assert process_image(img, DitherParams(method='threshold', threshold=129), 2, 2).ink_count() == 4
