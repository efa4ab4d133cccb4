"""
Tests for Layer 3 — OCR engine, trained data cache and MRZ extraction.
"""
import random

import numpy as np
import pytest
import pytesseract

from error_handlers import EngineError, InitializationError
from layer3_mrz import (
    MRZExtractor,
    PageSegMode,
    TesseractEngine,
    TrainedDataCache,
    extract_mrz,
)


class TestExtractMRZ:
    """Test trailing equal-length block isolation."""

    def test_trailing_run_of_equal_length_lines(self):
        """Lines 1-3 share the last line's length; line 0 does not."""
        raw = "J\nABCDEFGHIJ\nKLMNOPQRST\nUVWXYZABCD"
        assert extract_mrz(raw) == "ABCDEFGHIJ\nKLMNOPQRST\nUVWXYZABCD"

    def test_run_must_be_contiguous_from_end(self):
        raw = "ABCDEFGHIJ\nshort\nKLMNOPQRST\nUVWXYZABCD"
        assert extract_mrz(raw) == "KLMNOPQRST\nUVWXYZABCD"

    def test_empty_input(self):
        assert extract_mrz("") == ""

    def test_trailing_newline_yields_empty(self):
        assert extract_mrz("ABC\nDEF\n") == ""

    def test_single_line(self):
        assert extract_mrz("P<UTO") == "P<UTO"

    def test_td3_below_noise(self, sample_mrz_td3):
        raw = "\n".join(["PASSPORT", "UTOPIA", ""] + sample_mrz_td3)
        assert extract_mrz(raw).split("\n") == sample_mrz_td3

    def test_td1_three_lines(self):
        td1 = [
            "I<UTOD231458907<<<<<<<<<<<<<<<",
            "7408122F1204159UTO<<<<<<<<<<<6",
            "ERIKSSON<<ANNA<MARIA<<<<<<<<<<",
        ]
        raw = "\n".join(["IDENTITY CARD"] + td1)
        assert extract_mrz(raw) == "\n".join(td1)

    def test_output_lines_match_last_line_length(self):
        """Every output line has the original last line's length, or output is empty."""
        rng = random.Random(7)
        alphabet = "ABC<0123 "
        for _ in range(300):
            lines = [
                "".join(rng.choice(alphabet) for _ in range(rng.choice([0, 3, 5, 5, 5, 9])))
                for _ in range(rng.randint(1, 8))
            ]
            raw = "\n".join(lines)
            result = extract_mrz(raw)
            if result == "":
                assert len(lines[-1]) == 0
                continue
            out = result.split("\n")
            assert all(len(line) == len(lines[-1]) for line in out)
            assert out == lines[len(lines) - len(out):]

    def test_deterministic(self, sample_mrz_td3):
        raw = "noise\n" + "\n".join(sample_mrz_td3)
        assert extract_mrz(raw) == extract_mrz(raw)


class TestMRZExtractor:
    """Test the extractor wrapper."""

    def test_extract_none_is_empty(self):
        assert MRZExtractor().extract(None) == ""

    def test_extract_delegates(self, sample_mrz_td3):
        raw = "header\n" + "\n".join(sample_mrz_td3)
        assert MRZExtractor().extract(raw) == "\n".join(sample_mrz_td3)


class TestTesseractEngine:
    """Test Tesseract adapter without invoking the binary."""

    @pytest.fixture
    def tessdata(self, tmp_path):
        (tmp_path / "ocrb.traineddata").write_bytes(b"model")
        return tmp_path

    def test_configure_single_block(self, tessdata):
        handle = TesseractEngine().configure(tessdata, "ocrb", PageSegMode.SINGLE_BLOCK)
        assert handle.language == "ocrb"
        assert handle.mode == PageSegMode.SINGLE_BLOCK
        assert "--psm 6" in handle.tesseract_config
        assert str(tessdata) in handle.tesseract_config
        assert list(PageSegMode) == [PageSegMode.SINGLE_BLOCK]

    def test_configure_missing_trained_data(self, tmp_path):
        with pytest.raises(EngineError):
            TesseractEngine().configure(tmp_path, "ocrb", PageSegMode.SINGLE_BLOCK)

    def test_configure_without_directory(self):
        with pytest.raises(EngineError):
            TesseractEngine().configure(None, "ocrb", PageSegMode.SINGLE_BLOCK)

    def test_recognize_strips_page_terminator(self, tessdata, monkeypatch):
        calls = {}

        def fake_image_to_string(image, lang=None, config="", timeout=0):
            calls['lang'] = lang
            calls['config'] = config
            calls['shape'] = image.shape
            return "LINE ONE\nLINE TWO\n\x0c"

        monkeypatch.setattr(pytesseract, "image_to_string", fake_image_to_string)
        engine = TesseractEngine()
        handle = engine.configure(tessdata, "ocrb", PageSegMode.SINGLE_BLOCK)
        image = np.zeros((20, 40, 3), dtype=np.uint8)

        assert engine.recognize(handle, image) == "LINE ONE\nLINE TWO"
        assert calls['lang'] == "ocrb"
        assert "--psm 6" in calls['config']
        assert calls['shape'] == (20, 40, 3)

    def test_recognize_wraps_tesseract_errors(self, tessdata, monkeypatch):
        def broken(*args, **kwargs):
            raise pytesseract.TesseractError(1, "Failed loading language 'ocrb'")

        monkeypatch.setattr(pytesseract, "image_to_string", broken)
        engine = TesseractEngine()
        handle = engine.configure(tessdata, "ocrb", PageSegMode.SINGLE_BLOCK)

        with pytest.raises(EngineError) as exc_info:
            engine.recognize(handle, np.zeros((4, 4, 3), dtype=np.uint8))
        assert exc_info.value.error_code == "OCR_ENGINE_FAILED"


class TestTrainedDataCache:
    """Test trained data caching."""

    def test_copies_asset_into_tessdata(self, tmp_path):
        assets = tmp_path / "assets"
        assets.mkdir()
        (assets / "ocrb.traineddata").write_bytes(b"trained")

        path = TrainedDataCache(assets, tmp_path / "cache").resolve("ocrb.traineddata")

        assert path == tmp_path / "cache" / "tessdata" / "ocrb.traineddata"
        assert path.read_bytes() == b"trained"
        assert not path.with_suffix(".traineddata.part").exists()

    def test_reuses_cached_copy(self, tmp_path):
        assets = tmp_path / "assets"
        assets.mkdir()
        (assets / "ocrb.traineddata").write_bytes(b"first")
        cache = TrainedDataCache(assets, tmp_path / "cache")
        cache.resolve("ocrb.traineddata")

        (assets / "ocrb.traineddata").write_bytes(b"second")
        path = cache.resolve("ocrb.traineddata")

        assert path.read_bytes() == b"first"

    def test_missing_asset_raises_initialization_error(self, tmp_path):
        cache = TrainedDataCache(tmp_path / "assets", tmp_path / "cache")
        with pytest.raises(InitializationError) as exc_info:
            cache.resolve("ocrb.traineddata")
        assert exc_info.value.to_dict()["error_kind"] == "INITIALIZATION_FAILURE"
