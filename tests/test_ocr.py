"""
Tests for phatnguoi.ocr: engines (pytesseract/easyocr mocked) and the pool.
"""

from __future__ import annotations

import asyncio
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from phatnguoi.csgt_client import CaptchaSolveError
from phatnguoi.ocr import (
    EasyOCREngine,
    Recognition,
    RecognitionPool,
    TesseractEngine,
    build_engine,
)


class FakeEngine:
    name = "fake"

    def __init__(self, result=None, delay=0.0):
        self.result = result or Recognition(text="abc12", confidence=90.0)
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def recognize(self, image_bytes: bytes) -> Recognition:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            return self.result
        finally:
            with self._lock:
                self.active -= 1


# ── Engines ────────────────────────────────────────────────


@pytest.mark.unit
def test_tesseract_engine_averages_positive_confidences(captcha_png):
    data = {
        "text": ["", "ab", "c1", "2"],
        "conf": ["-1", "90", "70", "-1"],
    }
    with patch("phatnguoi.ocr.pytesseract") as tess:
        tess.image_to_data.return_value = data
        engine = TesseractEngine(tesseract_cmd="tesseract")
        result = engine.recognize(captcha_png)

    assert result.text == "abc12"
    assert result.confidence == pytest.approx(80.0)
    config = tess.image_to_data.call_args.kwargs["config"]
    assert "--psm 8" in config
    assert "--oem 1" in config
    assert "tessedit_char_whitelist=0123456789abcdefghijklmnopqrstuvwxyz" in config


@pytest.mark.unit
def test_tesseract_engine_no_text(captcha_png):
    with patch("phatnguoi.ocr.pytesseract") as tess:
        tess.image_to_data.return_value = {"text": ["", " "], "conf": ["-1", "-1"]}
        result = TesseractEngine(tesseract_cmd="tesseract").recognize(captcha_png)
    assert result == Recognition(text="", confidence=0.0)


@pytest.mark.unit
def test_tesseract_preprocess_upscales_and_pads(captcha_png):
    with patch("phatnguoi.ocr.pytesseract"):
        engine = TesseractEngine(tesseract_cmd="tesseract", upscale=3)
    img = engine.preprocess(captcha_png)
    # 120x40 upscaled 3x, plus a 10px border on every side
    assert img.size == (120 * 3 + 20, 40 * 3 + 20)


@pytest.mark.unit
def test_easyocr_engine_scales_confidence(captcha_png):
    reader = MagicMock()
    reader.readtext.return_value = [([0, 0], "ab", 0.8), ([0, 0], "c12", 0.6)]
    with patch("phatnguoi.ocr.easyocr") as easyocr_mod:
        easyocr_mod.Reader.return_value = reader
        engine = EasyOCREngine()
        result = engine.recognize(captcha_png)
        engine.recognize(captcha_png)

    assert result.text == "abc12"
    assert result.confidence == pytest.approx(70.0)
    # Reader is built once, lazily
    easyocr_mod.Reader.assert_called_once()


@pytest.mark.unit
def test_easyocr_engine_empty(captcha_png):
    reader = MagicMock()
    reader.readtext.return_value = []
    with patch("phatnguoi.ocr.easyocr") as easyocr_mod:
        easyocr_mod.Reader.return_value = reader
        result = EasyOCREngine().recognize(captcha_png)
    assert result.text == ""
    assert result.confidence == 0.0


@pytest.mark.unit
def test_build_engine():
    with patch("phatnguoi.ocr.pytesseract"):
        assert isinstance(build_engine("tesseract"), TesseractEngine)
    assert isinstance(build_engine("EasyOCR"), EasyOCREngine)
    with pytest.raises(ValueError):
        build_engine("paddle")


# ── Pool ───────────────────────────────────────────────────


@pytest.mark.unit
async def test_pool_recognize_runs_engine():
    engine = FakeEngine()
    pool = RecognitionPool(engine, max_workers=2, timeout_seconds=5)
    pool.start()

    result = await pool.recognize(b"img")

    assert result.text == "abc12"
    assert engine.calls == 1
    await pool.stop()


@pytest.mark.unit
async def test_pool_refuses_work_when_not_started():
    pool = RecognitionPool(FakeEngine(), max_workers=1, timeout_seconds=5)
    with pytest.raises(RuntimeError):
        await pool.recognize(b"img")


@pytest.mark.unit
async def test_pool_refuses_work_after_stop():
    pool = RecognitionPool(FakeEngine(), max_workers=1, timeout_seconds=5)
    pool.start()
    await pool.stop()
    with pytest.raises(RuntimeError):
        await pool.recognize(b"img")


@pytest.mark.unit
async def test_pool_caps_concurrency():
    engine = FakeEngine(delay=0.05)
    pool = RecognitionPool(engine, max_workers=2, timeout_seconds=5)
    pool.start()

    await asyncio.gather(*(pool.recognize(b"img") for _ in range(6)))

    assert engine.calls == 6
    assert engine.max_active <= 2
    await pool.stop()


@pytest.mark.unit
async def test_pool_timeout_raises_captcha_solve_error():
    engine = FakeEngine(delay=0.5)
    pool = RecognitionPool(engine, max_workers=1, timeout_seconds=0.05)
    pool.start()

    with pytest.raises(CaptchaSolveError):
        await pool.recognize(b"img")

    assert pool.status()["busy"] == 0


@pytest.mark.unit
async def test_pool_status_and_drain():
    engine = FakeEngine(delay=0.05)
    pool = RecognitionPool(engine, max_workers=3, timeout_seconds=5)
    pool.start()

    task = asyncio.create_task(pool.recognize(b"img"))
    await asyncio.sleep(0.01)
    busy = pool.status()
    assert busy["busy"] == 1
    assert busy["available"] == 2
    assert busy["total"] == 3
    assert busy["running"] is True

    await pool.drain()
    assert task.done()
    idle = pool.status()
    assert idle["busy"] == 0
    assert idle["utilization"] == 0.0

    await pool.stop()
    assert pool.status()["running"] is False
