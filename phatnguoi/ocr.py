"""
OCR engines and the recognition pool used by the captcha solver.

The pool is an explicit object with a start/drain/stop lifecycle, built by
main (or the REST app lifespan) and injected into the solver. Nothing is
initialised at import time.

Engines are synchronous and CPU bound; the pool runs them in worker threads
via asyncio.to_thread, capped by a semaphore sized at construction.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Protocol

import cv2
import easyocr
import numpy as np
import pytesseract
from PIL import Image, ImageFilter, ImageOps

from phatnguoi.config import settings
from phatnguoi.csgt_client import CaptchaSolveError

logger = logging.getLogger(__name__)

# csgt.vn captchas are lowercase alphanumerics
CAPTCHA_CHARSET = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class Recognition:
    text: str
    confidence: float  # 0-100


class OCREngine(Protocol):
    name: str

    def recognize(self, image_bytes: bytes) -> Recognition: ...


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------

class TesseractEngine:
    """Tesseract (LSTM) with an OpenCV binarisation pass."""

    name = "tesseract"

    def __init__(self, tesseract_cmd: str | None = None, threshold: int = 140, upscale: int = 3):
        self._threshold = threshold
        self._upscale = upscale
        pytesseract.pytesseract.tesseract_cmd = tesseract_cmd or settings.tesseract_cmd

    def preprocess(self, image_bytes: bytes) -> Image.Image:
        """Grayscale, autocontrast, upscale, blur, threshold, then pad.

        Upscaling happens before the threshold so LANCZOS keeps subpixel
        detail; the blur smooths upscale artifacts before binarisation.
        """
        img = Image.open(BytesIO(image_bytes)).convert("L")
        img = ImageOps.autocontrast(img, cutoff=5)
        img = img.resize((img.width * self._upscale, img.height * self._upscale), Image.LANCZOS)
        img = img.filter(ImageFilter.MedianFilter(3))

        img_array = np.array(img, dtype=np.uint8)
        _, img_array = cv2.threshold(img_array, self._threshold, 255, cv2.THRESH_BINARY)

        img = Image.fromarray(img_array)
        return ImageOps.expand(img, border=10, fill=255)

    def recognize(self, image_bytes: bytes) -> Recognition:
        img = self.preprocess(image_bytes)
        tess_config = f"--psm 8 --oem 1 -c tessedit_char_whitelist={CAPTCHA_CHARSET}"
        data = pytesseract.image_to_data(
            img, config=tess_config, output_type=pytesseract.Output.DICT,
        )
        confidences = [
            float(c) for c, t in zip(data["conf"], data["text"])
            if t.strip() and float(c) > 0
        ]
        avg_conf = sum(confidences) / len(confidences) if confidences else 0.0
        text = "".join(t for t in data["text"] if t.strip())
        return Recognition(text=text, confidence=avg_conf)


class EasyOCREngine:
    """EasyOCR deep-learning reader. The reader is heavy, so it is built lazily."""

    name = "easyocr"

    def __init__(self, languages: list[str] | None = None):
        self._languages = languages or ["en"]
        self._reader: easyocr.Reader | None = None

    def _get_reader(self) -> easyocr.Reader:
        if self._reader is None:
            logger.info("Initializing EasyOCR reader (languages=%s)", self._languages)
            self._reader = easyocr.Reader(self._languages, gpu=False, verbose=False)
        return self._reader

    def recognize(self, image_bytes: bytes) -> Recognition:
        img = Image.open(BytesIO(image_bytes)).convert("L")
        img = ImageOps.autocontrast(img, cutoff=5)
        results = self._get_reader().readtext(np.array(img), allowlist=CAPTCHA_CHARSET)
        if not results:
            return Recognition(text="", confidence=0.0)
        text = "".join(r[1] for r in results)
        confidence = sum(r[2] for r in results) / len(results) * 100
        return Recognition(text=text, confidence=confidence)


def build_engine(name: str | None = None) -> OCREngine:
    """Return the OCR engine named in settings (or by argument)."""
    name = (name or settings.ocr_engine).lower()
    if name == "tesseract":
        return TesseractEngine()
    if name == "easyocr":
        return EasyOCREngine()
    raise ValueError(f"Unknown OCR engine: {name!r}")


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------

class RecognitionPool:
    """Bounded pool of OCR workers with an explicit lifecycle."""

    def __init__(
        self,
        engine: OCREngine,
        max_workers: int | None = None,
        timeout_seconds: float | None = None,
    ):
        self._engine = engine
        self._max_workers = max_workers or settings.ocr_max_workers
        self._timeout = timeout_seconds or settings.ocr_timeout_seconds
        self._semaphore = asyncio.Semaphore(self._max_workers)
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info(
            "OCR pool started (engine=%s, workers=%d, timeout=%.1fs)",
            self._engine.name, self._max_workers, self._timeout,
        )

    async def drain(self) -> None:
        """Wait until every in-flight recognition has finished."""
        await self._idle.wait()

    async def stop(self) -> None:
        """Refuse new work, then wait for in-flight recognitions."""
        if not self._running:
            return
        self._running = False
        await self.drain()
        logger.info("OCR pool stopped")

    def status(self) -> dict:
        busy = self._in_flight
        return {
            "engine": self._engine.name,
            "running": self._running,
            "total": self._max_workers,
            "busy": busy,
            "available": max(self._max_workers - busy, 0),
            "utilization": round(busy / self._max_workers * 100, 1),
        }

    async def recognize(self, image_bytes: bytes) -> Recognition:
        if not self._running:
            raise RuntimeError("OCR pool is not running")

        async with self._semaphore:
            self._in_flight += 1
            self._idle.clear()
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self._engine.recognize, image_bytes),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "%s OCR timed out after %.1fs", self._engine.name, self._timeout,
                )
                raise CaptchaSolveError(f"OCR timed out after {self._timeout:.1f}s")
            finally:
                self._in_flight -= 1
                if self._in_flight == 0:
                    self._idle.set()
