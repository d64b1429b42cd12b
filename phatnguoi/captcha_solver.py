"""
Captcha solvers for csgt.vn text captchas.

Three interchangeable backends behind one contract,
solve(image_bytes, content_type) -> CaptchaSolution:

- OCRCaptchaSolver: local OCR through the RecognitionPool, with a static
  confusion-table correction pass for low-confidence reads.
- AutocaptchaSolver: paid autocaptcha.pro image-to-text API.
- LLMCaptchaSolver: Claude vision.

One method per solver instance; the lookup pipeline does not fall back
between backends.
"""

from __future__ import annotations

import base64
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO

import anthropic
import httpx
from PIL import Image

from phatnguoi.config import settings
from phatnguoi.csgt_client import CaptchaSolveError
from phatnguoi.ocr import RecognitionPool

logger = logging.getLogger(__name__)

# Characters OCR commonly confuses on this captcha font.
CONFUSION_TABLE = {
    "0": "O", "O": "0",
    "1": "l", "l": "1",
    "5": "S", "S": "5",
    "6": "G", "G": "6",
    "8": "B", "B": "8",
}

_MIN_EXPECTED_LENGTH = 3
_MAX_EXPECTED_LENGTH = 10

_WHITESPACE = re.compile(r"\s+")

_CAPTCHA_PROMPT = (
    "This image is a short text captcha made of lowercase letters and digits. "
    "Return ONLY the characters shown, with no spaces and nothing else."
)


@dataclass(frozen=True)
class CaptchaSolution:
    text: str
    confidence: float | None = None
    corrected: bool = False
    low_confidence: bool = False


def clean_captcha_text(text: str | None) -> str:
    return _WHITESPACE.sub("", text or "")


def apply_confusion_corrections(text: str) -> str:
    """Swap every character found in CONFUSION_TABLE for its look-alike."""
    return "".join(CONFUSION_TABLE.get(ch, ch) for ch in text)


def log_captcha_failure(image_bytes: bytes, last_text: str) -> None:
    """Log diagnostic info for an unsolvable captcha. Never raises."""
    try:
        img = Image.open(BytesIO(image_bytes))
        logger.error(
            "CAPTCHA_DIAGNOSTIC: solver failed. Last text: %r. "
            "Image: %dx%d mode=%s size=%d bytes",
            last_text, img.width, img.height, img.mode, len(image_bytes),
        )
    except Exception:
        logger.error(
            "CAPTCHA_DIAGNOSTIC: solver failed. Last text: %r. "
            "Image size: %d bytes (could not open)",
            last_text, len(image_bytes),
        )

    if settings.captcha_debug_dir:
        try:
            os.makedirs(settings.captcha_debug_dir, exist_ok=True)
            ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
            path = os.path.join(settings.captcha_debug_dir, f"captcha_fail_{ts}.png")
            with open(path, "wb") as f:
                f.write(image_bytes)
            logger.error("CAPTCHA_DIAGNOSTIC: Saved failed captcha to %s", path)
        except Exception:
            logger.warning("Failed to save captcha debug image", exc_info=True)


def _check_length(text: str, backend: str) -> None:
    if not _MIN_EXPECTED_LENGTH <= len(text) <= _MAX_EXPECTED_LENGTH:
        logger.info(
            "%s captcha has unusual length %d: %r", backend, len(text), text,
        )


# ---------------------------------------------------------------------------
# OCR
# ---------------------------------------------------------------------------

class OCRCaptchaSolver:
    """Solve captchas with the local OCR pool."""

    def __init__(
        self,
        pool: RecognitionPool,
        correction_threshold: float | None = None,
        low_confidence_threshold: float | None = None,
    ):
        self._pool = pool
        self._correction_threshold = (
            correction_threshold if correction_threshold is not None
            else settings.captcha_correction_threshold
        )
        self._low_confidence_threshold = (
            low_confidence_threshold if low_confidence_threshold is not None
            else settings.captcha_low_confidence_threshold
        )

    async def solve(self, image_bytes: bytes, content_type: str = "image/png") -> CaptchaSolution:
        recognition = await self._pool.recognize(image_bytes)
        raw = clean_captcha_text(recognition.text)
        if not raw:
            log_captcha_failure(image_bytes, recognition.text)
            raise CaptchaSolveError("OCR returned empty text")

        confidence = recognition.confidence
        text = raw
        corrected = False
        if confidence < self._correction_threshold:
            text = apply_confusion_corrections(raw)
            corrected = text != raw
            if corrected:
                logger.debug(
                    "Applied confusion corrections: %r -> %r (conf=%.1f)",
                    raw, text, confidence,
                )

        low_confidence = confidence < self._low_confidence_threshold
        if low_confidence:
            logger.warning(
                "Low OCR confidence %.1f for captcha %r", confidence, text,
            )

        _check_length(text, "OCR")
        logger.info("OCR captcha solved: text=%r conf=%.1f", text, confidence)
        return CaptchaSolution(
            text=text,
            confidence=confidence,
            corrected=corrected,
            low_confidence=low_confidence,
        )


# ---------------------------------------------------------------------------
# autocaptcha.pro
# ---------------------------------------------------------------------------

class AutocaptchaSolver:
    """Solve captchas with the autocaptcha.pro image-to-text API."""

    def __init__(
        self,
        api_key: str | None = None,
        url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key or settings.autocaptcha_key
        if not self._api_key:
            raise ValueError("PHATNGUOI_AUTOCAPTCHA_KEY must be set for autocaptcha solving")
        self._url = url or settings.autocaptcha_url
        self._timeout = timeout or settings.autocaptcha_timeout_seconds
        self._transport = transport

    async def solve(self, image_bytes: bytes, content_type: str = "image/png") -> CaptchaSolution:
        b64 = base64.b64encode(image_bytes).decode("ascii")
        payload = {
            "key": self._api_key,
            "type": "imagetotext",
            "img": f"data:{content_type};base64,{b64}",
            "casesensitive": False,
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            raise CaptchaSolveError(f"Autocaptcha API error: {e!r}") from e
        except ValueError as e:
            raise CaptchaSolveError("Autocaptcha returned a non-JSON response") from e

        if not isinstance(data, dict):
            raise CaptchaSolveError(f"Autocaptcha returned unexpected payload: {data!r}")
        if data.get("success") is False:
            raise CaptchaSolveError(
                f"Autocaptcha failed: {data.get('message') or data.get('error') or 'unknown error'}"
            )

        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        raw = data.get("captcha") or data.get("result") or nested.get("text") or data.get("text")
        text = clean_captcha_text(str(raw) if raw is not None else "")
        if not text:
            log_captcha_failure(image_bytes, "")
            raise CaptchaSolveError("Autocaptcha returned no captcha text")

        _check_length(text, "Autocaptcha")
        logger.info("Autocaptcha solved: text=%r", text)
        return CaptchaSolution(text=text)


# ---------------------------------------------------------------------------
# LLM
# ---------------------------------------------------------------------------

class LLMCaptchaSolver:
    """Solve captchas using the Claude vision API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ):
        self._api_key = api_key or settings.captcha_llm_api_key
        self._model = model or settings.captcha_llm_model
        if not self._api_key:
            raise ValueError(
                "PHATNGUOI_CAPTCHA_LLM_API_KEY must be set for LLM captcha solving"
            )
        self._client = anthropic.AsyncAnthropic(api_key=self._api_key)

    async def solve(self, image_bytes: bytes, content_type: str = "image/png") -> CaptchaSolution:
        b64 = base64.b64encode(image_bytes).decode("ascii")

        try:
            resp = await self._client.messages.create(
                model=self._model,
                max_tokens=16,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image",
                                "source": {
                                    "type": "base64",
                                    "media_type": content_type,
                                    "data": b64,
                                },
                            },
                            {"type": "text", "text": _CAPTCHA_PROMPT},
                        ],
                    }
                ],
            )
        except anthropic.APIError as e:
            raise CaptchaSolveError(f"LLM API error: {e}") from e

        raw = resp.content[0].text if resp.content else ""
        logger.debug("LLM captcha response: %r", raw)
        text = clean_captcha_text(raw)
        if not text:
            log_captcha_failure(image_bytes, raw)
            raise CaptchaSolveError(f"LLM returned an empty response: {raw!r}")

        _check_length(text, "LLM")
        logger.info("LLM captcha solver: text=%r", text)
        return CaptchaSolution(text=text)


def build_captcha_solver(method: str | None = None, pool: RecognitionPool | None = None):
    """Build the solver selected by method (defaults to settings.captcha_method)."""
    method = (method or settings.captcha_method).lower()
    logger.info("Initializing %s captcha solver", method)
    if method == "ocr":
        if pool is None:
            raise ValueError("OCR captcha solving needs a RecognitionPool")
        return OCRCaptchaSolver(pool)
    if method == "autocaptcha":
        return AutocaptchaSolver()
    if method == "llm":
        return LLMCaptchaSolver()
    raise ValueError(f"Unknown captcha method: {method!r}")
