"""
csgt.vn site session client.

Performs the four network calls of one violation lookup against csgt.vn:

1. init_session       GET the home page to obtain session cookies.
2. fetch_captcha_image GET the captcha image bound to that session.
3. validate_captcha   POST the plate + solved captcha to the AJAX endpoint.
4. fetch_result       GET the result page the AJAX call redirects to.

DESIGN PRINCIPLES:
1. One client (one cookie jar) per lookup call. Never shared across plates.
2. All calls have timeouts (30s default).
3. Every failure is classified HERE, where the response is received, into a
   tagged CSGTError subclass. Nothing downstream inspects message text.
4. This client never retries. The lookup pipeline owns the retry policy.
5. All methods are async.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from urllib.parse import urljoin

import httpx

from phatnguoi.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
    SESSION_INIT_FAILED = "session_init_failed"
    CAPTCHA_FETCH_FAILED = "captcha_fetch_failed"
    CAPTCHA_SOLVE_FAILED = "captcha_solve_failed"
    CAPTCHA_VALIDATION_FAILED = "captcha_validation_failed"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    PARSE_FAILED = "parse_failed"
    INVALID_INPUT = "invalid_input"
    NETWORK_ERROR = "network_error"
    HTTP_ERROR = "http_error"


class CSGTError(Exception):
    """Base exception for csgt.vn lookup errors."""

    kind: ErrorKind = ErrorKind.HTTP_ERROR
    retryable: bool = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SessionInitError(CSGTError):
    """Could not establish session cookies. Always treated as transient."""
    kind = ErrorKind.SESSION_INIT_FAILED
    retryable = True


class CaptchaFetchError(CSGTError):
    """Captcha image download failed."""
    kind = ErrorKind.CAPTCHA_FETCH_FAILED
    retryable = True


class CaptchaSolveError(CSGTError):
    """OCR/solver produced empty or unusable text."""
    kind = ErrorKind.CAPTCHA_SOLVE_FAILED
    retryable = True


class CaptchaValidationError(CSGTError):
    """The site rejected the solved captcha."""
    kind = ErrorKind.CAPTCHA_VALIDATION_FAILED
    retryable = True


class ForbiddenError(CSGTError):
    """403, usually rate limiting."""
    kind = ErrorKind.FORBIDDEN
    retryable = True


class NotFoundError(CSGTError):
    """404, usually an expired session or captcha."""
    kind = ErrorKind.NOT_FOUND
    retryable = True


class ServerError(CSGTError):
    """5xx from csgt.vn."""
    kind = ErrorKind.SERVER_ERROR
    retryable = True


class CSGTTimeoutError(CSGTError):
    """Request timed out."""
    kind = ErrorKind.TIMEOUT
    retryable = True


class ParseError(CSGTError):
    """Result page had violation markers but no recognizable structure."""
    kind = ErrorKind.PARSE_FAILED


class InvalidInputError(CSGTError):
    """Bad plate or vehicle type, caught before any network call."""
    kind = ErrorKind.INVALID_INPUT


class NetworkError(CSGTError):
    """Connection refused, DNS failure and other transport errors."""
    kind = ErrorKind.NETWORK_ERROR


class CSGTHTTPError(CSGTError):
    """Any other unexpected HTTP status."""
    kind = ErrorKind.HTTP_ERROR


def classify_status(status_code: int, url: str) -> CSGTError:
    """Map a non-success HTTP status to the matching tagged error."""
    if status_code == 404:
        return NotFoundError(
            "Website endpoint may have changed or session expired", status_code,
        )
    if status_code == 403:
        return ForbiddenError("Access forbidden, possible rate limiting", status_code)
    if status_code >= 500:
        return ServerError(f"Server error {status_code} from {url}", status_code)
    return CSGTHTTPError(f"Unexpected HTTP {status_code} from {url}", status_code)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CaptchaImage:
    content: bytes
    content_type: str


@dataclass(frozen=True)
class AjaxValidation:
    """Successful response of the AJAX captcha validation call."""
    success: bool
    redirect_url: str | None = None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class CSGTClient:
    """Async, cookie-bearing client for one lookup call against csgt.vn."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = (base_url or settings.csgt_base_url).rstrip("/")
        self._lookup_url = urljoin(self._base_url + "/", settings.csgt_lookup_path.lstrip("/"))
        self._captcha_url = urljoin(self._base_url + "/", settings.csgt_captcha_path.lstrip("/"))
        self._validate_url = urljoin(self._base_url + "/", settings.csgt_validate_path.lstrip("/"))
        self._captcha_debug_dir = settings.captcha_debug_dir
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.csgt_request_timeout_seconds,
            headers={
                "User-Agent": settings.csgt_user_agent,
                "Accept-Language": "en,vi;q=0.9",
            },
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> CSGTClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Session + captcha
    # ------------------------------------------------------------------

    async def init_session(self) -> None:
        """GET the home page so the cookie jar picks up the session cookie."""
        try:
            resp = await self._client.get(self._base_url)
        except httpx.HTTPError as e:
            raise SessionInitError(f"Session init failed: {e!r}") from e
        if resp.status_code >= 400:
            raise SessionInitError(
                f"Session init returned HTTP {resp.status_code}", resp.status_code,
            )
        logger.debug("Session initialised (%d cookies)", len(self._client.cookies))

    async def fetch_captcha_image(self) -> CaptchaImage:
        """Download a fresh captcha image bound to the current session."""
        try:
            resp = await self._client.get(
                self._captcha_url,
                headers={
                    "Referer": self._base_url,
                    "Accept": "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
                },
            )
        except httpx.TimeoutException as e:
            raise CaptchaFetchError("Captcha download timed out") from e
        except httpx.HTTPError as e:
            raise CaptchaFetchError(f"Captcha download failed: {e!r}") from e

        if resp.status_code >= 400:
            raise CaptchaFetchError(
                f"Captcha download returned HTTP {resp.status_code}", resp.status_code,
            )
        if not resp.content:
            raise CaptchaFetchError("Captcha download returned an empty body", resp.status_code)

        content_type = resp.headers.get("content-type") or "image/png"
        self._save_debug_captcha(resp.content)
        return CaptchaImage(content=resp.content, content_type=content_type)

    def _save_debug_captcha(self, image_bytes: bytes) -> None:
        """Write the captcha to captcha_debug_dir when configured. Never raises."""
        if not self._captcha_debug_dir:
            return
        try:
            os.makedirs(self._captcha_debug_dir, exist_ok=True)
            ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
            path = os.path.join(self._captcha_debug_dir, f"captcha_{ts}.png")
            with open(path, "wb") as f:
                f.write(image_bytes)
            logger.debug("Saved captcha to %s", path)
        except OSError:
            logger.warning("Failed to save captcha debug image", exc_info=True)

    # ------------------------------------------------------------------
    # Validation + result
    # ------------------------------------------------------------------

    @staticmethod
    def build_form_data(plate: str, vehicle_type: str, captcha_text: str) -> dict[str, str]:
        """Form fields for the AJAX validation call.

        BienKS carries a trailing space: the site's field expects it.
        """
        return {
            "BienKS": f"{plate} ",
            "Xe": vehicle_type,
            "captcha": captcha_text,
            "ipClient": "9.9.9.91",
            "cUrl": "1",
        }

    async def validate_captcha(
        self, plate: str, vehicle_type: str, captcha_text: str,
    ) -> AjaxValidation:
        """POST the solved captcha. Raises a tagged CSGTError on any failure."""
        resp = await self._send(
            "POST",
            self._validate_url,
            data=self.build_form_data(plate, vehicle_type, captcha_text),
            headers={
                "Accept": "*/*",
                "Origin": self._base_url,
                "Referer": f"{self._base_url}/",
                "X-Requested-With": "XMLHttpRequest",
                "Sec-Fetch-Dest": "empty",
                "Sec-Fetch-Mode": "cors",
                "Sec-Fetch-Site": "same-origin",
            },
        )

        try:
            payload = resp.json()
        except ValueError as e:
            raise CaptchaValidationError(
                f"Captcha validation failed: non-JSON response {resp.text[:200]!r}",
                resp.status_code,
            ) from e

        if not isinstance(payload, dict) or payload.get("success") not in (True, "true"):
            raise CaptchaValidationError(
                f"Captcha validation failed: {payload!r}", resp.status_code,
            )

        href = payload.get("href")
        redirect_url = urljoin(self._base_url + "/", href) if href else None
        return AjaxValidation(success=True, redirect_url=redirect_url)

    async def fetch_result(self, redirect_url: str | None = None) -> str:
        """GET the result page (AJAX redirect URL, else the default lookup URL)."""
        resp = await self._send(
            "GET",
            redirect_url or self._lookup_url,
            headers={
                "Accept": (
                    "text/html,application/xhtml+xml,application/xml;q=0.9,"
                    "image/avif,image/webp,image/apng,*/*;q=0.8"
                ),
                "Referer": f"{self._base_url}/",
                "Sec-Fetch-Dest": "document",
                "Sec-Fetch-Mode": "navigate",
                "Sec-Fetch-Site": "same-origin",
                "Sec-Fetch-User": "?1",
                "Upgrade-Insecure-Requests": "1",
            },
        )
        return resp.text

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, tagging transport errors and non-2xx statuses."""
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise CSGTTimeoutError("Timeout, server is slow to respond") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Network error calling {url}: {e!r}") from e

        if resp.status_code >= 400:
            err = classify_status(resp.status_code, url)
            logger.warning("%s %s -> HTTP %d (%s)", method, url, resp.status_code, err.kind.value)
            raise err
        return resp

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
