"""
Violation lookup pipeline.

One call = one CSGTClient session, up to max_retries + 1 attempts:

    session -> captcha -> solve -> validate -> fetch result -> parse

Retry policy:
- Only errors tagged retryable (see csgt_client) are retried.
- Every retry forces a fresh captcha, even when the caller supplied one.
- Linear backoff: attempt * retry_base_delay seconds before the next attempt.
- Exhaustion or a non-retryable error yields one error LookupResult carrying
  the last error's message and kind plus the captcha regeneration count.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from phatnguoi.captcha_solver import build_captcha_solver
from phatnguoi.config import settings
from phatnguoi.csgt_client import (
    CaptchaSolveError,
    CSGTClient,
    CSGTError,
    InvalidInputError,
)
from phatnguoi.html_parser import count_paid_unpaid, parse_result_html
from phatnguoi.models import SOURCE, LookupData, LookupResult
from phatnguoi.ocr import RecognitionPool

logger = logging.getLogger(__name__)

# 1: car, 2: motorbike, 3: electric bicycle
VEHICLE_TYPES = {"1", "2", "3"}

_PLATE_SEPARATORS = re.compile(r"[\s-]")


def normalize_plate(plate: str) -> str:
    return _PLATE_SEPARATORS.sub("", plate or "").upper()


def validate_lookup_input(plate: str | None, vehicle_type: str | None) -> tuple[str, str]:
    """Return (normalized plate, vehicle type) or raise InvalidInputError."""
    if not plate or vehicle_type is None or vehicle_type == "":
        raise InvalidInputError("Plate and vehicleType are required")
    vehicle_type = str(vehicle_type).strip()
    if vehicle_type not in VEHICLE_TYPES:
        raise InvalidInputError(
            "Invalid vehicle type. Must be 1 (Car), 2 (Motorcycle), or 3 (Electric bicycle)"
        )
    clean = normalize_plate(plate)
    if not clean:
        raise InvalidInputError("Plate and vehicleType are required")
    return clean, vehicle_type


@dataclass(frozen=True)
class AttemptContext:
    """Inputs of a single attempt. Rebuilt per attempt, never mutated."""
    attempt: int
    plate: str
    vehicle_type: str
    manual_captcha: str | None = None


class ViolationLookupService:
    """Runs lookups against csgt.vn with classified-error retries."""

    def __init__(
        self,
        solver,
        max_retries: int = 5,
        retry_base_delay: float = 2.0,
        reject_low_confidence: bool = False,
        client_factory=CSGTClient,
    ):
        self._solver = solver
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._reject_low_confidence = reject_low_confidence
        self._client_factory = client_factory

    async def lookup_by_plate(
        self,
        plate: str,
        vehicle_type: str,
        captcha_text: str | None = None,
    ) -> LookupResult:
        """Look up violations for a plate.

        Raises InvalidInputError for bad input before any network call.
        Every other failure is returned as an error LookupResult.
        """
        clean_plate, vehicle_type = validate_lookup_input(plate, vehicle_type)
        manual_captcha = (captcha_text or "").strip() or None

        regenerations = 0
        last_error: CSGTError | None = None

        async with self._client_factory() as client:
            for attempt in range(1, self._max_retries + 2):
                ctx = AttemptContext(
                    attempt=attempt,
                    plate=clean_plate,
                    vehicle_type=vehicle_type,
                    manual_captcha=manual_captcha if attempt == 1 else None,
                )
                try:
                    data = await self._run_attempt(client, ctx)
                except CSGTError as e:
                    last_error = e
                    if not e.retryable or attempt > self._max_retries:
                        logger.error(
                            "Lookup %s failed on attempt %d (%s, retryable=%s): %s",
                            clean_plate, attempt, e.kind.value, e.retryable, e,
                        )
                        break

                    delay = attempt * self._retry_base_delay
                    logger.warning(
                        "Lookup %s attempt %d failed (%s): %s; retrying in %.1fs with a fresh captcha",
                        clean_plate, attempt, e.kind.value, e, delay,
                    )
                    await asyncio.sleep(delay)
                    regenerations += 1
                    continue

                logger.info(
                    "Lookup %s succeeded on attempt %d: %d violations",
                    clean_plate, attempt, data["total"],
                )
                return LookupResult.success(
                    LookupData(
                        plate=clean_plate,
                        vehicle_type=vehicle_type,
                        violations=tuple(data["violations"]),
                        total_violations=data["total"],
                        total_paid_violations=data["paid"],
                        total_unpaid_violations=data["unpaid"],
                        total_retry_captcha=regenerations,
                        lookup_time=datetime.now(timezone.utc).isoformat(),
                        source=SOURCE,
                    )
                )

        return LookupResult.failure(
            message=str(last_error) if last_error else "Unknown error occurred",
            error_kind=last_error.kind.value if last_error else None,
            plate=clean_plate,
            vehicle_type=vehicle_type,
            total_retry_captcha=regenerations,
        )

    async def _run_attempt(self, client: CSGTClient, ctx: AttemptContext) -> dict:
        await client.init_session()

        if ctx.manual_captcha:
            captcha = ctx.manual_captcha
            logger.debug("Attempt %d using caller-supplied captcha", ctx.attempt)
        else:
            image = await client.fetch_captcha_image()
            solution = await self._solver.solve(image.content, image.content_type)
            if solution.low_confidence and self._reject_low_confidence:
                raise CaptchaSolveError(
                    f"Captcha solution {solution.text!r} rejected: confidence "
                    f"{solution.confidence:.1f} below threshold"
                )
            captcha = solution.text

        validation = await client.validate_captcha(ctx.plate, ctx.vehicle_type, captcha)
        html = await client.fetch_result(validation.redirect_url)

        violations = parse_result_html(html)
        paid, unpaid = count_paid_unpaid(violations)
        return {
            "violations": violations,
            "total": len(violations),
            "paid": paid,
            "unpaid": unpaid,
        }


def create_lookup_service(pool: RecognitionPool | None = None) -> ViolationLookupService:
    """Build the lookup service from settings."""
    return ViolationLookupService(
        solver=build_captcha_solver(settings.captcha_method, pool),
        max_retries=settings.lookup_max_retries,
        retry_base_delay=settings.lookup_retry_base_delay_seconds,
        reject_low_confidence=settings.captcha_reject_low_confidence,
    )
