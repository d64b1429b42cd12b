"""
REST API over the lookup pipeline.

ROUTES:
    GET  /api/violations?plate=&vehicleType=&captcha=   single lookup
    POST /api/violations/bulk                            sequential multi-lookup
    GET  /api/ocr/status                                 OCR pool status
    GET  /health

Every lookup response uses the same LookupResult JSON the bot and the
scheduler see. The HTTP status is derived from the classified error kind.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from phatnguoi.config import settings
from phatnguoi.csgt_client import ErrorKind, InvalidInputError
from phatnguoi.lookup import ViolationLookupService, create_lookup_service
from phatnguoi.models import LookupResult
from phatnguoi.ocr import RecognitionPool, build_engine

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    ErrorKind.INVALID_INPUT.value: 400,
    ErrorKind.CAPTCHA_VALIDATION_FAILED.value: 400,
    ErrorKind.NOT_FOUND.value: 404,
    ErrorKind.FORBIDDEN.value: 403,
    ErrorKind.TIMEOUT.value: 504,
    ErrorKind.SERVER_ERROR.value: 502,
}


def status_for_result(result: LookupResult) -> int:
    if result.ok:
        return 200
    return _ERROR_STATUS.get(result.error_kind or "", 500)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"status": "error", "message": message}, status_code=status_code)


async def _run_lookup(
    service: ViolationLookupService, plate: str, vehicle_type: str, captcha: str | None,
) -> LookupResult:
    try:
        return await service.lookup_by_plate(plate, vehicle_type, captcha)
    except InvalidInputError as e:
        return LookupResult.failure(
            message=str(e),
            error_kind=e.kind.value,
            plate=plate,
            vehicle_type=vehicle_type,
            total_retry_captcha=0,
        )


def create_app(
    lookup_service: ViolationLookupService | None = None,
    pool: RecognitionPool | None = None,
) -> Starlette:
    if lookup_service is None:
        if pool is None and settings.captcha_method == "ocr":
            pool = RecognitionPool(build_engine())
        lookup_service = create_lookup_service(pool)

    async def violations_handler(request: Request) -> Response:
        plate = request.query_params.get("plate")
        vehicle_type = request.query_params.get("vehicleType")
        if not plate or not vehicle_type:
            return _error("Missing required parameters: plate and vehicleType", 400)

        result = await _run_lookup(
            lookup_service, plate, vehicle_type, request.query_params.get("captcha"),
        )
        return JSONResponse(result.to_dict(), status_code=status_for_result(result))

    async def bulk_handler(request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            return _error("Request body must be JSON", 400)

        vehicles = body.get("vehicles") if isinstance(body, dict) else None
        if not isinstance(vehicles, list) or not vehicles:
            return _error("vehicles must be a non-empty array", 400)

        captcha = body.get("captcha")
        results = []
        for vehicle in vehicles:
            vehicle = vehicle if isinstance(vehicle, dict) else {}
            plate = str(vehicle.get("plate") or "")
            vehicle_type = str(vehicle.get("vehicleType") or "")
            result = await _run_lookup(lookup_service, plate, vehicle_type, captcha)
            results.append(result.to_dict())

        successful = sum(1 for r in results if r["status"] == "ok")
        return JSONResponse({
            "status": "ok",
            "results": results,
            "summary": {
                "total": len(results),
                "successful": successful,
                "failed": len(results) - successful,
            },
        })

    async def ocr_status_handler(request: Request) -> Response:
        if pool is None:
            return JSONResponse({"status": "ok", "data": {"running": False, "engine": None}})
        return JSONResponse({"status": "ok", "data": pool.status()})

    async def health_handler(request: Request) -> Response:
        return JSONResponse({"status": "healthy"})

    routes = [
        Route("/api/violations", endpoint=violations_handler, methods=["GET"]),
        Route("/api/violations/bulk", endpoint=bulk_handler, methods=["POST"]),
        Route("/api/ocr/status", endpoint=ocr_status_handler, methods=["GET"]),
        Route("/health", endpoint=health_handler, methods=["GET"]),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting REST API...")
        if pool is not None:
            pool.start()
        try:
            yield
        finally:
            logger.info("Stopping REST API...")
            if pool is not None:
                await pool.stop()

    return Starlette(routes=routes, lifespan=lifespan)


def serve() -> None:
    """Entry point: run the REST API under uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port, log_level="info")
