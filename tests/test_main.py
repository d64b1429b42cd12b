"""Tests for phatnguoi/main.py: run() and main() entry point."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch


def _worker(with_poller=False):
    pool = MagicMock()
    pool.stop = AsyncMock()
    scheduler = MagicMock()
    scheduler.stop = AsyncMock()
    poller = None
    if with_poller:
        poller = MagicMock()
        poller.run = AsyncMock()
        poller.wait_for_handlers = AsyncMock()
    return pool, scheduler, poller


# ---------------------------------------------------------------------------
# 1. run() starts and stops everything
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_run_starts_and_stops_components():
    """asyncio.sleep raises KeyboardInterrupt -> scheduler and pool stopped."""
    pool, scheduler, _ = _worker()

    with patch("phatnguoi.main.build_worker", return_value=(pool, scheduler, None)), \
         patch("phatnguoi.main.asyncio.sleep", new_callable=AsyncMock, side_effect=KeyboardInterrupt):
        from phatnguoi.main import run

        await run()

    pool.start.assert_called_once()
    scheduler.start.assert_called_once()
    scheduler.stop.assert_awaited_once()
    pool.stop.assert_awaited_once()


# ---------------------------------------------------------------------------
# 2. run() handles unexpected exceptions
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_run_handles_unexpected_exception():
    """Unexpected exception -> logged, scheduler still stopped."""
    pool, scheduler, _ = _worker()

    with patch("phatnguoi.main.build_worker", return_value=(pool, scheduler, None)), \
         patch("phatnguoi.main.asyncio.sleep", new_callable=AsyncMock, side_effect=RuntimeError("unexpected")):
        from phatnguoi.main import run

        await run()

    scheduler.stop.assert_awaited_once()
    pool.stop.assert_awaited_once()


# ---------------------------------------------------------------------------
# 3. run() stops the Telegram poller
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_run_stops_poller():
    """Poller stops first, then the scheduler batch, then in-flight bot messages get a grace period."""
    _, scheduler, poller = _worker(with_poller=True)
    shutdown = MagicMock()
    shutdown.attach_mock(poller.stop, "poller_stop")
    shutdown.attach_mock(scheduler.stop, "scheduler_stop")
    shutdown.attach_mock(poller.wait_for_handlers, "wait_for_handlers")

    with patch("phatnguoi.main.build_worker", return_value=(None, scheduler, poller)), \
         patch("phatnguoi.main.settings") as settings, \
         patch("phatnguoi.main.asyncio.sleep", new_callable=AsyncMock, side_effect=KeyboardInterrupt):
        from phatnguoi.main import run

        await run()

    poller.stop.assert_called_once()
    scheduler.stop.assert_awaited_once()
    poller.wait_for_handlers.assert_awaited_once_with(settings.telegram_shutdown_grace_seconds)
    assert [c[0] for c in shutdown.mock_calls] == ["poller_stop", "scheduler_stop", "wait_for_handlers"]


# ---------------------------------------------------------------------------
# 4. build_worker wiring
# ---------------------------------------------------------------------------
@pytest.mark.unit
def test_build_worker_without_polling(test_settings):
    test_settings.telegram_polling_enabled = False

    with patch("phatnguoi.main.settings", test_settings), \
         patch("phatnguoi.main.build_engine") as build_engine, \
         patch("phatnguoi.main.create_lookup_service") as create_service:
        from phatnguoi.main import build_worker

        pool, scheduler, poller = build_worker()

    build_engine.assert_called_once()
    create_service.assert_called_once_with(pool)
    assert pool is not None
    assert poller is None
    assert scheduler.running is False


@pytest.mark.unit
def test_build_worker_non_ocr_method_has_no_pool(test_settings):
    test_settings.captcha_method = "autocaptcha"

    with patch("phatnguoi.main.settings", test_settings), \
         patch("phatnguoi.main.create_lookup_service") as create_service:
        from phatnguoi.main import build_worker

        pool, _, poller = build_worker()

    assert pool is None
    create_service.assert_called_once_with(None)
    assert poller is not None


# ---------------------------------------------------------------------------
# 5. main() calls asyncio.run
# ---------------------------------------------------------------------------
def test_main_calls_asyncio_run():
    """Patch asyncio.run -> called once."""
    with patch("phatnguoi.main.asyncio.run") as mock_asyncio_run:
        from phatnguoi.main import main

        main()

        mock_asyncio_run.assert_called_once()
        mock_asyncio_run.call_args[0][0].close()
