"""
Notification dispatch.

CHANNELS:
1. Telegram: per-job result messages to the job owner's chat (plain text).
2. Email: admin alerts only (circuit breaker trips).

Every sender is best-effort: failures are logged, never raised, so a broken
channel cannot fail a monitoring job.
"""

from __future__ import annotations

import logging
from email.message import EmailMessage

import aiosmtplib
import httpx

from phatnguoi.config import settings
from phatnguoi.models import LookupData, Violation

logger = logging.getLogger(__name__)

VEHICLE_TYPE_NAMES = {
    "1": "Xe ô tô",
    "2": "Xe máy",
    "3": "Xe đạp điện",
}

# Telegram rejects messages longer than 4096 characters.
TELEGRAM_MAX_LENGTH = 4096


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_violation(v: Violation, index: int) -> list[str]:
    lines = [
        f"{index}. Vi phạm lúc {v.violation_time or 'N/A'}",
        f"   Địa điểm: {v.location or 'N/A'}",
        f"   Hành vi: {v.violation or 'N/A'}",
        f"   Mức phạt: {v.fine or 'Chưa có thông tin'}",
        f"   Trạng thái: {v.status or 'Chưa xử lý'}",
    ]
    if v.resolution_department:
        lines.append(f"   Đơn vị giải quyết: {v.resolution_department}")
    if v.resolution_address:
        lines.append(f"   Địa chỉ: {v.resolution_address}")
    if v.resolution_phone:
        lines.append(f"   Điện thoại: {v.resolution_phone}")
    return lines


def format_lookup_summary(data: LookupData) -> str:
    """Plain-text rendering of a successful lookup, used by the bot."""
    vehicle = VEHICLE_TYPE_NAMES.get(data.vehicle_type, "Phương tiện")
    if not data.violations:
        return f"Biển số {data.plate} ({vehicle}): không tìm thấy vi phạm nào."

    lines = [
        f"Biển số {data.plate} ({vehicle})",
        f"Tổng số vi phạm: {data.total_violations}",
        f"Đã nộp phạt: {data.total_paid_violations}",
        f"Chưa nộp phạt: {data.total_unpaid_violations}",
    ]
    if data.total_retry_captcha:
        lines.append(f"Số lần thử lại captcha: {data.total_retry_captcha}")
    lines.append("")
    for i, v in enumerate(data.violations, 1):
        lines.extend(format_violation(v, i))
        lines.append("")
    return "\n".join(lines).strip()


def build_cron_job_message(job, result) -> str:
    """Message for one executed monitoring job (an ExecutionResult)."""
    if not result.success:
        return (
            f"Không thể tra cứu vi phạm cho biển số {job.plate}.\n"
            f"Lỗi: {result.error or 'Unknown error'}\n"
            "Hệ thống sẽ thử lại trong lần kiểm tra tiếp theo."
        )

    diff = result.diff
    if diff is None or not diff.has_changes:
        total = result.lookup_result.data.total_violations if result.lookup_result else 0
        return (
            f"Không có vi phạm mới cho biển số {job.plate}.\n"
            f"Tổng số vi phạm hiện tại: {total}"
        )

    lines: list[str] = []
    if diff.added:
        lines.append(f"CÓ VI PHẠM MỚI cho biển số {job.plate}!")
        lines.append(f"Tìm thấy {len(diff.added)} vi phạm mới:")
        lines.append("")
        for i, v in enumerate(diff.added, 1):
            lines.extend(format_violation(v, i))
            lines.append("")
    if diff.removed:
        lines.append(f"{len(diff.removed)} vi phạm đã được xử lý hoặc gỡ bỏ:")
        lines.append("")
        for i, v in enumerate(diff.removed, 1):
            lines.append(f"{i}. Vi phạm lúc {v.violation_time or 'N/A'}")
            lines.append(f"   Hành vi: {v.violation or 'N/A'}")
        lines.append("")
    lines.append("Bạn có thể tra cứu lại bất kỳ lúc nào bằng lệnh /lookup")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Telegram
# ---------------------------------------------------------------------------

async def send_telegram_message(chat_id: int, text: str) -> bool:
    """Send a plain-text Telegram message. Returns True on success, never raises."""
    if not settings.telegram_bot_token:
        logger.warning("Telegram bot token not configured, dropping message to %s", chat_id)
        return False

    url = f"{settings.telegram_api_base_url}/bot{settings.telegram_bot_token}/sendMessage"
    try:
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.post(
                url,
                json={"chat_id": chat_id, "text": text[:TELEGRAM_MAX_LENGTH]},
            )
            resp.raise_for_status()
        return True
    except Exception:
        logger.error("Telegram message to %s failed", chat_id, exc_info=True)
        return False


async def send_cron_job_notification(job, result) -> bool:
    """Notify a job's owner of its result. Returns False when nothing was sent."""
    if job.chat_id is None:
        logger.warning("Cron job %s has no chat id, skipping notification", job.id)
        return False
    try:
        message = build_cron_job_message(job, result)
    except Exception:
        logger.error("Failed to build notification for cron job %s", job.id, exc_info=True)
        return False
    return await send_telegram_message(job.chat_id, message)


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

async def send_admin_alert(subject: str, message: str) -> None:
    """Send critical admin alert via email.

    Best-effort: logs failures but never raises.
    """
    email_recipients = [
        e.strip()
        for e in settings.admin_alert_recipients.split(",")
        if e.strip()
    ]

    if not email_recipients:
        logger.warning("No admin alert recipients configured: %s", subject)
        return

    try:
        msg = EmailMessage()
        msg["Subject"] = f"[phatnguoi CRITICAL] {subject}"
        msg["From"] = settings.smtp_from_email
        msg["To"] = ", ".join(email_recipients)
        msg.set_content(
            f"CRITICAL ALERT\n\n{message}\n\n"
            "Action required: check csgt.vn availability and the captcha solver.\n"
        )
        smtp = aiosmtplib.SMTP(hostname=settings.smtp_host, port=settings.smtp_port)
        await smtp.connect()
        if settings.smtp_use_tls:
            await smtp.starttls()
        await smtp.login(settings.smtp_username, settings.smtp_password)
        await smtp.send_message(msg)
        await smtp.quit()
        logger.info("Admin alert email sent: %s", subject)
    except Exception:
        logger.error("Failed to send admin alert email", exc_info=True)
