"""
Telegram bot front end.

CONVERSATIONS:
- /lookup and /subscribe start a session: ask vehicle type, then plate.
- Each chat has at most one ConversationSession, created on the command and
  removed when the flow completes or on /cancel.

TRANSPORT:
- TelegramPoller long-polls getUpdates over httpx and hands each text message
  to BotHandler. Each message runs in its own task, so a slow lookup in one
  chat never delays another. Replies go out through
  notifier.send_telegram_message.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

from phatnguoi import store
from phatnguoi.config import settings
from phatnguoi.csgt_client import InvalidInputError
from phatnguoi.lookup import VEHICLE_TYPES, ViolationLookupService, validate_lookup_input
from phatnguoi.notifier import VEHICLE_TYPE_NAMES, format_lookup_summary, send_telegram_message

logger = logging.getLogger(__name__)

ACTION_LOOKUP = "lookup"
ACTION_SUBSCRIBE = "subscribe"

STEP_ASK_VEHICLE_TYPE = "ask_vehicle_type"
STEP_ASK_PLATE = "ask_plate"

HELP_TEXT = (
    "Bot tra cứu phạt nguội (csgt.vn)\n\n"
    "/lookup - Tra cứu vi phạm\n"
    "/subscribe - Đăng ký kiểm tra tự động hàng ngày\n"
    "/unsubscribe - Tắt kiểm tra tự động\n"
    "/status - Xem trạng thái kiểm tra tự động\n"
    "/cancel - Hủy thao tác hiện tại\n"
    "/help - Hiển thị hướng dẫn này"
)

VEHICLE_PROMPT = (
    "Chọn loại xe (gửi số):\n"
    + "\n".join(f"{code} - {name}" for code, name in sorted(VEHICLE_TYPE_NAMES.items()))
)

PLATE_PROMPT = "Nhập biển số xe (ví dụ: 51K67179):"


@dataclass
class ConversationSession:
    chat_id: int
    action: str
    step: str = STEP_ASK_VEHICLE_TYPE
    vehicle_type: str | None = None
    plate: str | None = None


class SessionRegistry:
    """Per-chat conversation sessions with explicit creation and removal."""

    def __init__(self):
        self._sessions: dict[int, ConversationSession] = {}

    def start(self, chat_id: int, action: str) -> ConversationSession:
        session = ConversationSession(chat_id=chat_id, action=action)
        self._sessions[chat_id] = session
        return session

    def get(self, chat_id: int) -> ConversationSession | None:
        return self._sessions.get(chat_id)

    def end(self, chat_id: int) -> None:
        self._sessions.pop(chat_id, None)

    def __len__(self) -> int:
        return len(self._sessions)


class BotHandler:
    """Turns one incoming text message into a list of reply texts."""

    def __init__(self, lookup_service: ViolationLookupService, sessions: SessionRegistry | None = None):
        self._lookup_service = lookup_service
        self.sessions = sessions or SessionRegistry()

    async def handle_message(self, chat_id: int, text: str, user: dict | None = None) -> list[str]:
        text = (text or "").strip()
        user = user or {}

        if text.startswith("/"):
            command = text.split()[0].split("@")[0].lower()
            return await self._handle_command(chat_id, command, user)

        session = self.sessions.get(chat_id)
        if session is None:
            return ["Gõ /lookup để tra cứu vi phạm hoặc /help để xem hướng dẫn."]

        if session.step == STEP_ASK_VEHICLE_TYPE:
            if text not in VEHICLE_TYPES:
                return ["Loại xe không hợp lệ.", VEHICLE_PROMPT]
            session.vehicle_type = text
            session.step = STEP_ASK_PLATE
            return [PLATE_PROMPT]

        session.plate = text
        if session.action == ACTION_SUBSCRIBE:
            return await self._complete_subscribe(session, user)
        return await self._complete_lookup(session)

    async def _handle_command(self, chat_id: int, command: str, user: dict) -> list[str]:
        if command == "/start":
            self.sessions.end(chat_id)
            self._register_user(chat_id, user)
            return [HELP_TEXT]
        if command == "/help":
            return [HELP_TEXT]
        if command == "/lookup":
            self.sessions.start(chat_id, ACTION_LOOKUP)
            return [VEHICLE_PROMPT]
        if command == "/subscribe":
            self.sessions.start(chat_id, ACTION_SUBSCRIBE)
            return [VEHICLE_PROMPT]
        if command == "/cancel":
            had_session = self.sessions.get(chat_id) is not None
            self.sessions.end(chat_id)
            return ["Đã hủy." if had_session else "Không có thao tác nào để hủy."]
        if command == "/unsubscribe":
            return [self._unsubscribe(chat_id)]
        if command == "/status":
            return [self._status(chat_id)]
        return ["Lệnh không được hỗ trợ. Gõ /help để xem hướng dẫn."]

    def _register_user(self, chat_id: int, user: dict) -> dict | None:
        try:
            return store.get_or_create_user(
                chat_id,
                username=user.get("username"),
                first_name=user.get("first_name"),
                last_name=user.get("last_name"),
            )
        except Exception:
            logger.error("Failed to register user for chat %s", chat_id, exc_info=True)
            return None

    async def _complete_lookup(self, session: ConversationSession) -> list[str]:
        chat_id = session.chat_id
        try:
            validate_lookup_input(session.plate, session.vehicle_type)
        except InvalidInputError as e:
            return [f"Biển số không hợp lệ: {e}", PLATE_PROMPT]

        self.sessions.end(chat_id)
        result = await self._lookup_service.lookup_by_plate(session.plate, session.vehicle_type)
        if not result.ok:
            logger.warning("Bot lookup failed for chat %s: %s", chat_id, result.message)
            return [f"Không thể tra cứu lúc này: {result.message}. Vui lòng thử lại sau."]
        return [format_lookup_summary(result.data)]

    async def _complete_subscribe(self, session: ConversationSession, user: dict) -> list[str]:
        chat_id = session.chat_id
        try:
            plate, vehicle_type = validate_lookup_input(session.plate, session.vehicle_type)
        except InvalidInputError as e:
            return [f"Biển số không hợp lệ: {e}", PLATE_PROMPT]

        self.sessions.end(chat_id)
        db_user = self._register_user(chat_id, user)
        if db_user is None:
            return ["Không thể đăng ký người dùng. Vui lòng thử lại."]
        try:
            store.upsert_cron_job(db_user["id"], plate, vehicle_type)
        except Exception:
            logger.error("Failed to save cron job for chat %s", chat_id, exc_info=True)
            return ["Có lỗi xảy ra khi thiết lập kiểm tra tự động. Vui lòng thử lại sau."]

        logger.info("Chat %s subscribed plate %s (type %s)", chat_id, plate, vehicle_type)
        return [
            f"Đã đăng ký kiểm tra tự động cho biển số {plate} "
            f"({VEHICLE_TYPE_NAMES[vehicle_type]}). Bạn sẽ nhận thông báo sau mỗi lần kiểm tra."
        ]

    def _unsubscribe(self, chat_id: int) -> str:
        try:
            db_user = store.get_user_by_chat_id(chat_id)
            if db_user is None or store.get_cron_job_by_user(db_user["id"]) is None:
                return "Bạn chưa đăng ký kiểm tra tự động."
            store.set_cron_job_active(db_user["id"], False)
        except Exception:
            logger.error("Failed to disable cron job for chat %s", chat_id, exc_info=True)
            return "Có lỗi xảy ra khi tắt kiểm tra tự động."
        return "Đã tắt kiểm tra tự động."

    def _status(self, chat_id: int) -> str:
        try:
            db_user = store.get_user_by_chat_id(chat_id)
            job = store.get_cron_job_by_user(db_user["id"]) if db_user else None
        except Exception:
            logger.error("Failed to load cron job status for chat %s", chat_id, exc_info=True)
            return "Có lỗi xảy ra. Vui lòng thử lại sau."

        if job is None:
            return "Bạn chưa đăng ký kiểm tra tự động. Gõ /subscribe để đăng ký."
        lines = [
            f"Biển số: {job.plate} ({VEHICLE_TYPE_NAMES.get(job.vehicle_type, 'Phương tiện')})",
            f"Trạng thái: {'Đang hoạt động' if job.is_active else 'Đã tắt'}",
            f"Lần chạy gần nhất: {job.last_run.isoformat() if job.last_run else 'Chưa chạy'}",
            f"Lần chạy tiếp theo: {job.next_run.isoformat() if job.next_run else 'Chưa xác định'}",
        ]
        return "\n".join(lines)


class TelegramPoller:
    """Long-polls Telegram getUpdates and dispatches messages to a BotHandler."""

    def __init__(
        self,
        handler: BotHandler,
        token: str | None = None,
        poll_timeout: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._handler = handler
        self._token = token or settings.telegram_bot_token
        self._poll_timeout = poll_timeout or settings.telegram_poll_timeout_seconds
        self._transport = transport
        self._offset = 0
        self._stopped = asyncio.Event()
        self._handler_tasks: set[asyncio.Task] = set()

    @property
    def _base_url(self) -> str:
        return f"{settings.telegram_api_base_url}/bot{self._token}"

    @property
    def in_flight(self) -> int:
        return len(self._handler_tasks)

    def stop(self) -> None:
        """End the loop after the current poll returns. Handler tasks keep running."""
        self._stopped.set()

    async def poll_once(self, client: httpx.AsyncClient) -> int:
        """Fetch one batch of updates and dispatch each message to its own task.

        Returns the number of updates consumed.
        """
        resp = await client.get(
            f"{self._base_url}/getUpdates",
            params={"offset": self._offset, "timeout": self._poll_timeout},
        )
        resp.raise_for_status()
        payload = resp.json()
        updates = payload.get("result") or []

        for update in updates:
            self._offset = max(self._offset, update["update_id"] + 1)
            message = update.get("message") or {}
            text = message.get("text")
            chat = message.get("chat") or {}
            if not text or "id" not in chat:
                continue
            task = asyncio.create_task(
                self._handle_update(chat["id"], text, message.get("from") or {}),
                name=f"telegram-chat-{chat['id']}",
            )
            self._handler_tasks.add(task)
            task.add_done_callback(self._on_handler_done)
        return len(updates)

    async def _handle_update(self, chat_id: int, text: str, user: dict) -> None:
        try:
            replies = await self._handler.handle_message(chat_id, text, user)
        except Exception:
            logger.error("Bot handler failed for chat %s", chat_id, exc_info=True)
            replies = ["Có lỗi xảy ra. Vui lòng thử lại sau."]
        for reply in replies:
            await send_telegram_message(chat_id, reply)

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Message task %s crashed", task.get_name(), exc_info=exc)

    async def wait_for_handlers(self, timeout: float | None = None) -> None:
        """Wait for in-flight message handlers; cancel any still running after timeout."""
        if not self._handler_tasks:
            return
        _, pending = await asyncio.wait(set(self._handler_tasks), timeout=timeout)
        if pending:
            logger.warning("Cancelling %d bot message handlers still running", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def run(self) -> None:
        if not self._token:
            logger.warning("Telegram bot token not configured, bot polling disabled")
            return

        logger.info("Telegram polling started")
        async with httpx.AsyncClient(
            timeout=self._poll_timeout + 10, transport=self._transport,
        ) as client:
            while not self._stopped.is_set():
                try:
                    await self.poll_once(client)
                except Exception:
                    logger.error("Telegram getUpdates failed", exc_info=True)
                    await asyncio.sleep(5)
        logger.info("Telegram polling stopped (%d handlers in flight)", self.in_flight)
