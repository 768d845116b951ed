from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Callable

from loguru import logger

from store_assistant.events import ContentDelta, ConversationAssigned, ToolStatusNotice, TurnError
from store_assistant.memory import ConversationRepository
from store_assistant.models import ClientMessage, Role
from store_assistant.orchestrator import ChatOrchestrator

HELP_TEXT = """\
Lệnh:
  /new              bắt đầu cuộc hội thoại mới
  /list [n]         liệt kê các cuộc hội thoại gần đây
  /open <id>        tiếp tục một cuộc hội thoại
  /rename <tiêu đề> đổi tên cuộc hội thoại hiện tại
  /delete           xóa cuộc hội thoại hiện tại
  /help             hiển thị trợ giúp
  exit, quit        thoát
Ctrl-C trong lúc trả lời để hủy câu trả lời."""


class ReplSession:
    """Interactive chat loop state: the current conversation and, without memory, the client history."""

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        *,
        user_id: str,
        repository: ConversationRepository | None = None,
        max_client_history: int = 50,
        write: Callable[[str], None] | None = None,
    ):
        self._orchestrator = orchestrator
        self._user_id = user_id
        self._repository = repository
        self._max_client_history = max_client_history
        self._write = write or (lambda text: print(text, end="", flush=True))
        self.conversation_id: str | None = None
        self.history: list[ClientMessage] = []

    async def try_handle_command(self, line: str) -> bool:
        trimmed = line.strip()
        if not trimmed.startswith("/"):
            return False

        command, _, arg = trimmed.partition(" ")
        arg = arg.strip()
        if command == "/help":
            self._write(HELP_TEXT + "\n")
        elif command == "/new":
            self.conversation_id = None
            self.history = []
            self._write("Đã bắt đầu cuộc hội thoại mới.\n")
        elif self._repository is None and command in ("/list", "/open", "/rename", "/delete"):
            self._write("Lịch sử hội thoại đang tắt (MemoryEnabled=false).\n")
        elif command == "/list":
            limit = int(arg) if arg.isdigit() else 10
            conversations = await self._repository.list_conversations(self._user_id, limit=limit)
            if not conversations:
                self._write("Chưa có cuộc hội thoại nào.\n")
            for c in conversations:
                marker = "*" if c.id == self.conversation_id else " "
                self._write(f"{marker} {c.id}  {c.updated_at[:16].replace('T', ' ')}  {c.title}\n")
        elif command == "/open":
            conversation = await self._repository.get_owned(arg, self._user_id) if arg else None
            if conversation is None:
                self._write("Không tìm thấy cuộc hội thoại.\n")
            else:
                self.conversation_id = conversation.id
                self._write(f"Tiếp tục: {conversation.title}\n")
        elif command == "/rename":
            if self.conversation_id is None or not arg:
                self._write("Cách dùng: /rename <tiêu đề> (trong một cuộc hội thoại)\n")
            elif await self._repository.rename_conversation(self.conversation_id, self._user_id, arg):
                self._write("Đã đổi tên.\n")
            else:
                self._write("Không tìm thấy cuộc hội thoại.\n")
        elif command == "/delete":
            if self.conversation_id is None:
                self._write("Chưa mở cuộc hội thoại nào.\n")
            elif await self._repository.delete_conversation(self.conversation_id, self._user_id):
                self._write("Đã xóa cuộc hội thoại.\n")
            self.conversation_id = None
        else:
            self._write(f"Lệnh không hợp lệ: {command}. Gõ /help để xem trợ giúp.\n")
        return True

    async def send(self, message: str, cancel_event: asyncio.Event | None = None) -> None:
        prior_history = self.history if self._repository is None else None
        answer: list[str] = []

        async with self._orchestrator.start_turn(
            self._user_id,
            message,
            self.conversation_id,
            prior_history,
            cancel_event,
        ) as stream:
            async for event in stream:
                if isinstance(event, ConversationAssigned):
                    self.conversation_id = event.conversation_id
                elif isinstance(event, ContentDelta):
                    answer.append(event.text)
                    self._write(event.text)
                elif isinstance(event, ToolStatusNotice):
                    self._write(f"\n\n⏳ Đang truy vấn: {', '.join(event.display_names)}...\n\n")
                elif isinstance(event, TurnError):
                    self._write(f"\n⚠️ {event.reason}")
        self._write("\n\n")

        if self._repository is None and answer:
            self.history.append(ClientMessage(Role.USER, message))
            self.history.append(ClientMessage(Role.ASSISTANT, "".join(answer)))
            del self.history[: max(0, len(self.history) - self._max_client_history)]

    async def send_interruptible(self, message: str) -> None:
        """Send a message; Ctrl-C cancels the answer instead of exiting where the platform allows it."""
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
            installed = True
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not supported here; Ctrl-C will not cancel a turn")
        try:
            await self.send(message, cancel_event)
        finally:
            if installed:
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.remove_signal_handler(signal.SIGINT)
