import asyncio
import unittest

from store_assistant.models import ClientMessage, Role
from store_assistant.orchestrator import ChatOrchestrator
from store_assistant.rate_limiter import RateLimiter
from store_assistant.repl import HELP_TEXT, ReplSession
from store_assistant.tool_names import ToolName
from store_assistant.tool_registry import ToolRegistry
from tests.fakes import FakeTool, ScriptedProvider, char_counter, small_limits, text_round, tool_round
from tests.memory.base import ConversationStoreTestCase


def _orchestrator(provider, *tools, store=None) -> ChatOrchestrator:
    return ChatOrchestrator(
        provider=provider,
        registry=ToolRegistry(list(tools)),
        token_counter=char_counter(),
        limits=small_limits(),
        rate_limiter=RateLimiter(100),
        store=store,
        system_prompt=lambda: "SYS",
    )


class _Output:
    def __init__(self) -> None:
        self.parts: list[str] = []

    def __call__(self, text: str) -> None:
        self.parts.append(text)

    @property
    def text(self) -> str:
        return "".join(self.parts)


class ReplWithoutMemoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.out = _Output()

    def _session(self, provider, *tools, max_client_history=50) -> ReplSession:
        return ReplSession(
            _orchestrator(provider, *tools),
            user_id="u1",
            max_client_history=max_client_history,
            write=self.out,
        )

    def test_send_prints_answer_and_tool_notice(self) -> None:
        provider = ScriptedProvider([
            tool_round(("c1", "get_inventory_status", "{}")),
            text_round("Còn ", "đủ hàng."),
        ])
        session = self._session(provider, FakeTool(ToolName.GET_INVENTORY_STATUS))

        asyncio.run(session.send("Tồn kho?"))

        self.assertIn("⏳ Đang truy vấn: tồn kho...", self.out.text)
        self.assertIn("Còn đủ hàng.", self.out.text)
        self.assertIsNotNone(session.conversation_id)

    def test_client_history_carries_previous_turns(self) -> None:
        provider = ScriptedProvider([text_round("một"), text_round("hai")])
        session = self._session(provider)

        asyncio.run(session.send("câu 1"))
        asyncio.run(session.send("câu 2"))

        self.assertEqual(
            ["SYS", "câu 1", "một", "câu 2"],
            [m.content for m in provider.requests[1].messages],
        )
        self.assertEqual(
            [
                ClientMessage(Role.USER, "câu 1"),
                ClientMessage(Role.ASSISTANT, "một"),
                ClientMessage(Role.USER, "câu 2"),
                ClientMessage(Role.ASSISTANT, "hai"),
            ],
            session.history,
        )

    def test_client_history_is_capped(self) -> None:
        provider = ScriptedProvider([text_round(f"a{i}") for i in range(3)])
        session = self._session(provider, max_client_history=4)

        for i in range(3):
            asyncio.run(session.send(f"q{i}"))

        self.assertEqual(["q1", "a1", "q2", "a2"], [m.content for m in session.history])

    def test_errors_are_printed_and_not_added_to_history(self) -> None:
        session = self._session(ScriptedProvider([]))

        asyncio.run(session.send("   "))

        self.assertIn("⚠️ Vui lòng nhập câu hỏi", self.out.text)
        self.assertEqual([], session.history)

    def test_memory_commands_are_disabled(self) -> None:
        session = self._session(ScriptedProvider([]))

        for command in ("/list", "/open abc", "/rename x", "/delete"):
            self.assertTrue(asyncio.run(session.try_handle_command(command)))

        self.assertEqual(4, self.out.text.count("MemoryEnabled=false"))

    def test_plain_text_is_not_a_command(self) -> None:
        session = self._session(ScriptedProvider([]))
        self.assertFalse(asyncio.run(session.try_handle_command("xin chào")))

    def test_help_new_and_unknown(self) -> None:
        session = self._session(ScriptedProvider([]))
        session.conversation_id = "c1"
        session.history = [ClientMessage(Role.USER, "x")]

        asyncio.run(session.try_handle_command("/help"))
        asyncio.run(session.try_handle_command("/new"))
        asyncio.run(session.try_handle_command("/frobnicate"))

        self.assertIn(HELP_TEXT, self.out.text)
        self.assertIsNone(session.conversation_id)
        self.assertEqual([], session.history)
        self.assertIn("Lệnh không hợp lệ: /frobnicate", self.out.text)


class ReplWithMemoryTests(ConversationStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.out = _Output()
        self.provider = ScriptedProvider([text_round("Chào bạn!"), text_round("Vẫn nhớ.")])
        self.session = ReplSession(
            _orchestrator(self.provider, store=self._repo),
            user_id="u1",
            repository=self._repo,
            write=self.out,
        )

    def test_turns_continue_persisted_conversation(self) -> None:
        asyncio.run(self.session.send("Xin chào"))
        first_id = self.session.conversation_id
        asyncio.run(self.session.send("Bạn nhớ không?"))

        self.assertEqual(first_id, self.session.conversation_id)
        self.assertEqual([], self.session.history)
        self.assertEqual(
            ["SYS", "Xin chào", "Chào bạn!", "Bạn nhớ không?"],
            [m.content for m in self.provider.requests[1].messages],
        )
        self.assertEqual(4, asyncio.run(self._repo.message_count(first_id)))

    def test_list_open_rename_delete(self) -> None:
        asyncio.run(self.session.send("Doanh thu hôm nay?"))
        cid = self.session.conversation_id

        asyncio.run(self.session.try_handle_command("/list"))
        self.assertIn(f"* {cid}", self.out.text)
        self.assertIn("Doanh thu hôm nay?", self.out.text)

        asyncio.run(self.session.try_handle_command("/new"))
        asyncio.run(self.session.try_handle_command(f"/open {cid}"))
        self.assertEqual(cid, self.session.conversation_id)

        asyncio.run(self.session.try_handle_command("/rename Báo cáo ngày"))
        self.assertEqual("Báo cáo ngày", asyncio.run(self._repo.get_owned(cid, "u1")).title)

        asyncio.run(self.session.try_handle_command("/delete"))
        self.assertIsNone(self.session.conversation_id)
        self.assertIsNone(asyncio.run(self._repo.get_owned(cid, "u1")))
        self.assertIn("Đã xóa cuộc hội thoại.", self.out.text)

    def test_open_unknown_conversation(self) -> None:
        asyncio.run(self.session.try_handle_command("/open nope"))
        self.assertIn("Không tìm thấy cuộc hội thoại.", self.out.text)
        self.assertIsNone(self.session.conversation_id)

    def test_list_when_empty(self) -> None:
        asyncio.run(self.session.try_handle_command("/list 5"))
        self.assertIn("Chưa có cuộc hội thoại nào.", self.out.text)


if __name__ == "__main__":
    unittest.main()
