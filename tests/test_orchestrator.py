import asyncio
import json
import unittest

import httpx
import openai

from store_assistant.errors import (
    MSG_AUTH,
    MSG_CANCELLED,
    MSG_CONVERSATION_NOT_FOUND,
    MSG_EMPTY_MESSAGE,
    MSG_GENERIC,
    MSG_RATE_LIMITED,
    MSG_ROUND_LIMIT,
    MSG_SLOW,
    MSG_UNREACHABLE,
    ErrorKind,
)
from store_assistant.events import (
    ContentDelta,
    ConversationAssigned,
    ToolStatusNotice,
    TurnDone,
    TurnError,
    TurnOutcome,
)
from store_assistant.memory import ConversationRecord, MessageRecord, ToolMeta
from store_assistant.models import ChatMessage, ClientMessage, ContentChunk, FinishReason, Role, ToolCall
from store_assistant.orchestrator import ChatOrchestrator, ChatResponse, conversation_title
from store_assistant.rate_limiter import RateLimiter
from store_assistant.retry import RetryPolicy
from store_assistant.tool_names import ToolName
from store_assistant.tool_registry import ToolRegistry
from tests.fakes import FakeTool, ScriptedProvider, char_counter, small_limits, text_round, tool_round


async def _no_sleep(seconds: float) -> None:
    return None


class _MemoryStore:
    def __init__(self) -> None:
        self.conversations: dict[str, ConversationRecord] = {}
        self.messages: dict[str, list[MessageRecord]] = {}
        self.fail: Exception | None = None

    async def create_conversation(self, user_id, title=None):
        if self.fail is not None:
            raise self.fail
        cid = f"conv-{len(self.conversations) + 1}"
        self.conversations[cid] = ConversationRecord(cid, user_id, title or "untitled", "t0", "t0")
        self.messages[cid] = []
        return cid

    async def get_owned(self, conversation_id, user_id):
        record = self.conversations.get(conversation_id)
        return record if record is not None and record.user_id == user_id else None

    async def append_message(self, conversation_id, role, content, tool_meta=None):
        if self.fail is not None:
            raise self.fail
        entries = self.messages[conversation_id]
        record = MessageRecord(
            id=f"m{len(entries) + 1}",
            conversation_id=conversation_id,
            seq=len(entries) + 1,
            role=Role(role),
            content=content,
            created_at="t1",
            tool_meta=tool_meta,
        )
        entries.append(record)
        return record

    async def load_recent_messages(self, conversation_id, limit):
        return self.messages.get(conversation_id, [])[-limit:] if limit > 0 else []

    def contents(self, conversation_id: str) -> list[tuple[Role, str]]:
        return [(m.role, m.content) for m in self.messages[conversation_id]]


def _orchestrator(provider, *tools, store=None, rate_limiter=None, system_prompt=None, **limit_overrides):
    limits = small_limits(**limit_overrides)
    return ChatOrchestrator(
        provider=provider,
        registry=ToolRegistry(list(tools)),
        token_counter=char_counter(),
        limits=limits,
        rate_limiter=rate_limiter if rate_limiter is not None else RateLimiter(100),
        store=store,
        retry_policy=RetryPolicy(limits.max_retry_attempts, 2, sleep=_no_sleep),
        system_prompt=system_prompt or (lambda: "SYS"),
    )


async def _events(orchestrator, *args, **kwargs):
    async with orchestrator.start_turn(*args, **kwargs) as stream:
        return [e async for e in stream]


class ConversationTitleTests(unittest.TestCase):
    def test_short_message_is_kept(self) -> None:
        self.assertEqual("Doanh thu hôm nay?", conversation_title("Doanh thu  hôm nay?"))

    def test_long_message_is_cut_at_fifty_chars(self) -> None:
        title = conversation_title("x" * 80)
        self.assertEqual("x" * 50 + "...", title)


class TurnScenarioTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = _MemoryStore()

    def test_plain_answer_streams_and_persists(self) -> None:
        provider = ScriptedProvider([text_round("Xin ", "chào!")])
        orch = _orchestrator(provider, store=self.store)

        events = asyncio.run(_events(orch, "u1", "Chào bạn"))

        self.assertEqual(
            [
                ConversationAssigned("conv-1"),
                ContentDelta("Xin "),
                ContentDelta("chào!"),
                TurnDone(TurnOutcome.COMPLETED),
            ],
            events,
        )
        self.assertEqual("Chào bạn", self.store.conversations["conv-1"].title)
        self.assertEqual(
            [(Role.USER, "Chào bạn"), (Role.ASSISTANT, "Xin chào!")],
            self.store.contents("conv-1"),
        )
        self.assertIsNone(self.store.messages["conv-1"][1].tool_meta)
        self.assertEqual(
            [ChatMessage(Role.SYSTEM, "SYS"), ChatMessage(Role.USER, "Chào bạn")],
            provider.requests[0].messages,
        )
        self.assertEqual(100, provider.requests[0].max_output_tokens)

    def test_tool_round_feeds_results_back_to_model(self) -> None:
        tool = FakeTool(ToolName.QUERY_PRODUCTS, result='{"stock": 77}')
        provider = ScriptedProvider([
            tool_round(("c1", "query_products", '{"keyword": "trà"}'), text="Để tôi xem. "),
            text_round("Còn 77 hộp."),
        ])
        orch = _orchestrator(provider, tool, store=self.store)

        events = asyncio.run(_events(orch, "u1", "Trà xanh còn bao nhiêu?"))

        self.assertEqual(
            [
                ConversationAssigned("conv-1"),
                ContentDelta("Để tôi xem. "),
                ToolStatusNotice(("query_products",), ("sản phẩm",)),
                ContentDelta("Còn 77 hộp."),
                TurnDone(TurnOutcome.COMPLETED),
            ],
            events,
        )
        self.assertEqual([{"keyword": "trà"}], tool.calls)
        self.assertEqual(
            [
                ChatMessage(Role.SYSTEM, "SYS"),
                ChatMessage(Role.USER, "Trà xanh còn bao nhiêu?"),
                ChatMessage(
                    Role.ASSISTANT,
                    "Để tôi xem. ",
                    tool_calls=(ToolCall("c1", "query_products", '{"keyword": "trà"}'),),
                ),
                ChatMessage(Role.TOOL, '{"stock": 77}', tool_call_id="c1"),
            ],
            provider.requests[1].messages,
        )
        self.assertEqual(["query_products"], [t["name"] for t in provider.requests[0].tools])

        answer = self.store.messages["conv-1"][-1]
        self.assertEqual("Để tôi xem. Còn 77 hộp.", answer.content)
        self.assertEqual(ToolMeta("query_products"), answer.tool_meta)

    def test_parallel_calls_with_unknown_tool(self) -> None:
        orders = FakeTool(ToolName.QUERY_ORDERS, result="orders")
        provider = ScriptedProvider([
            tool_round(("c1", "query_orders", "{}"), ("c2", "launch_rockets", "{}")),
            text_round("Xong."),
        ])
        orch = _orchestrator(provider, orders, store=self.store)

        events = asyncio.run(_events(orch, "u1", "Đơn hàng?"))

        notices = [e for e in events if isinstance(e, ToolStatusNotice)]
        self.assertEqual([ToolStatusNotice(("query_orders", "launch_rockets"), ("đơn hàng", "launch_rockets"))], notices)
        self.assertEqual(TurnDone(TurnOutcome.COMPLETED), events[-1])

        tool_messages = [m for m in provider.requests[1].messages if m.role == Role.TOOL]
        self.assertEqual(["c1", "c2"], [m.tool_call_id for m in tool_messages])
        self.assertEqual("orders", tool_messages[0].content)
        self.assertIn("không được hỗ trợ", json.loads(tool_messages[1].content)["error"])

    def test_repeated_tool_names_are_reported_once(self) -> None:
        tool = FakeTool(ToolName.QUERY_PRODUCTS)
        provider = ScriptedProvider([
            tool_round(("c1", "query_products", '{"page": 1}'), ("c2", "query_products", '{"page": 2}')),
            text_round("ok"),
        ])
        orch = _orchestrator(provider, tool, store=self.store)

        events = asyncio.run(_events(orch, "u1", "liệt kê sản phẩm"))

        self.assertIn(ToolStatusNotice(("query_products",), ("sản phẩm",)), events)
        self.assertEqual(2, len(tool.calls))

    def test_mid_stream_failure_keeps_partial_output_and_is_not_retried(self) -> None:
        provider = ScriptedProvider([[ContentChunk("Một phần"), httpx.ReadError("connection dropped")]])
        orch = _orchestrator(provider, store=self.store)

        events = asyncio.run(_events(orch, "u1", "hỏi"))

        self.assertEqual(
            [
                ConversationAssigned("conv-1"),
                ContentDelta("Một phần"),
                TurnError(ErrorKind.TRANSPORT_TRANSIENT, MSG_UNREACHABLE),
                TurnDone(TurnOutcome.ERRORED),
            ],
            events,
        )
        self.assertEqual(1, provider.handshakes)
        self.assertEqual((Role.ASSISTANT, "Một phần"), self.store.contents("conv-1")[-1])

    def test_handshake_is_retried_on_transient_failure(self) -> None:
        provider = ScriptedProvider([text_round("ok")], handshake_errors=[TimeoutError(), TimeoutError()])
        orch = _orchestrator(provider, store=self.store)

        events = asyncio.run(_events(orch, "u1", "hỏi"))

        self.assertEqual(TurnDone(TurnOutcome.COMPLETED), events[-1])
        self.assertEqual(3, provider.handshakes)

    def test_handshake_gives_up_after_max_attempts(self) -> None:
        provider = ScriptedProvider([text_round("never")], handshake_errors=[TimeoutError()] * 4)
        orch = _orchestrator(provider, store=self.store)

        events = asyncio.run(_events(orch, "u1", "hỏi"))

        self.assertEqual(
            [TurnError(ErrorKind.TRANSPORT_TRANSIENT, MSG_SLOW), TurnDone(TurnOutcome.ERRORED)],
            events[-2:],
        )
        self.assertEqual(3, provider.handshakes)
        self.assertEqual([(Role.USER, "hỏi")], self.store.contents("conv-1"))

    def test_fatal_handshake_failure_is_not_retried(self) -> None:
        response = httpx.Response(401, request=httpx.Request("POST", "https://llm.test"))
        provider = ScriptedProvider(
            [text_round("never")],
            handshake_errors=[openai.AuthenticationError("Invalid API key", response=response, body=None)],
        )
        orch = _orchestrator(provider, store=self.store)

        events = asyncio.run(_events(orch, "u1", "hỏi"))

        self.assertEqual(TurnError(ErrorKind.TRANSPORT_FATAL, MSG_AUTH), events[-2])
        self.assertEqual(1, provider.handshakes)

    def test_round_cap_ends_turn(self) -> None:
        tool = FakeTool(ToolName.QUERY_ORDERS)
        provider = ScriptedProvider([
            tool_round((f"c{i}", "query_orders", f'{{"page": {i}}}'), text=f"r{i} ") for i in range(3)
        ])
        orch = _orchestrator(provider, tool, store=self.store, max_tool_rounds=2)

        events = asyncio.run(_events(orch, "u1", "tất cả đơn hàng"))

        self.assertEqual(
            [TurnError(ErrorKind.ROUND_LIMIT, MSG_ROUND_LIMIT), TurnDone(TurnOutcome.ERRORED)],
            events[-2:],
        )
        self.assertEqual(2, len(tool.calls))
        self.assertEqual(3, len(provider.requests))
        self.assertEqual((Role.ASSISTANT, "r0 r1 r2 "), self.store.contents("conv-1")[-1])

    def test_length_finish_without_calls_completes(self) -> None:
        provider = ScriptedProvider([text_round("cắt ngang", reason=FinishReason.LENGTH)])
        orch = _orchestrator(provider, store=self.store)

        events = asyncio.run(_events(orch, "u1", "viết dài"))

        self.assertEqual(TurnDone(TurnOutcome.COMPLETED), events[-1])

    def test_unexpected_failure_is_reported_as_internal(self) -> None:
        def broken_prompt() -> str:
            raise ValueError("template missing")

        provider = ScriptedProvider([text_round("never")])
        orch = _orchestrator(provider, store=self.store, system_prompt=broken_prompt)

        events = asyncio.run(_events(orch, "u1", "hỏi"))

        self.assertEqual(
            [TurnError(ErrorKind.INTERNAL, MSG_GENERIC), TurnDone(TurnOutcome.ERRORED)],
            events[-2:],
        )
        self.assertEqual([], provider.requests)


class PreparingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = _MemoryStore()
        self.provider = ScriptedProvider([text_round("ok"), text_round("ok")])

    def test_empty_message_is_rejected_before_anything_else(self) -> None:
        orch = _orchestrator(self.provider, store=self.store)

        for message in ("", "   \n"):
            with self.subTest(message=message):
                events = asyncio.run(_events(orch, "u1", message))
                self.assertEqual(
                    [TurnError(ErrorKind.VALIDATION, MSG_EMPTY_MESSAGE), TurnDone(TurnOutcome.ERRORED)],
                    events,
                )

        self.assertEqual({}, self.store.conversations)
        self.assertEqual(0, self.provider.handshakes)

    def test_message_too_long(self) -> None:
        orch = _orchestrator(self.provider, store=self.store, max_message_length=10)

        events = asyncio.run(_events(orch, "u1", "x" * 11))

        self.assertEqual(TurnError(ErrorKind.VALIDATION, "Tin nhắn quá dài (tối đa 10 ký tự)"), events[0])

    def test_history_too_long(self) -> None:
        orch = _orchestrator(self.provider, store=self.store, max_client_history=2)
        history = [ClientMessage(Role.USER, str(i)) for i in range(3)]

        events = asyncio.run(_events(orch, "u1", "hỏi", prior_history=history))

        self.assertEqual(ErrorKind.VALIDATION, events[0].kind)

    def test_rate_limit(self) -> None:
        orch = _orchestrator(self.provider, store=self.store, rate_limiter=RateLimiter(1))

        first = asyncio.run(_events(orch, "u1", "một"))
        second = asyncio.run(_events(orch, "u1", "hai"))
        other_user = asyncio.run(_events(orch, "u2", "ba"))

        self.assertEqual(TurnDone(TurnOutcome.COMPLETED), first[-1])
        self.assertEqual(
            [TurnError(ErrorKind.RATE_LIMITED, MSG_RATE_LIMITED), TurnDone(TurnOutcome.ERRORED)],
            second,
        )
        self.assertEqual(TurnDone(TurnOutcome.COMPLETED), other_user[-1])
        # The rejected request never reached the transport.
        self.assertEqual(2, self.provider.handshakes)

    def test_invalid_messages_do_not_use_up_rate_limit(self) -> None:
        limiter = RateLimiter(1)
        orch = _orchestrator(self.provider, store=self.store, rate_limiter=limiter)

        asyncio.run(_events(orch, "u1", ""))
        events = asyncio.run(_events(orch, "u1", "hợp lệ"))

        self.assertEqual(TurnDone(TurnOutcome.COMPLETED), events[-1])
        self.assertFalse(limiter.try_admit("u1"))

    def test_unknown_or_foreign_conversation(self) -> None:
        owned = asyncio.run(self.store.create_conversation("owner"))
        orch = _orchestrator(self.provider, store=self.store)

        for cid in ("missing", owned):
            with self.subTest(cid=cid):
                events = asyncio.run(_events(orch, "intruder", "hỏi", conversation_id=cid))
                self.assertEqual(
                    [
                        TurnError(ErrorKind.VALIDATION, MSG_CONVERSATION_NOT_FOUND),
                        TurnDone(TurnOutcome.ERRORED),
                    ],
                    events,
                )
        self.assertEqual([], self.store.messages[owned])

    def test_existing_conversation_reloads_persisted_history(self) -> None:
        cid = asyncio.run(self.store.create_conversation("u1"))
        asyncio.run(self.store.append_message(cid, Role.USER, "câu trước"))
        asyncio.run(self.store.append_message(cid, Role.ASSISTANT, "trả lời trước"))
        orch = _orchestrator(self.provider, store=self.store)

        events = asyncio.run(_events(orch, "u1", "câu mới", conversation_id=cid))

        self.assertEqual(ConversationAssigned(cid), events[0])
        self.assertEqual(
            ["SYS", "câu trước", "trả lời trước", "câu mới"],
            [m.content for m in self.provider.requests[0].messages],
        )
        self.assertEqual(4, len(self.store.messages[cid]))

    def test_supplied_history_takes_precedence_over_persisted(self) -> None:
        cid = asyncio.run(self.store.create_conversation("u1"))
        asyncio.run(self.store.append_message(cid, Role.USER, "persisted"))
        orch = _orchestrator(self.provider, store=self.store)

        asyncio.run(_events(orch, "u1", "mới", conversation_id=cid, prior_history=[ClientMessage(Role.USER, "client")]))

        self.assertEqual(["SYS", "client", "mới"], [m.content for m in self.provider.requests[0].messages])

    def test_store_failure_while_preparing(self) -> None:
        self.store.fail = RuntimeError("disk full")
        orch = _orchestrator(self.provider, store=self.store)

        events = asyncio.run(_events(orch, "u1", "hỏi"))

        self.assertEqual(
            [TurnError(ErrorKind.INTERNAL, MSG_GENERIC), TurnDone(TurnOutcome.ERRORED)],
            events,
        )
        self.assertEqual(0, self.provider.handshakes)

    def test_without_store_conversation_id_is_echoed_or_generated(self) -> None:
        orch = _orchestrator(self.provider)

        echoed = asyncio.run(_events(orch, "u1", "hỏi", conversation_id="client-42"))
        generated = asyncio.run(_events(orch, "u1", "hỏi"))

        self.assertEqual(ConversationAssigned("client-42"), echoed[0])
        self.assertIsInstance(generated[0], ConversationAssigned)
        self.assertTrue(generated[0].conversation_id)


class CancellationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = _MemoryStore()
        self.provider = ScriptedProvider([[ContentChunk("Một"), ContentChunk(" hai")]])
        self.provider.pause_after = 1
        self.orch = _orchestrator(self.provider, store=self.store)

    def test_cancel_signal_stops_turn(self) -> None:
        async def go():
            cancel = asyncio.Event()
            events = []
            async with self.orch.start_turn("u1", "hỏi", cancel_event=cancel) as stream:
                async for event in stream:
                    events.append(event)
                    if isinstance(event, ContentDelta):
                        cancel.set()
            return events, stream.is_running

        events, running = asyncio.run(go())

        self.assertEqual(
            [
                ConversationAssigned("conv-1"),
                ContentDelta("Một"),
                TurnError(ErrorKind.CANCELLED, MSG_CANCELLED),
                TurnDone(TurnOutcome.CANCELLED),
            ],
            events,
        )
        self.assertFalse(running)
        self.assertEqual([(Role.USER, "hỏi")], self.store.contents("conv-1"))

    def test_closing_stream_cancels_turn(self) -> None:
        async def go():
            async with self.orch.start_turn("u1", "hỏi") as stream:
                async for event in stream:
                    if isinstance(event, ContentDelta):
                        break
            return stream.is_running

        self.assertFalse(asyncio.run(go()))
        self.assertEqual([(Role.USER, "hỏi")], self.store.contents("conv-1"))


class ChatTests(unittest.TestCase):
    def test_chat_collects_whole_turn(self) -> None:
        store = _MemoryStore()
        tool = FakeTool(ToolName.GET_STATISTICS, result="{}")
        provider = ScriptedProvider([
            tool_round(("c1", "get_statistics", "{}")),
            text_round("Doanh thu ", "1.500.000đ"),
        ])
        orch = _orchestrator(provider, tool, store=store)

        response = asyncio.run(orch.chat("u1", "Doanh thu hôm nay?"))

        self.assertEqual(
            ChatResponse(
                success=True,
                response="Doanh thu 1.500.000đ",
                conversation_id="conv-1",
                tools_used=("get_statistics",),
            ),
            response,
        )

    def test_chat_failure(self) -> None:
        orch = _orchestrator(ScriptedProvider([]))

        response = asyncio.run(orch.chat("u1", " ", conversation_id="c9"))

        self.assertFalse(response.success)
        self.assertEqual(MSG_EMPTY_MESSAGE, response.error)
        self.assertEqual("c9", response.conversation_id)

    def test_concurrent_turns_are_independent(self) -> None:
        provider = ScriptedProvider([text_round("A"), text_round("B")])
        orch = _orchestrator(provider, store=_MemoryStore())

        async def go():
            return await asyncio.gather(orch.chat("u1", "một"), orch.chat("u2", "hai"))

        first, second = asyncio.run(go())

        self.assertTrue(first.success and second.success)
        self.assertNotEqual(first.conversation_id, second.conversation_id)
        self.assertEqual({"A", "B"}, {first.response, second.response})


if __name__ == "__main__":
    unittest.main()
