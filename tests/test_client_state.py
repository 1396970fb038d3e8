"""Tests for the client transport and the stop / regenerate / edit protocols."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from parley.background import drain_background
from parley.client.state import ConversationState, EditPayload, MessageStatus
from parley.client.transport import ChatTransport, TurnContext, build_turn_request
from parley.config import ParleyConfig
from parley.errors import ChatRequestError, ProviderAPIError, ReconcileError
from parley.llm.parts import FilePart, Message, TextPart, message_text
from parley.orchestrator.collaborators import UserSettings
from parley.orchestrator.core import TurnOrchestrator
from tests.fakes import FakeStore, FakeTransport, FixedPricing, InProcessTransport, reply_events as _reply
from tests.mock_providers import MockProvider, make_text_provider, text_step


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _history() -> list[Message]:
    return [
        Message(id="u1", role="user", parts=[TextPart(text="first")], search_enabled=True, reasoning_level="high", model_id="m/one"),
        Message(id="a1", role="assistant", parts=[TextPart(text="answer one")], metadata={}),
        Message(id="u2", role="user", parts=[TextPart(text="second")]),
        Message(id="a2", role="assistant", parts=[TextPart(text="answer two")], metadata={}),
    ]


def _ids(state: ConversationState) -> list[str]:
    return [m.id for m in state.messages]


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------


class TestSend:
    async def test_send_carries_toggles(self):
        transport = FakeTransport([_reply("Hello!")])
        context = TurnContext(search_enabled=True, reasoning_level="low", model_id="x/y")
        state = ConversationState("t1", transport, context)

        reply = await state.send("hi")

        user, assistant = state.messages
        assert (user.search_enabled, user.reasoning_level, user.model_id) == (True, "low", "x/y")
        assert reply is assistant
        assert assistant.id == "srv"
        assert assistant.parts == [TextPart(text="Hello!")]
        assert state.status_of("srv") == MessageStatus.FINALIZED
        request = transport.requests[0]
        assert request.thread_id == "t1"
        assert request.search_enabled
        assert not request.is_regeneration

    async def test_events_forwarded(self):
        seen: list[str] = []
        state = ConversationState("t1", FakeTransport(), on_event=lambda e: seen.append(e["type"]))
        await state.send("hi")
        assert seen == ["start", "text-start", "text-delta", "text-end", "finish"]

    async def test_rejection_discards_user_message(self):
        transport = FakeTransport()
        transport.reject = ChatRequestError(400, "No API key configured.")
        state = ConversationState("t1", transport, messages=_history())

        with pytest.raises(ChatRequestError):
            await state.send("hi")
        assert _ids(state) == ["u1", "a1", "u2", "a2"]
        assert state.last_error == "No API key configured."

    async def test_error_event_without_content(self):
        transport = FakeTransport([[{"type": "start", "messageId": "s"}, {"type": "error", "errorText": "boom"}]])
        state = ConversationState("t1", transport)
        assert await state.send("hi") is None
        assert [m.role for m in state.messages] == ["user"]
        assert state.last_error == "boom"

    async def test_load_restores_stopped(self):
        state = await ConversationState.load(FakeTransport(), "t1")
        assert state.status_of("a1") == MessageStatus.STOPPED
        assert state.status_of("nope") is None


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------


class TestStop:
    async def _streaming_state(self) -> tuple[ConversationState, FakeTransport, asyncio.Task]:
        transport = FakeTransport()
        transport.hold = asyncio.Event()
        state = ConversationState("t1", transport, TurnContext(model_id="m/fast"))
        task = asyncio.create_task(state.send("tell me a story"))
        await asyncio.wait_for(transport.streaming.wait(), timeout=5)
        return state, transport, task

    async def test_stop_keeps_partial_and_persists(self):
        state, transport, task = await self._streaming_state()
        assert state.is_streaming

        info = state.stop()
        reply = await task
        await drain_background(timeout=5)

        assert info.message_id == "srv"
        assert info.model_id == "m/fast"
        assert reply.stopped_by_user
        assert state.status_of("srv") == MessageStatus.STOPPED
        assert not state.is_streaming
        ((thread_id, saved),) = transport.stopped
        assert thread_id == "t1"
        assert saved.id == "srv"
        assert saved.stopped_by_user
        assert saved is not reply

    async def test_second_stop_is_noop(self):
        state, transport, task = await self._streaming_state()
        state.stop()
        await task
        assert state.stop() is None
        await drain_background(timeout=5)
        assert len(transport.stopped) == 1

    async def test_persist_failure_is_logged_only(self):
        state, transport, task = await self._streaming_state()
        transport.persist_error = RuntimeError("offline")
        state.stop()
        await task
        await drain_background(timeout=5)
        assert state.status_of("srv") == MessageStatus.STOPPED

    async def test_stop_with_nothing_in_flight(self):
        state = ConversationState("t1", FakeTransport(), messages=_history()[:3])
        assert state.stop() is None

    async def test_send_while_streaming_refused(self):
        state, transport, task = await self._streaming_state()
        with pytest.raises(ReconcileError):
            await state.send("again")
        state.stop()
        await task


# ---------------------------------------------------------------------------
# Regenerate / edit
# ---------------------------------------------------------------------------


class TestRegenerate:
    async def test_truncates_then_streams(self):
        transport = FakeTransport([_reply("new answer", "a2-new")])
        state = ConversationState("t1", transport, messages=_history())

        reply = await state.regenerate("a2")

        assert transport.truncations == [("t1", 3)]
        assert _ids(state) == ["u1", "a1", "u2", "a2-new"]
        assert reply.parts == [TextPart(text="new answer")]
        request = transport.requests[0]
        assert request.is_regeneration
        assert [m.id for m in request.messages] == ["u1", "a1", "u2"]

    async def test_regenerating_earlier_answer_drops_later_turns(self):
        state = ConversationState("t1", FakeTransport(), messages=_history())
        await state.regenerate("a1")
        assert _ids(state) == ["u1", "srv"]

    async def test_user_message_is_noop(self):
        transport = FakeTransport()
        state = ConversationState("t1", transport, messages=_history())
        assert await state.regenerate("u2") is None
        assert transport.truncations == []

    async def test_truncate_failure_leaves_state(self):
        transport = FakeTransport()
        transport.truncate_error = ChatRequestError(500, "db down")
        state = ConversationState("t1", transport, messages=_history())
        with pytest.raises(ReconcileError):
            await state.regenerate("a2")
        assert _ids(state) == ["u1", "a1", "u2", "a2"]
        assert transport.requests == []

    async def test_stopped_flag_cleared(self):
        history = _history()
        history[3].stopped_by_user = True
        state = ConversationState("t1", FakeTransport([_reply("x", "a2b")]), messages=history)
        assert state.status_of("a2") == MessageStatus.STOPPED
        await state.regenerate("a2")
        assert "a2" not in state.stopped

    async def test_unsaved_conversation_skips_server(self):
        transport = FakeTransport()
        state = ConversationState(None, transport, messages=_history())
        await state.regenerate("a2")
        assert transport.truncations == []


class TestEdit:
    async def test_edit_restores_original_toggles(self):
        transport = FakeTransport([_reply("edited answer")])
        context = TurnContext(search_enabled=False, reasoning_level="none", model_id="m/current")
        state = ConversationState("t1", transport, context, messages=_history())
        kept = FilePart(url="data:x", media_type="image/png", id="img-1")

        await state.edit(
            "u1",
            EditPayload(text="first, reworded", kept_files=[kept], removed_attachment_ids=["doc-9"]),
        )

        assert transport.truncations == [("t1", 0)]
        assert transport.deleted == [["doc-9"]]
        user, assistant = state.messages
        assert user.id != "u1"
        assert user.parts == [kept, TextPart(text="first, reworded")]
        assert (user.search_enabled, user.reasoning_level, user.model_id) == (True, "high", "m/one")
        assert assistant.parts == [TextPart(text="edited answer")]
        assert not transport.requests[0].is_regeneration

    async def test_edit_of_assistant_is_noop(self):
        transport = FakeTransport()
        state = ConversationState("t1", transport, messages=_history())
        assert await state.edit("a1", EditPayload(text="x")) is None
        assert transport.truncations == []

    async def test_truncate_failure_aborts_edit(self):
        transport = FakeTransport()
        transport.truncate_error = httpx.ConnectError("refused")
        state = ConversationState("t1", transport, messages=_history())
        with pytest.raises(ReconcileError):
            await state.edit("u2", EditPayload(text="x", removed_attachment_ids=["a"]))
        assert _ids(state) == ["u1", "a1", "u2", "a2"]
        assert transport.deleted == []


# ---------------------------------------------------------------------------
# Agreement with the stored thread
# ---------------------------------------------------------------------------


def _in_process(*providers: MockProvider) -> tuple[ConversationState, FakeStore, InProcessTransport]:
    """A client wired to a real orchestrator; turns use *providers* in order."""
    queue = list(providers)

    def factory(api_key: str) -> MockProvider:
        return queue.pop(0) if len(queue) > 1 else queue[0]

    store = FakeStore(settings=UserSettings(auto_thread_naming=False))
    orchestrator = TurnOrchestrator(store, store, store, factory, FixedPricing(), config=ParleyConfig())
    transport = InProcessTransport(orchestrator, store)
    return ConversationState("t1", transport), store, transport


def _stored_ids(store: FakeStore) -> list[str]:
    return [m.id for m in store.messages.get("t1", [])]


def _failing_provider() -> MockProvider:
    return MockProvider(
        steps=[text_step("partial answer")[:-1]],
        step_error=ProviderAPIError(500, "boom"),
    )


class TestStoredThreadAgreement:
    async def test_provider_error_after_content(self):
        state, store, _ = _in_process(_failing_provider())

        reply = await state.send("hi")

        assert reply.parts == [TextPart(text="partial answer")]
        assert state.last_error
        assert [m.role for m in state.messages] == ["user", "assistant"]
        assert _ids(state) == _stored_ids(store)

    async def test_provider_error_before_content(self):
        failing = MockProvider(steps=[[]], step_error=ProviderAPIError(500, "boom"))
        state, store, _ = _in_process(failing)

        assert await state.send("hi") is None
        assert [m.role for m in state.messages] == ["user"]
        assert _ids(state) == _stored_ids(store)

    async def test_edit_after_partial_answer(self):
        state, store, _ = _in_process(_failing_provider(), make_text_provider("fine"))
        await state.send("first")
        await state.send("second")
        assert _ids(state) == _stored_ids(store)

        await state.edit(state.messages[2].id, EditPayload(text="second, reworded"))

        assert [m.role for m in state.messages] == ["user", "assistant", "user", "assistant"]
        assert message_text(state.messages[2]) == "second, reworded"
        assert _ids(state) == _stored_ids(store)

    async def test_stop(self):
        state, store, transport = _in_process(make_text_provider("a long story about dragons"))
        transport.hold = asyncio.Event()
        task = asyncio.create_task(state.send("tell me a story"))
        await asyncio.wait_for(transport.streaming.wait(), timeout=5)

        state.stop()
        reply = await task
        await drain_background(timeout=5)

        assert reply.stopped_by_user
        assert _ids(state) == _stored_ids(store)
        assert store.messages["t1"][-1].stopped_by_user

    async def test_regenerate_earlier_answer(self):
        state, store, _ = _in_process(make_text_provider("answer"))
        await state.send("one")
        await state.send("two")
        first_answer = state.messages[1].id

        reply = await state.regenerate(first_answer)

        assert reply.id != first_answer
        assert [m.role for m in state.messages] == ["user", "assistant"]
        assert _ids(state) == _stored_ids(store)


# ---------------------------------------------------------------------------
# HTTP transport
# ---------------------------------------------------------------------------


class TestChatTransport:
    async def test_stream_turn(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = 'data: {"type":"start","messageId":"m1"}\n\ndata: {"type":"finish"}\n\ndata: [DONE]\n\n'
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        transport = ChatTransport("http://chat.test/", "alice", transport=httpx.MockTransport(handler))
        request = build_turn_request("t1", [Message(id="u1", role="user")], TurnContext(model_id="x/y"))
        events = [e async for e in transport.stream_turn(request)]

        assert [e["type"] for e in events] == ["start", "finish"]
        assert seen[0].headers["X-User-Id"] == "alice"
        body = json.loads(seen[0].content)
        assert body["threadId"] == "t1"
        assert body["modelId"] == "x/y"
        assert body["supportsTools"] is True

    async def test_rejection_raises(self):
        transport = ChatTransport(
            "http://chat.test",
            "alice",
            transport=httpx.MockTransport(lambda r: httpx.Response(403, json={"error": "Thread not found or unauthorized"})),
        )
        request = build_turn_request("t1", [Message(id="u1", role="user")], TurnContext())
        with pytest.raises(ChatRequestError) as info:
            [e async for e in transport.stream_turn(request)]
        assert info.value.status_code == 403
        assert info.value.message == "Thread not found or unauthorized"

    async def test_truncate_and_delete(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/threads/t1/truncate":
                assert json.loads(request.content) == {"keepCount": 2}
                return httpx.Response(200, json={"deleted": 3})
            return httpx.Response(200, json={"deleted": 1})

        transport = ChatTransport("http://chat.test", "alice", transport=httpx.MockTransport(handler))
        assert await transport.truncate("t1", 2) == 3
        assert await transport.delete_attachments(["a"]) == 1

    async def test_error_status_on_plain_call(self):
        transport = ChatTransport(
            "http://chat.test",
            "alice",
            transport=httpx.MockTransport(lambda r: httpx.Response(404, json={"error": "Thread not found"})),
        )
        with pytest.raises(ChatRequestError, match="Thread not found"):
            await transport.get_messages("t1")
