"""Tests for the turn orchestrator."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from parley.background import drain_background
from parley.config import ParleyConfig
from parley.errors import (
    MissingApiKeyError,
    MissingSearchKeyError,
    ProviderAPIError,
    ThreadAccessError,
)
from parley.llm.parts import FilePart, Message, TextPart
from parley.llm.types import StreamChunk
from parley.orchestrator.collaborators import AttachmentRecord, ResolvedKeys, UserSettings
from parley.orchestrator.core import TurnOrchestrator, TurnRequest
from tests.fakes import FakeStore, FixedPricing
from tests.mock_providers import MockProvider, make_text_provider, text_step, tool_call_step


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _user(text: str = "Hello there", mid: str = "u1", **kwargs) -> Message:
    return Message(id=mid, role="user", parts=[TextPart(text=text)], **kwargs)


def _request(*messages: Message, **kwargs) -> TurnRequest:
    return TurnRequest(messages=list(messages) or [_user()], **kwargs)


class _Harness:
    def __init__(self, provider: MockProvider, store: FakeStore | None = None, **kwargs) -> None:
        self.provider = provider
        self.store = store or FakeStore(settings=UserSettings(auto_thread_naming=False))
        self.pricing = FixedPricing()
        self.keys_used: list[str] = []

        def factory(api_key: str) -> MockProvider:
            self.keys_used.append(api_key)
            return provider

        self.orchestrator = TurnOrchestrator(
            self.store,
            self.store,
            self.store,
            factory,
            self.pricing,
            config=ParleyConfig(),
            **kwargs,
        )

    async def run(self, request: TurnRequest, user_id: str = "alice") -> list[dict]:
        stream = await self.orchestrator.handle_turn(user_id, request)
        events = [event async for event in stream]
        await drain_background(timeout=5)
        return events


def _types(events: list[dict]) -> list[str]:
    return [e["type"] for e in events]


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TestRejections:
    async def test_foreign_thread(self):
        h = _Harness(make_text_provider("hi"), FakeStore(owners={"t1": "bob"}))
        with pytest.raises(ThreadAccessError):
            await h.orchestrator.handle_turn("alice", _request(thread_id="t1"))
        assert h.store.messages == {}

    async def test_missing_model_key(self):
        h = _Harness(make_text_provider("hi"), FakeStore(keys=ResolvedKeys()))
        with pytest.raises(MissingApiKeyError):
            await h.orchestrator.handle_turn("alice", _request())

    async def test_search_needs_parallel_key(self):
        h = _Harness(make_text_provider("hi"))
        with pytest.raises(MissingSearchKeyError):
            await h.orchestrator.handle_turn("alice", _request(search_enabled=True))

    async def test_client_key_used(self):
        h = _Harness(make_text_provider("hi"), FakeStore(keys=ResolvedKeys()))
        await h.run(_request(openrouter_client_key="sk-or-client"))
        assert h.keys_used == ["sk-or-client"]


# ---------------------------------------------------------------------------
# Streaming and persistence
# ---------------------------------------------------------------------------


class TestStreaming:
    async def test_event_sequence_and_metadata(self):
        h = _Harness(make_text_provider("Hello world"))
        events = await h.run(_request(model_id="openai/gpt-4o"))

        assert _types(events) == [
            "start",
            "start-step",
            "text-start",
            "text-delta",
            "text-delta",
            "text-end",
            "finish-step",
            "finish",
        ]
        meta = events[-1]["messageMetadata"]
        assert meta["model"] == "openai/gpt-4o"
        assert meta["inputTokens"] == 10
        assert meta["outputTokens"] == 2
        assert meta["costUSD"]["total"] == pytest.approx((10 * 1.0 + 2 * 2.0) / 1_000_000)
        assert h.pricing.calls == [("openai/gpt-4o", None)]

    async def test_default_model(self):
        h = _Harness(make_text_provider("ok"))
        await h.run(_request())
        assert h.provider.step_calls[0]["model_id"] == ParleyConfig().llm.default_model

    async def test_messages_persisted(self):
        h = _Harness(make_text_provider("Hi back"))
        events = await h.run(_request(thread_id="t1", search_enabled=False, reasoning_level="low"))

        user, assistant = h.store.messages["t1"]
        assert user.id == "u1"
        assert user.reasoning_level == "low"
        assert user.search_enabled is False
        assert user.model_id == ParleyConfig().llm.default_model
        assert assistant.id == events[0]["messageId"]
        assert assistant.parts == [TextPart(text="Hi back")]
        assert assistant.metadata["outputTokens"] == 2

    async def test_regeneration_does_not_resave_user(self):
        h = _Harness(make_text_provider("again"))
        await h.run(_request(thread_id="t1", is_regeneration=True))
        (assistant,) = h.store.messages["t1"]
        assert assistant.role == "assistant"

    async def test_save_failure_does_not_break_stream(self):
        store = FakeStore(settings=UserSettings(auto_thread_naming=False))
        store.save_error = RuntimeError("disk full")
        h = _Harness(make_text_provider("fine"), store)
        events = await h.run(_request(thread_id="t1"))
        assert events[-1]["type"] == "finish"

    async def test_provider_failure_becomes_error_event(self):
        provider = MockProvider(
            steps=[[StreamChunk(delta="par")]],
            step_error=ProviderAPIError(402),
        )
        h = _Harness(provider)
        events = await h.run(_request(thread_id="t1"))
        assert events[-1]["type"] == "error"
        assert "credits" in events[-1]["errorText"]
        user, partial = h.store.messages["t1"]
        assert partial.id == events[0]["messageId"]
        assert partial.parts == [TextPart(text="par")]
        assert partial.metadata is None

    async def test_provider_failure_before_content_stores_no_answer(self):
        provider = MockProvider(steps=[[]], step_error=ProviderAPIError(500))
        h = _Harness(provider)
        events = await h.run(_request(thread_id="t1"))
        assert events[-1]["type"] == "error"
        assert [m.role for m in h.store.messages["t1"]] == ["user"]

    async def test_reasoning_and_options(self):
        h = _Harness(make_text_provider("ok"))
        await h.run(_request(reasoning_level="high"))
        assert h.provider.step_calls[0]["options"] == {"reasoning": {"effort": "high"}}

    async def test_reasoning_none_sends_no_options(self):
        h = _Harness(make_text_provider("ok"))
        await h.run(_request(reasoning_level="none"))
        assert h.provider.step_calls[0]["options"] is None

    async def test_custom_instructions_in_system_prompt(self):
        store = FakeStore(settings=UserSettings(custom_instructions="Answer in French", auto_thread_naming=False))
        h = _Harness(make_text_provider("ok"), store)
        await h.run(_request())
        system = h.provider.step_calls[0]["messages"][0]
        assert system.role == "system"
        assert system.content.endswith("Answer in French")


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

SEARCH_RESPONSE = {
    "search_id": "s1",
    "results": [{"url": f"https://{i}.example", "title": str(i)} for i in range(12)],
}


class TestTools:
    async def test_no_tools_when_model_lacks_support(self):
        h = _Harness(make_text_provider("ok"))
        await h.run(_request(thread_id="t1", supports_tools=False))
        assert h.provider.step_calls[0]["tools"] is None

    async def test_handoff_offered_for_threads(self):
        h = _Harness(make_text_provider("ok"))
        await h.run(_request(thread_id="t1", supports_tools=True))
        names = [t["function"]["name"] for t in h.provider.step_calls[0]["tools"]]
        assert names == ["handoff"]

    async def test_no_tools_without_thread_or_search(self):
        h = _Harness(make_text_provider("ok"))
        await h.run(_request(supports_tools=True))
        assert h.provider.step_calls[0]["tools"] is None

    async def test_search_round_trip_is_billed(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=SEARCH_RESPONSE)

        provider = MockProvider(
            steps=[tool_call_step("search", {"objective": "news"}), text_step("Here you go")]
        )
        store = FakeStore(
            settings=UserSettings(auto_thread_naming=False),
            keys=ResolvedKeys(openrouter="sk-or", parallel="pk-stored"),
        )
        h = _Harness(provider, store, search_transport=httpx.MockTransport(handler))
        events = await h.run(_request(search_enabled=True, supports_tools=True))

        names = [t["function"]["name"] for t in provider.step_calls[0]["tools"]]
        assert names == ["extract", "search"]
        assert seen[0].headers["x-api-key"] == "pk-stored"

        output = next(e for e in events if e["type"] == "tool-output-available")["output"]
        assert output["searchId"] == "s1"
        meta = events[-1]["messageMetadata"]
        assert meta["costUSD"]["search"] == pytest.approx(0.007)
        assert len(meta["sources"]) == 12


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


class TestAttachments:
    async def test_text_file_inlined(self):
        store = FakeStore(settings=UserSettings(auto_thread_naming=False))
        store.attachments["f1"] = AttachmentRecord("f1", "alice", "notes.md", "text/markdown", "/p/notes.md")
        store.files["/p/notes.md"] = "# Notes"
        h = _Harness(make_text_provider("ok"), store)
        message = Message(
            id="u1",
            role="user",
            parts=[TextPart(text="Summarize"), FilePart(url="", media_type="text/markdown", id="f1")],
        )
        await h.run(_request(message))
        sent = h.provider.step_calls[0]["messages"][-1]
        assert sent.content == "Summarize\n\n[File Content: notes.md]\n# Notes\n"

    async def test_foreign_text_file_dropped(self):
        store = FakeStore(settings=UserSettings(auto_thread_naming=False))
        store.attachments["f1"] = AttachmentRecord("f1", "bob", "secret.txt", "text/plain", "/p/s")
        store.files["/p/s"] = "secret"
        h = _Harness(make_text_provider("ok"), store)
        message = Message(
            id="u1",
            role="user",
            parts=[TextPart(text="Read"), FilePart(url="", media_type="text/plain", id="f1")],
        )
        await h.run(_request(message))
        assert h.provider.step_calls[0]["messages"][-1].content == "Read"

    async def test_pdf_ocr_engine_and_pages(self):
        store = FakeStore(settings=UserSettings(use_ocr_for_pdfs=True, auto_thread_naming=False))
        store.page_counts["/p/a.pdf"] = 500
        h = _Harness(make_text_provider("ok"), store)
        message = Message(
            id="u1",
            role="user",
            parts=[
                TextPart(text="Read"),
                FilePart(url="data:application/pdf;base64,AA", media_type="application/pdf", storage_path="/p/a.pdf"),
            ],
        )
        events = await h.run(_request(message, reasoning_level="low"))
        options = h.provider.step_calls[0]["options"]
        assert options["plugins"][0]["pdf"]["engine"] == "mistral-ocr"
        assert options["reasoning"] == {"effort": "low"}
        assert events[-1]["messageMetadata"]["costUSD"]["ocr"] == pytest.approx(1.0)

    async def test_native_pdf_skips_plugin(self):
        h = _Harness(make_text_provider("ok"))
        message = Message(
            id="u1",
            role="user",
            parts=[FilePart(url="data:", media_type="application/pdf")],
        )
        await h.run(_request(message, supports_native_pdf=True))
        assert h.provider.step_calls[0]["options"] is None


# ---------------------------------------------------------------------------
# Thread naming
# ---------------------------------------------------------------------------


class TestThreadNaming:
    async def test_first_message_names_thread(self):
        store = FakeStore(settings=UserSettings(auto_thread_naming=True, auto_thread_icon=True))
        provider = make_text_provider("ok", completion='"Trip to Lisbon planning"')
        h = _Harness(provider, store)
        await h.run(_request(thread_id="t1"))
        assert store.titles["t1"] == "Trip to Lisbon planning"
        # the icon answer is not a known icon name
        assert store.icons["t1"] == "message-circle"
        assert len(provider.complete_calls) == 2

    async def test_later_turns_do_not_rename(self):
        store = FakeStore(settings=UserSettings(auto_thread_naming=True))
        h = _Harness(make_text_provider("ok"), store)
        history = [
            _user("first", "u1"),
            Message(id="a1", role="assistant", parts=[TextPart(text="reply")]),
            _user("second", "u2"),
        ]
        await h.run(_request(*history, thread_id="t1"))
        assert "t1" not in store.titles
        assert h.provider.complete_calls == []

    async def test_naming_disabled(self):
        store = FakeStore(settings=UserSettings(auto_thread_naming=False))
        h = _Harness(make_text_provider("ok"), store)
        await h.run(_request(thread_id="t1"))
        assert store.titles == {}

    async def test_title_failure_is_swallowed(self):
        store = FakeStore(settings=UserSettings(auto_thread_naming=True))
        provider = make_text_provider("ok", complete_error=RuntimeError("down"))
        h = _Harness(provider, store)
        events = await h.run(_request(thread_id="t1"))
        assert events[-1]["type"] == "finish"
        assert store.titles["t1"] == "New Thread"


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


class TestTurnRequest:
    def test_from_dict(self):
        req = TurnRequest.from_dict(
            {
                "messages": [{"id": "u1", "role": "user", "parts": [{"type": "text", "text": "hi"}]}],
                "threadId": "t1",
                "searchEnabled": True,
                "modelId": "x/y",
                "modelPricing": {"prompt": "0.000001", "completion": "0.000002"},
            }
        )
        assert req.thread_id == "t1"
        assert req.search_enabled
        assert req.model_pricing["prompt"] == "0.000001"
        assert TurnRequest.from_dict(req.to_dict()) == req

    @pytest.mark.parametrize("body", [[], {"messages": []}, {"threadId": "t1"}])
    def test_invalid(self, body):
        with pytest.raises(ValueError):
            TurnRequest.from_dict(body)

    async def test_cancel_propagates(self):
        release = asyncio.Event()

        class SlowProvider(MockProvider):
            async def stream_step(self, *args, **kwargs):
                yield StreamChunk(delta="x")
                await release.wait()
                yield StreamChunk(done=True)

        h = _Harness(SlowProvider())
        stream = await h.orchestrator.handle_turn("alice", _request(thread_id="t1"))

        async def consume():
            async for _ in stream:
                pass

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert [m.role for m in h.store.messages["t1"]] == ["user"]
