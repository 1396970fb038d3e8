"""
Tests for the SQLite chat store.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from parley.chat.thread_meta import DEFAULT_TITLE
from parley.llm.parts import Message, TextPart
from parley.orchestrator.collaborators import ResolvedKeys, UserSettings
from parley.storage.store import KEY_OPENROUTER, KEY_PARALLEL, SCHEMA_VERSION, ChatStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(tmp_path: Path):
    s = ChatStore(
        str(tmp_path / "chat.db"),
        str(tmp_path / "files"),
        server_keys=ResolvedKeys(openrouter="sk-or-env"),
    )
    await s.init()
    yield s
    await s.close()


def _msg(mid: str, role: str = "user", text: str = "") -> Message:
    return Message(id=mid, role=role, parts=[TextPart(text=text or mid)])


async def _thread_with(store: ChatStore, *ids: str, thread_id: str = "t1") -> str:
    await store.ensure_thread_exists(thread_id, "alice")
    for i, mid in enumerate(ids):
        await store.save_message(thread_id, "alice", _msg(mid, "user" if i % 2 == 0 else "assistant"))
    return thread_id


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    async def test_version_recorded(self, store: ChatStore):
        assert await store._get_schema_version() == SCHEMA_VERSION

    async def test_reopen_is_idempotent(self, tmp_path: Path, store: ChatStore):
        await _thread_with(store, "u1")
        await store.close()
        again = ChatStore(str(tmp_path / "chat.db"), str(tmp_path / "files"))
        await again.init()
        try:
            assert [m.id for m in await again.get_messages("t1", "alice")] == ["u1"]
        finally:
            await again.close()


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------


class TestThreads:
    async def test_ensure_creates_then_reports_existing(self, store: ChatStore):
        first = await store.ensure_thread_exists("t1", "alice")
        assert (first.exists, first.owned, first.created) == (False, True, True)

        second = await store.ensure_thread_exists("t1", "alice")
        assert (second.exists, second.owned, second.created) == (True, True, False)

        other = await store.ensure_thread_exists("t1", "bob")
        assert other.exists and not other.owned

    async def test_new_thread_has_default_title(self, store: ChatStore):
        await store.ensure_thread_exists("t1", "alice")
        thread = await store.get_thread("t1", "alice")
        assert thread["title"] == DEFAULT_TITLE
        assert await store.get_thread("t1", "bob") is None

    async def test_create_child_thread(self, store: ChatStore):
        await store.ensure_thread_exists("parent", "alice")
        child = await store.create_thread("alice", "Handoff: x", parent_thread_id="parent")
        thread = await store.get_thread(child, "alice")
        assert thread["parentThreadId"] == "parent"
        assert thread["title"] == "Handoff: x"

    async def test_rename_and_icon(self, store: ChatStore):
        await store.ensure_thread_exists("t1", "alice")
        await store.rename_thread("t1", "alice", "Trip planning")
        await store.update_thread_icon("t1", "alice", "plane")
        await store.rename_thread("t1", "bob", "hijacked")
        thread = await store.get_thread("t1", "alice")
        assert thread["title"] == "Trip planning"
        assert thread["icon"] == "plane"

    async def test_list_is_per_user(self, store: ChatStore):
        await store.ensure_thread_exists("a", "alice")
        await store.ensure_thread_exists("b", "bob")
        assert [t["id"] for t in await store.list_threads("alice")] == ["a"]

    async def test_delete_cascades_messages(self, store: ChatStore):
        await _thread_with(store, "u1", "a1")
        assert not await store.delete_thread("t1", "bob")
        assert await store.delete_thread("t1", "alice")
        assert await store.get_messages("t1", "alice") == []


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessages:
    async def test_order_preserved(self, store: ChatStore):
        await _thread_with(store, "u1", "a1", "u2", "a2")
        assert [m.id for m in await store.get_messages("t1", "alice")] == ["u1", "a1", "u2", "a2"]

    async def test_resave_updates_in_place(self, store: ChatStore):
        await _thread_with(store, "u1", "a1", "u2")
        stopped = _msg("a1", "assistant", "partial")
        stopped.stopped_by_user = True
        await store.save_message("t1", "alice", stopped)

        messages = await store.get_messages("t1", "alice")
        assert [m.id for m in messages] == ["u1", "a1", "u2"]
        assert messages[1].stopped_by_user
        assert messages[1].parts[0].text == "partial"

    async def test_save_to_foreign_thread_ignored(self, store: ChatStore):
        await _thread_with(store, "u1")
        await store.save_message("t1", "bob", _msg("evil"))
        assert [m.id for m in await store.get_messages("t1", "alice")] == ["u1"]
        assert await store.get_messages("t1", "bob") == []


class TestTruncate:
    async def test_deletes_from_position(self, store: ChatStore):
        await _thread_with(store, "u1", "a1", "u2", "a2")
        assert await store.truncate_thread_messages("t1", "alice", 2) == 2
        assert [m.id for m in await store.get_messages("t1", "alice")] == ["u1", "a1"]

    async def test_repeat_is_noop(self, store: ChatStore):
        await _thread_with(store, "u1", "a1", "u2", "a2")
        await store.truncate_thread_messages("t1", "alice", 1)
        assert await store.truncate_thread_messages("t1", "alice", 1) == 0
        assert [m.id for m in await store.get_messages("t1", "alice")] == ["u1"]

    async def test_zero_clears_thread(self, store: ChatStore):
        await _thread_with(store, "u1", "a1")
        assert await store.truncate_thread_messages("t1", "alice", 0) == 2

    async def test_past_end(self, store: ChatStore):
        await _thread_with(store, "u1")
        assert await store.truncate_thread_messages("t1", "alice", 5) == 0

    async def test_other_user_cannot_truncate(self, store: ChatStore):
        await _thread_with(store, "u1", "a1")
        assert await store.truncate_thread_messages("t1", "bob", 0) == 0
        assert len(await store.get_messages("t1", "alice")) == 2

    async def test_negative_rejected(self, store: ChatStore):
        with pytest.raises(ValueError):
            await store.truncate_thread_messages("t1", "alice", -1)


# ---------------------------------------------------------------------------
# Settings and keys
# ---------------------------------------------------------------------------


class TestSettingsAndKeys:
    async def test_default_settings(self, store: ChatStore):
        assert await store.get_settings("alice") == UserSettings()

    async def test_settings_round_trip(self, store: ChatStore):
        settings = UserSettings(custom_instructions="be brief", auto_thread_icon=True)
        await store.save_settings("alice", settings)
        assert await store.get_settings("alice") == settings

    async def test_key_precedence(self, store: ChatStore):
        keys = await store.resolve_keys("alice")
        assert keys.openrouter == "sk-or-env"
        assert keys.parallel is None

        await store.set_api_key("alice", KEY_OPENROUTER, "sk-or-stored")
        await store.set_api_key("alice", KEY_PARALLEL, "pk-stored")
        keys = await store.resolve_keys("alice")
        assert (keys.openrouter, keys.parallel) == ("sk-or-stored", "pk-stored")

        keys = await store.resolve_keys("alice", openrouter_client_key="sk-or-client")
        assert keys.openrouter == "sk-or-client"
        assert keys.parallel == "pk-stored"


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


class TestAttachments:
    async def test_add_read_and_count(self, store: ChatStore):
        note = await store.add_attachment("alice", "notes.txt", "text/plain", b"hello")
        pdf = await store.add_attachment("alice", "paper.pdf", "application/pdf", b"%PDF", page_count=7)

        assert Path(note.storage_path).is_file()
        assert await store.read_text(note.storage_path) == "hello"
        assert await store.get_pdf_page_counts([pdf.storage_path, note.storage_path]) == {
            pdf.storage_path: 7
        }

    async def test_lookup_scoped_to_owner(self, store: ChatStore):
        record = await store.add_attachment("alice", "a.txt", "text/plain", b"x")
        assert await store.get_attachments("bob", [record.id]) == []
        assert [r.id for r in await store.get_attachments("alice", [record.id, "missing"])] == [record.id]

    async def test_filename_path_components_stripped(self, store: ChatStore):
        record = await store.add_attachment("alice", "../../etc/passwd", "text/plain", b"x")
        assert Path(record.storage_path).parent == store.files_dir

    async def test_delete_removes_rows_and_files(self, store: ChatStore):
        record = await store.add_attachment("alice", "a.txt", "text/plain", b"x")
        assert await store.delete_attachments("bob", [record.id]) == 0
        assert await store.delete_attachments("alice", [record.id, "missing"]) == 1
        assert not Path(record.storage_path).exists()
        assert await store.get_attachments("alice", [record.id]) == []
