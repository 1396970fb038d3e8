"""
Narrow contracts the turn orchestrator calls out through.

``parley.storage.store.ChatStore`` implements all of them; tests substitute
in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from parley.llm.parts import Message


@dataclass
class UserSettings:
    custom_instructions: str = ""
    auto_thread_naming: bool = True
    auto_thread_icon: bool = False
    use_ocr_for_pdfs: bool = False

    def to_dict(self) -> dict:
        return {
            "customInstructions": self.custom_instructions,
            "autoThreadNaming": self.auto_thread_naming,
            "autoThreadIcon": self.auto_thread_icon,
            "useOcrForPdfs": self.use_ocr_for_pdfs,
        }

    @classmethod
    def from_dict(cls, data: dict) -> UserSettings:
        return cls(
            custom_instructions=data.get("customInstructions") or "",
            auto_thread_naming=bool(data.get("autoThreadNaming", True)),
            auto_thread_icon=bool(data.get("autoThreadIcon", False)),
            use_ocr_for_pdfs=bool(data.get("useOcrForPdfs", False)),
        )


@dataclass
class ResolvedKeys:
    openrouter: str | None = None
    parallel: str | None = None


@dataclass
class ThreadStatus:
    """Outcome of ``ensure_thread_exists``."""

    exists: bool
    owned: bool
    created: bool = False


@dataclass
class AttachmentRecord:
    id: str
    user_id: str
    filename: str
    media_type: str
    storage_path: str
    page_count: int | None = None


class ThreadStore(Protocol):
    async def ensure_thread_exists(self, thread_id: str, user_id: str) -> ThreadStatus: ...

    async def create_thread(
        self, user_id: str, title: str, parent_thread_id: str | None = None
    ) -> str: ...

    async def save_message(
        self, thread_id: str, user_id: str, message: Message
    ) -> None: ...

    async def rename_thread(self, thread_id: str, user_id: str, title: str) -> None: ...

    async def update_thread_icon(self, thread_id: str, user_id: str, icon: str) -> None: ...


class SettingsStore(Protocol):
    async def get_settings(self, user_id: str) -> UserSettings: ...

    async def resolve_keys(
        self,
        user_id: str,
        openrouter_client_key: str | None = None,
        parallel_client_key: str | None = None,
    ) -> ResolvedKeys: ...


class AttachmentStore(Protocol):
    async def get_attachments(self, user_id: str, ids: list[str]) -> list[AttachmentRecord]: ...

    async def read_text(self, storage_path: str) -> str: ...

    async def get_pdf_page_counts(self, storage_paths: list[str]) -> dict[str, int]: ...
