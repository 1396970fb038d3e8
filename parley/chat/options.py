"""Provider request options derived from the turn: PDF parsing and reasoning effort."""

from __future__ import annotations

from parley.llm.parts import FilePart, Message, is_pdf_file
from parley.types import ReasoningLevel

PDF_ENGINE_OCR = "mistral-ocr"
PDF_ENGINE_TEXT = "pdf-text"


def has_pdf_attachment(messages: list[Message]) -> bool:
    return any(is_pdf_file(p) for m in messages for p in m.parts)


def pdf_storage_paths(messages: list[Message]) -> list[str]:
    return [
        p.storage_path
        for m in messages
        for p in m.parts
        if isinstance(p, FilePart) and is_pdf_file(p) and p.storage_path
    ]


def pdf_plugin_config(
    has_pdf: bool, supports_native_pdf: bool, use_ocr: bool
) -> dict | None:
    """OpenRouter ``file-parser`` plugin, or ``None`` when not needed."""
    if not has_pdf or supports_native_pdf:
        return None
    engine = PDF_ENGINE_OCR if use_ocr else PDF_ENGINE_TEXT
    return {"plugins": [{"id": "file-parser", "pdf": {"engine": engine}}]}


def reasoning_config(level: str | None) -> dict | None:
    if not level or level == ReasoningLevel.NONE:
        return None
    return {"reasoning": {"effort": level}}


def merge_options(*configs: dict | None) -> dict | None:
    merged: dict = {}
    for cfg in configs:
        if cfg:
            merged.update(cfg)
    return merged or None
