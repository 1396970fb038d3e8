"""
Inline text attachments into the prompt.

Providers accept images and PDFs as file parts but not plain-text files, so
the content of ``text/*``, JSON and CSV attachments is appended to the
message's text instead.  Only attachments owned by the requesting user are
read; an attachment that cannot be read becomes a short note.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from parley.llm.parts import FilePart, Message, TextPart, is_text_file
from parley.orchestrator.collaborators import AttachmentStore

logger = logging.getLogger(__name__)


async def inline_text_files(
    messages: list[Message],
    user_id: str,
    attachments: AttachmentStore,
) -> list[Message]:
    wanted = [
        p.id
        for m in messages
        for p in m.parts
        if isinstance(p, FilePart) and is_text_file(p) and p.id
    ]
    if not wanted:
        return messages

    owned = {a.id: a for a in await attachments.get_attachments(user_id, wanted)}
    result: list[Message] = []
    for message in messages:
        inlined = ""
        kept = []
        for part in message.parts:
            if not (isinstance(part, FilePart) and is_text_file(part) and part.id):
                kept.append(part)
                continue
            record = owned.get(part.id)
            if record is None:
                logger.warning("Attachment %s not found or not owned by %s", part.id, user_id)
                continue
            try:
                content = await attachments.read_text(record.storage_path)
            except (OSError, UnicodeDecodeError) as exc:
                logger.error("Failed to read attachment %s: %s", record.filename, exc)
                inlined += f"\n\n[Failed to read file content: {record.filename}]\n"
            else:
                inlined += f"\n\n[File Content: {record.filename}]\n{content}\n"

        if inlined:
            if kept and isinstance(kept[-1], TextPart):
                kept[-1] = TextPart(text=kept[-1].text + inlined)
            else:
                kept.append(TextPart(text=inlined))
        result.append(replace(message, parts=kept) if kept != message.parts else message)
    return result
