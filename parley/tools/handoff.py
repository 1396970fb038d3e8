"""
Thread hand-off: summarize the current conversation into a seed prompt and
open a child thread for it.

The prompt is generated before anything is written, and the child thread is
created with a single insert, so a failure at either step leaves no thread
behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from parley.llm.parts import FilePart, Message, TextPart, ToolCallPart
from parley.llm.providers.base import Provider
from parley.llm.types import ModelMessage
from parley.tools.base import Tool
from parley.types import ErrorCode, ToolErrorOutput

logger = logging.getLogger(__name__)

HANDOFF_MODEL = "google/gemini-2.5-flash"

HANDOFF_SYSTEM_PROMPT = """You are a context summarizer. Your job is to read a conversation and the user's handoff request, then generate a focused prompt for a new conversation thread.

The prompt you generate should:
1. Provide essential context from the previous conversation (key decisions, conclusions, relevant details)
2. Clearly state what the new conversation should focus on
3. Include any specific requirements or constraints mentioned
4. Be concise but complete - the new thread should not need to reference the old one
5. NOT include entire files or large code blocks - use excerpts or descriptions instead
6. Be written as if the user is starting a fresh conversation with a new assistant

Format the prompt naturally, as if the user wrote it themselves. Do not include meta-commentary about what you're doing."""

HANDOFF_DESCRIPTION = """Hand off the conversation to a new thread with focused context. Use this when:
- The conversation has become long and a fresh start would help
- The user wants to explore a specific topic from the conversation in depth
- The user explicitly asks to "hand off" or start a new thread about something

Guidelines:
- Provide a clear objective describing what the new thread should focus on
- The new thread will receive a summarized context, not the full conversation
- The user will be navigated to the new thread automatically"""


class ThreadCreator(Protocol):
    async def create_thread(
        self, user_id: str, title: str, parent_thread_id: str | None = None
    ) -> str: ...


@dataclass
class HandoffOutput:
    new_thread_id: str
    generated_prompt: str
    parent_thread_id: str

    def to_dict(self) -> dict:
        return {
            "newThreadId": self.new_thread_id,
            "generatedPrompt": self.generated_prompt,
            "parentThreadId": self.parent_thread_id,
        }


def format_conversation_for_handoff(messages: list[Message]) -> str:
    formatted: list[str] = []
    for message in messages:
        role = "User" if message.role == "user" else "Assistant"
        content = ""
        for part in message.parts:
            if isinstance(part, TextPart):
                content += part.text
            elif isinstance(part, FilePart):
                content += f"[Attachment: {part.filename or 'file'}]"
            elif isinstance(part, ToolCallPart) and part.tool_name in ("search", "extract"):
                content += "[Web search performed]"
        if content.strip():
            formatted.append(f"{role}: {content.strip()}")
    return "\n\n".join(formatted)


def handoff_title(objective: str) -> str:
    suffix = "..." if len(objective) > 50 else ""
    return f"Handoff: {objective[:50]}{suffix}"


async def generate_handoff_prompt(
    provider: Provider,
    messages: list[Message],
    objective: str,
    model_id: str = HANDOFF_MODEL,
) -> str:
    context = format_conversation_for_handoff(messages)
    request = (
        "Here is the conversation so far:\n\n"
        f"---\n{context}\n---\n\n"
        f'The user wants to hand off to a new thread with this objective: "{objective}"\n\n'
        "Generate a focused prompt for the new conversation that captures the essential "
        "context and clearly states what should be discussed next."
    )
    return await provider.complete(
        model_id, HANDOFF_SYSTEM_PROMPT, [ModelMessage(role="user", content=request)]
    )


class HandoffTool(Tool):
    """
    Parameters
    ----------
    provider : Provider
        Used for the summarizing completion.
    threads : ThreadCreator
        Creates the child thread.
    user_id, thread_id : str
        Owner and id of the thread being handed off.
    messages : list[Message]
        The conversation as sent with this turn.
    model_id : str
        Summarizer model.
    """

    def __init__(
        self,
        provider: Provider,
        threads: ThreadCreator,
        user_id: str,
        thread_id: str,
        messages: list[Message],
        model_id: str = HANDOFF_MODEL,
    ) -> None:
        self._provider = provider
        self._threads = threads
        self._user_id = user_id
        self._thread_id = thread_id
        self._messages = messages
        self._model_id = model_id

    @property
    def name(self) -> str:
        return "handoff"

    @property
    def description(self) -> str:
        return HANDOFF_DESCRIPTION

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "objective": {
                    "type": "string",
                    "maxLength": 500,
                    "description": "What the new thread should focus on.",
                },
            },
            "required": ["objective"],
        }

    async def execute(self, args, *, abort=None):
        objective = args["objective"]
        try:
            prompt = await generate_handoff_prompt(
                self._provider, self._messages, objective, self._model_id
            )
        except Exception as exc:
            logger.exception("Handoff prompt generation failed")
            return ToolErrorOutput(
                ErrorCode.GENERATION_FAILED, str(exc) or "Failed to generate handoff"
            )
        if not prompt.strip():
            return ToolErrorOutput(ErrorCode.GENERATION_FAILED, "Failed to generate handoff")

        try:
            new_thread_id = await self._threads.create_thread(
                self._user_id, handoff_title(objective), parent_thread_id=self._thread_id
            )
        except Exception as exc:
            logger.exception("Handoff thread creation failed")
            return ToolErrorOutput(
                ErrorCode.THREAD_CREATION_FAILED, str(exc) or "Failed to create thread"
            )

        logger.info("Handed off thread %s to %s", self._thread_id, new_thread_id)
        return HandoffOutput(
            new_thread_id=new_thread_id,
            generated_prompt=prompt.strip(),
            parent_thread_id=self._thread_id,
        )
