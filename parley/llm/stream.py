"""
Multi-step streaming with tool execution.

``stream_text`` drives the provider's tool-calling loop for one turn:

1. Stream one model round-trip, turning chunks into text/reasoning/source events
2. Assemble streamed tool-call deltas
3. Validate and execute each requested tool, in order
4. Feed the results back and repeat, at most ``max_steps`` round-trips
5. Emit ``Finish`` with the summed usage

Tool failures never escape as exceptions; they become error outputs the model
can read.  Provider failures propagate to the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import AsyncIterator

from parley.llm.providers.base import Provider
from parley.llm.tool_call_assembler import ToolCallAssembler
from parley.llm.types import (
    Finish,
    FinishStep,
    ModelMessage,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    SourceEvent,
    StartStep,
    StreamEvent,
    TextDelta,
    TextEnd,
    TextStart,
    ToolCall,
    ToolCallEvent,
    ToolResultEvent,
    Usage,
)
from parley.tools.registry import ToolRegistry
from parley.tools.validation import ToolValidator
from parley.types import ErrorCode, ToolErrorOutput

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 8


def _part_id() -> str:
    return uuid.uuid4().hex[:16]


async def execute_tool_call(
    registry: ToolRegistry,
    call: ToolCall,
    abort: asyncio.Event | None = None,
) -> dict:
    """
    Run one tool call and return its serialized output.

    Steps: registry lookup, schema validation, defaults, execution.
    """
    tool = registry.get(call.name)
    if tool is None:
        return ToolErrorOutput(ErrorCode.UNKNOWN_TOOL, f"Unknown tool: {call.name}").to_dict()

    valid, error_msg = ToolValidator.validate(tool, call.arguments)
    if not valid:
        return ToolErrorOutput(
            ErrorCode.INVALID_INPUT, f"Invalid arguments: {error_msg}"
        ).to_dict()

    args = ToolValidator.apply_defaults(tool, call.arguments)
    try:
        output = await tool.execute(args, abort=abort)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception("Tool %s raised", call.name)
        return ToolErrorOutput(ErrorCode.TOOL_EXCEPTION, str(exc) or type(exc).__name__).to_dict()
    return output.to_dict()


async def stream_text(
    provider: Provider,
    model_id: str,
    messages: list[ModelMessage],
    *,
    system: str = "",
    tools: ToolRegistry | None = None,
    options: dict | None = None,
    max_steps: int = DEFAULT_MAX_STEPS,
    abort: asyncio.Event | None = None,
) -> AsyncIterator[StreamEvent]:
    """
    Stream one turn as typed events.

    *tools* of ``None`` (or an empty registry) means no tools are offered.
    """
    history: list[ModelMessage] = list(messages)
    if system:
        history.insert(0, ModelMessage(role="system", content=system))
    tool_schema = tools.to_openai_schema() if tools else None

    total = Usage()
    finish_reason: str | None = None

    for step in range(max_steps):
        yield StartStep()

        assembler = ToolCallAssembler()
        step_usage = Usage()
        step_text: list[str] = []
        text_id: str | None = None
        reasoning_id: str | None = None

        async for chunk in provider.stream_step(model_id, history, tool_schema, options):
            if chunk.reasoning_delta:
                if reasoning_id is None:
                    reasoning_id = _part_id()
                    yield ReasoningStart(id=reasoning_id)
                yield ReasoningDelta(id=reasoning_id, delta=chunk.reasoning_delta)

            if chunk.delta:
                if reasoning_id is not None:
                    yield ReasoningEnd(id=reasoning_id)
                    reasoning_id = None
                if text_id is None:
                    text_id = _part_id()
                    yield TextStart(id=text_id)
                step_text.append(chunk.delta)
                yield TextDelta(id=text_id, delta=chunk.delta)

            for source in chunk.sources or []:
                yield SourceEvent(source_id=source.url, url=source.url, title=source.title)

            for td in chunk.tool_deltas or []:
                assembler.feed(td)

            if chunk.usage is not None:
                step_usage = chunk.usage
            if chunk.finish_reason:
                finish_reason = chunk.finish_reason

        if reasoning_id is not None:
            yield ReasoningEnd(id=reasoning_id)
        if text_id is not None:
            yield TextEnd(id=text_id)

        calls = assembler.flush()
        for err in assembler.errors:
            logger.warning("Step %d: %s", step, err)

        total = total + step_usage
        yield FinishStep(usage=step_usage, finish_reason=finish_reason)

        if not calls or not tools:
            break

        history.append(
            ModelMessage(role="assistant", content="".join(step_text) or None, tool_calls=calls)
        )
        for call in calls:
            yield ToolCallEvent(tool_call_id=call.id, tool_name=call.name, input=call.arguments)
            output = await execute_tool_call(tools, call, abort)
            yield ToolResultEvent(
                tool_call_id=call.id,
                tool_name=call.name,
                input=call.arguments,
                output=output,
            )
            history.append(
                ModelMessage(role="tool", content=json.dumps(output), tool_call_id=call.id)
            )
    else:
        logger.info("Reached step limit (%d) for model %s", max_steps, model_id)

    yield Finish(total_usage=total, finish_reason=finish_reason)
