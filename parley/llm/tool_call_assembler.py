"""
Assembles streaming tool-call deltas into complete ToolCall objects.

Fragments are keyed by ``call_index``.  A call is finalized when a delta
with ``done=True`` arrives or when the step ends and ``flush()`` is called.
Arguments that do not parse as a JSON object drop the call and record an
entry in ``errors``; the step loop reports those back to the model.
"""

from __future__ import annotations

import json
import logging

from parley.llm.types import RawToolDelta, ToolCall

logger = logging.getLogger(__name__)


class ToolCallAssembler:
    """Buffers raw tool-call deltas and emits finished ``ToolCall`` objects."""

    def __init__(self) -> None:
        self._buf: dict[int, dict] = {}
        self._order: list[ToolCall] = []
        self.errors: list[str] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, delta: RawToolDelta) -> list[ToolCall]:
        """
        Feed a single ``RawToolDelta``.

        Returns the calls completed by this delta (possibly empty).
        """
        buf = self._buf.setdefault(
            delta.call_index, {"id": None, "name": "", "args": ""}
        )
        if delta.id and not buf["id"]:
            buf["id"] = delta.id
        buf["name"] += delta.name_delta
        buf["args"] += delta.args_delta

        if delta.done:
            return self._finalize(delta.call_index)
        return []

    def flush(self) -> list[ToolCall]:
        """
        Finalize every open buffer and return *all* calls completed since the
        last ``reset()``, in call-index order of completion.
        """
        for idx in sorted(self._buf):
            self._finalize(idx)
        return list(self._order)

    @property
    def pending(self) -> bool:
        return bool(self._buf)

    def reset(self) -> None:
        self._buf.clear()
        self._order.clear()
        self.errors.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finalize(self, idx: int) -> list[ToolCall]:
        buf = self._buf.pop(idx, None)
        if buf is None:
            return []

        name = buf["name"].strip()
        try:
            args = json.loads(buf["args"] or "{}")
        except ValueError as exc:
            self.errors.append(f"tool_call_json_parse_failed idx={idx} name={name} err={exc}")
            logger.warning("Dropping tool call %s: unparseable arguments", name or idx)
            return []
        if not isinstance(args, dict):
            self.errors.append(f"tool_call_args_not_object idx={idx} name={name}")
            return []

        call = ToolCall(id=buf["id"] or f"call_{idx}", name=name, arguments=args)
        self._order.append(call)
        return [call]
