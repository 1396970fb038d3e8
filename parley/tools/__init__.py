"""Model-callable tools: web search, page extraction and thread hand-off."""

from parley.tools.base import Tool
from parley.tools.registry import ToolRegistry
from parley.tools.validation import ToolValidator

__all__ = ["Tool", "ToolRegistry", "ToolValidator"]
