"""System prompt builder."""

from __future__ import annotations


def build_system_prompt(
    custom_instructions: str | None = None,
    tool_names: list[str] | None = None,
) -> str:
    """
    Build the system prompt for a chat turn.

    Assembles the assistant identity, tool notes, and formatting conventions,
    followed by the user's own instructions when set.
    """
    sections: list[str] = [IDENTITY_SECTION]

    tool_lines = [TOOL_NOTES[name] for name in tool_names or [] if name in TOOL_NOTES]
    sections.append("## Tools\n\n" + "\n".join([NO_IMAGE_TOOL] + tool_lines))
    sections.append(FORMATTING_SECTION)

    if custom_instructions and custom_instructions.strip():
        sections.append("# User Instructions\n\n" + custom_instructions.strip())

    return "\n\n".join(sections)


IDENTITY_SECTION = """# System Instructions

You are Parley, an AI assistant. Use the following instructions to guide your responses."""

NO_IMAGE_TOOL = (
    "- You do not have access to an image generation tool. If the user requests "
    "image generation, tell them you cannot create images."
)

TOOL_NOTES: dict[str, str] = {
    "search": "- Use `search` for current events or facts you are unsure of, and cite the sources you used.",
    "extract": "- Use `extract` to read a specific URL the user shares or a promising search result.",
    "handoff": "- Use `handoff` only when the user asks to continue in a new thread.",
}

FORMATTING_SECTION = """## Formatting

When writing code:
- Use triple backticks for code blocks, specifying the language (e.g., ```python).
- Use inline code formatting with single backticks (e.g., `code`).

When writing math:
- Use $...$ for inline math (e.g., $x^2$)
- Use $$...$$ for display/block math on its own line
- Use \\begin{aligned}...\\end{aligned} for multi-line equations (never use \\align)
- Use \\text{} for text within math
- For matrices, use \\begin{pmatrix} or \\begin{bmatrix} with \\\\ between rows
- Escape dollar signs that are not math (e.g., write \\$25 for currency)"""
