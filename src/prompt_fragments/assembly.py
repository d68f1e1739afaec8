"""Pure assembly of a final prompt from its fragment texts."""

from __future__ import annotations

PART_SEPARATOR = "\n\n"


def assemble_prompt(prefix: str, phase_text: str, main_text: str, suffix: str) -> str:
    """Join the non-blank parts, trimmed, in prefix/phase/main/suffix order."""
    parts = [part.strip() for part in (prefix, phase_text, main_text, suffix) if part and part.strip()]
    return PART_SEPARATOR.join(parts)
