"""Identifier schemes for fragments, phase fragments, and generation events.

Phase and event ids keep only the first eight hex characters of a UUID4 so
they stay readable. That is 32 bits of randomness: fine for small collections,
not a uniqueness guarantee at scale and never usable as a secret.
"""

from __future__ import annotations

import uuid

from prompt_fragments.errors import InvalidArgumentError

SHORT_ID_LENGTH = 8


def _short_hex() -> str:
    return uuid.uuid4().hex[:SHORT_ID_LENGTH]


def generate_fragment_id() -> str:
    return str(uuid.uuid4())


def generate_phase_id(phase_number: int) -> str:
    """Return ``p<phase>_<8 hex>`` for a positive integer phase number."""
    if isinstance(phase_number, bool) or not isinstance(phase_number, int) or phase_number < 1:
        raise InvalidArgumentError(f"Phase must be a positive integer, got {phase_number!r}")
    return f"p{phase_number}_{_short_hex()}"


def generate_event_id() -> str:
    return f"hist_{_short_hex()}"


def parse_phase_number(phase_id: str) -> int:
    """Parse a phase id such as ``"3"`` into its positive phase number."""
    text = phase_id.strip()
    if not (text.isascii() and text.isdigit()) or int(text) < 1 or text != str(int(text)):
        raise InvalidArgumentError(f"Invalid phase id {phase_id!r}: must be a positive integer without leading zeros")
    return int(text)
