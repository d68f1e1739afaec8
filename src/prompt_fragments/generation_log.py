"""Append-only audit log of assembled-prompt events."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from prompt_fragments.config import Settings
from prompt_fragments.errors import InvalidArgumentError, StorageFailureError
from prompt_fragments.ids import generate_event_id
from prompt_fragments.models import GenerationEvent, GenerationEventDraft
from prompt_fragments.repository import DEFAULT_LOCK_TIMEOUT, CollectionRepository

logger = logging.getLogger(__name__)


class GenerationLog:
    """Stores :class:`GenerationEvent` records, oldest first, in one JSON document."""

    def __init__(self, path: Path, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.path = Path(path)
        self._repository = CollectionRepository(self.path, GenerationEvent, lock_timeout=lock_timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> GenerationLog:
        return cls(settings.history_path, lock_timeout=settings.lock_timeout)

    def append(self, draft: GenerationEventDraft | Mapping[str, Any]) -> GenerationEvent:
        """Stamp ``draft`` with an id and the current time and append it."""
        if not isinstance(draft, GenerationEventDraft):
            try:
                draft = GenerationEventDraft.model_validate(draft)
            except ValidationError as exc:
                raise InvalidArgumentError(f"Invalid generation event: {exc}") from exc

        with self._repository.mutate() as events:
            taken = {event.id for event in events}
            event_id = generate_event_id()
            while event_id in taken:
                event_id = generate_event_id()
            event = GenerationEvent(
                **draft.model_dump(),
                id=event_id,
                timestamp=datetime.now(timezone.utc),
            )
            events.append(event)

        logger.info("recorded generation event %s", event.id)
        return event

    def list_all(self) -> list[GenerationEvent]:
        return self._repository.read()


def record_generation(
    log: GenerationLog,
    draft: GenerationEventDraft | Mapping[str, Any],
) -> GenerationEvent | None:
    """Append to ``log`` on a best-effort basis.

    The generation log is a secondary effect of building a prompt: a storage
    failure here is logged and reported as ``None`` instead of propagating.
    """
    try:
        return log.append(draft)
    except StorageFailureError:
        logger.exception("could not record generation event in %s", log.path)
        return None
