"""Versioned CRUD over named fragment collections.

A collection is ``prefixes``, ``suffixes`` or ``phase/<phaseId>``. Each maps to
one JSON document under the store's data directory and is served by its own
:class:`~prompt_fragments.repository.CollectionRepository`, so operations on
different collections never wait on each other.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from prompt_fragments.config import Settings
from prompt_fragments.errors import InvalidArgumentError, NotFoundError, StorageFailureError
from prompt_fragments.ids import generate_fragment_id, generate_phase_id, parse_phase_number
from prompt_fragments.models import Fragment, FragmentDraft, FragmentPatch, HistoryEntry
from prompt_fragments.repository import DEFAULT_LOCK_TIMEOUT, CollectionRepository

logger = logging.getLogger(__name__)

PREFIXES = "prefixes"
SUFFIXES = "suffixes"
PHASE_COLLECTION_PREFIX = "phase/"
PHASES_DIRNAME = "phases"

_PHASE_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")

# Fields a patch may explicitly clear back to ``None``.
_NULLABLE_FIELDS = {"associated_model_type", "rating", "last_used"}

M = TypeVar("M", bound=BaseModel)


def phase_collection(phase_id: str) -> str:
    """Return the collection name holding prompts for ``phase_id``."""
    if not _PHASE_SEGMENT_RE.match(phase_id):
        raise InvalidArgumentError(f"Invalid phase id {phase_id!r}")
    return f"{PHASE_COLLECTION_PREFIX}{phase_id}"


def phase_id_of(collection: str) -> str | None:
    """Return the phase id for a phase collection, ``None`` for prefixes/suffixes."""
    if collection in (PREFIXES, SUFFIXES):
        return None
    if collection.startswith(PHASE_COLLECTION_PREFIX):
        phase_id = collection[len(PHASE_COLLECTION_PREFIX) :]
        if _PHASE_SEGMENT_RE.match(phase_id):
            return phase_id
    raise InvalidArgumentError(
        f"Unknown collection {collection!r}; expected {PREFIXES!r}, {SUFFIXES!r} or 'phase/<id>'"
    )


def collection_path(data_dir: Path, collection: str) -> Path:
    phase_id = phase_id_of(collection)
    if phase_id is None:
        return Path(data_dir) / f"{collection}.json"
    return Path(data_dir) / PHASES_DIRNAME / f"{phase_id}.json"


def filter_fragments(
    fragments: Iterable[Fragment],
    *,
    tags: Iterable[str] = (),
    include_deprecated: bool = False,
    text: str | None = None,
) -> list[Fragment]:
    """Linear filter used by listing surfaces.

    Keeps fragments carrying every tag in ``tags`` and, when ``text`` is given,
    whose text contains it case-insensitively. Deprecated fragments are dropped
    unless ``include_deprecated`` is set.
    """
    required = set(tags)
    needle = text.casefold() if text else None
    selected: list[Fragment] = []
    for fragment in fragments:
        if fragment.deprecated and not include_deprecated:
            continue
        if required and not required.issubset(fragment.tags):
            continue
        if needle and needle not in fragment.text.casefold():
            continue
        selected.append(fragment)
    return selected


def _coerce(model: type[M], value: M | Mapping[str, Any]) -> M:
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as exc:
        raise InvalidArgumentError(f"Invalid {model.__name__}: {exc}") from exc


def _require_text(text: str) -> None:
    if not text.strip():
        raise InvalidArgumentError("Fragment text must not be empty")


def _index_of(fragments: list[Fragment], collection: str, fragment_id: str) -> int:
    for index, fragment in enumerate(fragments):
        if fragment.id == fragment_id:
            return index
    raise NotFoundError(collection, fragment_id)


def _verify_collection(collection: str, fragments: list[Fragment]) -> None:
    seen: set[str] = set()
    for fragment in fragments:
        if fragment.length != len(fragment.text):
            raise StorageFailureError(
                f"Refusing to persist {collection!r}: fragment {fragment.id!r} has length "
                f"{fragment.length} but text length {len(fragment.text)}"
            )
        if fragment.id in seen:
            raise StorageFailureError(f"Refusing to persist {collection!r}: duplicate fragment id {fragment.id!r}")
        seen.add(fragment.id)


class FragmentStore:
    """CRUD with history tracking and soft deletion over fragment collections."""

    def __init__(self, data_dir: Path, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.data_dir = Path(data_dir)
        self.lock_timeout = lock_timeout
        self._repositories: dict[str, CollectionRepository[Fragment]] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> FragmentStore:
        return cls(settings.data_dir, lock_timeout=settings.lock_timeout)

    def repository(self, collection: str) -> CollectionRepository[Fragment]:
        path = collection_path(self.data_dir, collection)
        with self._registry_lock:
            repo = self._repositories.get(collection)
            if repo is None:
                repo = CollectionRepository(path, Fragment, lock_timeout=self.lock_timeout)
                self._repositories[collection] = repo
            return repo

    def collections(self) -> list[str]:
        """Names of the collections that currently exist on disk."""
        names = [name for name in (PREFIXES, SUFFIXES) if collection_path(self.data_dir, name).exists()]
        phases_dir = self.data_dir / PHASES_DIRNAME
        if phases_dir.is_dir():
            names.extend(
                phase_collection(path.stem)
                for path in sorted(phases_dir.glob("*.json"))
                if _PHASE_SEGMENT_RE.match(path.stem)
            )
        return names

    def list(self, collection: str) -> list[Fragment]:
        """All fragments of ``collection`` in stored order, deprecated ones included."""
        return self.repository(collection).read()

    def get(self, collection: str, fragment_id: str) -> Fragment:
        fragments = self.list(collection)
        return fragments[_index_of(fragments, collection, fragment_id)]

    def create(self, collection: str, draft: FragmentDraft | Mapping[str, Any]) -> Fragment:
        """Assign an id, persist a new fragment, and return it.

        Phase collections use the ``p<phase>_<hex>`` id scheme, so their phase
        id must be a positive integer.
        """
        draft = _coerce(FragmentDraft, draft)
        _require_text(draft.text)
        phase_id = phase_id_of(collection)
        phase_number = parse_phase_number(phase_id) if phase_id is not None else None

        repo = self.repository(collection)
        with repo.mutate() as fragments:
            taken = {fragment.id for fragment in fragments}
            fragment_id = self._new_id(phase_number)
            while fragment_id in taken:
                fragment_id = self._new_id(phase_number)

            fragment = Fragment(
                **draft.model_dump(),
                id=fragment_id,
                length=len(draft.text),
                history_log=[],
                phase_id=phase_id,
            )
            fragments.append(fragment)
            _verify_collection(collection, fragments)

        logger.info("created fragment %s in %s", fragment.id, collection)
        return fragment

    def update(self, collection: str, fragment_id: str, patch: FragmentPatch | Mapping[str, Any]) -> Fragment:
        """Apply ``patch`` to one fragment.

        A text change records the previous text as a history entry and
        recomputes ``length``. Other fields are overwritten as given.
        """
        patch = _coerce(FragmentPatch, patch)
        changes = {
            key: value
            for key, value in patch.changes().items()
            if value is not None or key in _NULLABLE_FIELDS
        }
        new_text = changes.pop("text", None)
        if new_text is not None:
            _require_text(new_text)

        repo = self.repository(collection)
        with repo.mutate() as fragments:
            index = _index_of(fragments, collection, fragment_id)
            current = fragments[index]
            fields = current.model_dump()
            fields.update(changes)

            text_changed = new_text is not None and new_text != current.text
            if text_changed:
                entry = HistoryEntry(timestamp=datetime.now(timezone.utc), text=current.text)
                fields["history_log"] = [*fields["history_log"], entry.model_dump()]
                fields["text"] = new_text
                fields["length"] = len(new_text)

            updated = Fragment.model_validate(fields)
            fragments[index] = updated
            _verify_collection(collection, fragments)

        logger.info(
            "updated fragment %s in %s (fields=%s, text_changed=%s)",
            fragment_id,
            collection,
            sorted(changes),
            text_changed,
        )
        return updated

    def deprecate(self, collection: str, fragment_id: str) -> None:
        """Soft-delete a fragment. Never touches its text or history."""
        repo = self.repository(collection)
        with repo.mutate() as fragments:
            index = _index_of(fragments, collection, fragment_id)
            fragments[index] = fragments[index].model_copy(update={"deprecated": True})
            _verify_collection(collection, fragments)
        logger.info("deprecated fragment %s in %s", fragment_id, collection)

    def restore(self, collection: str, fragment_id: str, history_index: int) -> Fragment:
        """Bring back ``history_log[history_index]`` as the current text.

        This is an ordinary text update, so the overwritten text is itself
        recorded in the history.
        """
        repo = self.repository(collection)
        with repo.locked():
            fragment = self.get(collection, fragment_id)
            if not 0 <= history_index < len(fragment.history_log):
                raise InvalidArgumentError(
                    f"History index {history_index} out of range for fragment {fragment_id!r} "
                    f"({len(fragment.history_log)} entries)"
                )
            return self.update(collection, fragment_id, FragmentPatch(text=fragment.history_log[history_index].text))

    @staticmethod
    def _new_id(phase_number: int | None) -> str:
        if phase_number is None:
            return generate_fragment_id()
        return generate_phase_id(phase_number)
