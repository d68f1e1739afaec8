"""Pydantic models shared by the fragment store, the generation log, and the CLI."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _dedupe_tags(tags: list[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for tag in tags:
        if tag not in seen:
            seen.add(tag)
            unique.append(tag)
    return unique


class HistoryEntry(BaseModel):
    """Text a fragment held before an edit overwrote it."""

    timestamp: datetime
    text: str


class FragmentDraft(BaseModel):
    """Caller-supplied fields for a new fragment.

    ``id``, ``length`` and ``history_log`` are assigned by the store.
    """

    model_config = ConfigDict(extra="forbid")

    text: str
    tags: list[str] = Field(default_factory=list)
    uses: int = Field(default=0, ge=0)
    created_by: str = ""
    ai_version_compatibility: list[str] = Field(default_factory=list)
    associated_model_type: str | None = None
    rating: float | None = None
    last_used: datetime | None = None
    deprecated: bool = False

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, tags: list[str]) -> list[str]:
        return _dedupe_tags(tags)


class FragmentPatch(BaseModel):
    """Partial update. Only fields explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    text: str | None = None
    tags: list[str] | None = None
    uses: int | None = Field(default=None, ge=0)
    created_by: str | None = None
    ai_version_compatibility: list[str] | None = None
    associated_model_type: str | None = None
    rating: float | None = None
    last_used: datetime | None = None
    deprecated: bool | None = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, tags: list[str] | None) -> list[str] | None:
        return None if tags is None else _dedupe_tags(tags)

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class Fragment(BaseModel):
    """A stored, versioned piece of prompt text."""

    id: str
    text: str
    tags: list[str] = Field(default_factory=list)
    length: int
    uses: int = Field(default=0, ge=0)
    created_by: str = ""
    ai_version_compatibility: list[str] = Field(default_factory=list)
    associated_model_type: str | None = None
    rating: float | None = None
    last_used: datetime | None = None
    deprecated: bool = False
    history_log: list[HistoryEntry] = Field(default_factory=list)
    phase_id: str | None = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, tags: list[str]) -> list[str]:
        return _dedupe_tags(tags)

    @model_validator(mode="after")
    def check_length(self) -> Fragment:
        if self.length != len(self.text):
            raise ValueError(f"fragment {self.id}: length {self.length} does not match text length {len(self.text)}")
        return self


class GenerationEventDraft(BaseModel):
    """Caller-supplied fields of a generation event."""

    model_config = ConfigDict(extra="forbid")

    user_text: str
    ai_refined_text: str | None = None
    prefix_ids: list[str] = Field(default_factory=list)
    suffix_ids: list[str] = Field(default_factory=list)
    phase_prompt_id: str | None = None
    phase_number: str | None = None


class GenerationEvent(GenerationEventDraft):
    """Immutable audit record of one assembled prompt."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    timestamp: datetime


class Phase(BaseModel):
    """Static phase configuration entry."""

    id: str
    name: str
    description: str = ""
