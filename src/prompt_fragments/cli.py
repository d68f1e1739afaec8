"""Typer-based CLI for managing prompt fragments and assembling prompts."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, NoReturn

import typer

from prompt_fragments.assembly import PART_SEPARATOR, assemble_prompt
from prompt_fragments.config import Settings, get_settings
from prompt_fragments.errors import FragmentStoreError, InvalidArgumentError, NotFoundError
from prompt_fragments.generation_log import GenerationLog, record_generation
from prompt_fragments.models import Fragment, FragmentDraft, FragmentPatch, GenerationEventDraft
from prompt_fragments.phases import PhaseCatalog
from prompt_fragments.store import (
    PREFIXES,
    SUFFIXES,
    FragmentStore,
    filter_fragments,
    phase_collection,
    phase_id_of,
)

app = typer.Typer(add_completion=False, help="prompt-fragments: versioned prompt prefixes, suffixes, and phase prompts")

DATA_DIR_HELP = "Data directory (defaults to PROMPT_FRAGMENTS_DATA_DIR or ./data)"
PREVIEW_WIDTH = 60


def _echo_step(step: int, total: int, message: str) -> None:
    typer.echo(f"[{step}/{total}] {message}")


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def _settings(data_dir: Path | None) -> Settings:
    settings = get_settings()
    if data_dir is not None:
        settings = settings.model_copy(update={"data_dir": data_dir})
    return settings


def _fail(exc: FragmentStoreError) -> NoReturn:
    """Translate a core error into CLI feedback."""
    if isinstance(exc, (NotFoundError, InvalidArgumentError)):
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(f"Storage failure: {exc}", err=True)
    raise typer.Exit(code=1) from exc


def _resolve_collection(settings: Settings, collection: str) -> str:
    """Validate ``collection`` and, for phase collections, check the phase is configured."""
    phase_id = phase_id_of(collection)
    if phase_id is None:
        return collection
    return PhaseCatalog.from_settings(settings).require(phase_id)


def _preview(text: str) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= PREVIEW_WIDTH else flat[: PREVIEW_WIDTH - 3] + "..."


def _fragment_line(fragment: Fragment) -> str:
    flags = " [deprecated]" if fragment.deprecated else ""
    tags = ",".join(fragment.tags)
    return f"{fragment.id}{flags}  tags={tags or '-'}  len={fragment.length}  {_preview(fragment.text)}"


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("init")
def init(data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP)) -> None:
    """Create every configured document that does not exist yet."""
    settings = _settings(data_dir)
    store = FragmentStore.from_settings(settings)
    try:
        _echo_step(1, 3, "Loading phase configuration")
        phases = PhaseCatalog.from_settings(settings).list()

        _echo_step(2, 3, "Materializing fragment collections")
        for collection in [PREFIXES, SUFFIXES, *(phase_collection(phase.id) for phase in phases)]:
            store.list(collection)

        _echo_step(3, 3, "Materializing generation log")
        GenerationLog.from_settings(settings).list_all()
    except FragmentStoreError as exc:
        _fail(exc)
    typer.echo(f"Data directory ready: {settings.data_dir} (phases={len(phases)})")


@app.command("phases")
def phases(data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP)) -> None:
    """List configured phases."""
    try:
        configured = PhaseCatalog.from_settings(_settings(data_dir)).list()
    except FragmentStoreError as exc:
        _fail(exc)
    for phase in configured:
        typer.echo(f"{phase.id}  {phase.name}  {phase.description}".rstrip())


@app.command("list")
def list_fragments(
    collection: str = typer.Argument(..., help="prefixes, suffixes, or phase/<id>"),
    tag: list[str] = typer.Option([], "--tag", "-t", help="Only fragments carrying this tag (repeatable)"),
    search: str | None = typer.Option(None, help="Case-insensitive text filter"),
    include_deprecated: bool = typer.Option(False, "--all", help="Include deprecated fragments"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP),
) -> None:
    """List fragments of a collection."""
    settings = _settings(data_dir)
    try:
        collection = _resolve_collection(settings, collection)
        fragments = FragmentStore.from_settings(settings).list(collection)
    except FragmentStoreError as exc:
        _fail(exc)

    selected = filter_fragments(fragments, tags=tag, include_deprecated=include_deprecated, text=search)
    if as_json:
        _echo_json([fragment.model_dump(mode="json") for fragment in selected])
        return
    for fragment in selected:
        typer.echo(_fragment_line(fragment))


@app.command("show")
def show(
    collection: str = typer.Argument(..., help="prefixes, suffixes, or phase/<id>"),
    fragment_id: str = typer.Argument(..., help="Fragment id"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP),
) -> None:
    """Print one fragment as JSON."""
    settings = _settings(data_dir)
    try:
        collection = _resolve_collection(settings, collection)
        fragment = FragmentStore.from_settings(settings).get(collection, fragment_id)
    except FragmentStoreError as exc:
        _fail(exc)
    _echo_json(fragment.model_dump(mode="json"))


@app.command("add")
def add(
    collection: str = typer.Argument(..., help="prefixes, suffixes, or phase/<id>"),
    text: str = typer.Argument(..., help="Fragment text"),
    tag: list[str] = typer.Option([], "--tag", "-t", help="Tag (repeatable)"),
    created_by: str = typer.Option("", help="Author name"),
    model_type: str | None = typer.Option(None, "--model-type", help="Associated model type"),
    compatible_with: list[str] = typer.Option([], "--compatible-with", help="Compatible AI version (repeatable)"),
    rating: float | None = typer.Option(None, help="Optional rating"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP),
) -> None:
    """Create a fragment and print its id."""
    settings = _settings(data_dir)
    draft = FragmentDraft(
        text=text,
        tags=tag,
        created_by=created_by,
        associated_model_type=model_type,
        ai_version_compatibility=compatible_with,
        rating=rating,
    )
    try:
        collection = _resolve_collection(settings, collection)
        fragment = FragmentStore.from_settings(settings).create(collection, draft)
    except FragmentStoreError as exc:
        _fail(exc)
    typer.echo(f"Created {fragment.id} in {collection}")


@app.command("edit")
def edit(
    collection: str = typer.Argument(..., help="prefixes, suffixes, or phase/<id>"),
    fragment_id: str = typer.Argument(..., help="Fragment id"),
    text: str | None = typer.Option(None, help="Replacement text (old text goes to history)"),
    tag: list[str] | None = typer.Option(None, "--tag", "-t", help="Replacement tag set (repeatable)"),
    model_type: str | None = typer.Option(None, "--model-type", help="Associated model type"),
    rating: float | None = typer.Option(None, help="Rating"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP),
) -> None:
    """Update a fragment's text or metadata."""
    changes: dict[str, Any] = {}
    if text is not None:
        changes["text"] = text
    if tag:
        changes["tags"] = tag
    if model_type is not None:
        changes["associated_model_type"] = model_type
    if rating is not None:
        changes["rating"] = rating
    if not changes:
        raise typer.BadParameter("Nothing to update: pass --text, --tag, --model-type or --rating")

    settings = _settings(data_dir)
    try:
        collection = _resolve_collection(settings, collection)
        fragment = FragmentStore.from_settings(settings).update(collection, fragment_id, FragmentPatch(**changes))
    except FragmentStoreError as exc:
        _fail(exc)
    typer.echo(f"Updated {fragment.id} (history entries={len(fragment.history_log)})")


@app.command("restore")
def restore(
    collection: str = typer.Argument(..., help="prefixes, suffixes, or phase/<id>"),
    fragment_id: str = typer.Argument(..., help="Fragment id"),
    index: int = typer.Argument(..., help="History entry index, as printed by 'history'"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP),
) -> None:
    """Restore a previous text version (recorded as a new edit)."""
    settings = _settings(data_dir)
    try:
        collection = _resolve_collection(settings, collection)
        fragment = FragmentStore.from_settings(settings).restore(collection, fragment_id, index)
    except FragmentStoreError as exc:
        _fail(exc)
    typer.echo(f"Restored {fragment.id} to history entry {index}")


@app.command("deprecate")
def deprecate(
    collection: str = typer.Argument(..., help="prefixes, suffixes, or phase/<id>"),
    fragment_id: str = typer.Argument(..., help="Fragment id"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP),
) -> None:
    """Soft-delete a fragment."""
    settings = _settings(data_dir)
    try:
        collection = _resolve_collection(settings, collection)
        FragmentStore.from_settings(settings).deprecate(collection, fragment_id)
    except FragmentStoreError as exc:
        _fail(exc)
    typer.echo(f"Deprecated {fragment_id} in {collection}")


@app.command("history")
def history(
    collection: str = typer.Argument(..., help="prefixes, suffixes, or phase/<id>"),
    fragment_id: str = typer.Argument(..., help="Fragment id"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP),
) -> None:
    """Print the previous text versions of a fragment, oldest first."""
    settings = _settings(data_dir)
    try:
        collection = _resolve_collection(settings, collection)
        fragment = FragmentStore.from_settings(settings).get(collection, fragment_id)
    except FragmentStoreError as exc:
        _fail(exc)
    if not fragment.history_log:
        typer.echo("No history.")
        return
    for index, entry in enumerate(fragment.history_log):
        typer.echo(f"[{index}] {entry.timestamp.isoformat()}  {_preview(entry.text)}")


@app.command("assemble")
def assemble(
    main_text: str = typer.Argument(..., help="Main prompt text"),
    prefix: list[str] = typer.Option([], "--prefix", help="Prefix fragment id (repeatable)"),
    suffix: list[str] = typer.Option([], "--suffix", help="Suffix fragment id (repeatable)"),
    phase: str | None = typer.Option(None, help="Phase id of --phase-prompt"),
    phase_prompt: str | None = typer.Option(None, "--phase-prompt", help="Phase prompt fragment id"),
    refined: str | None = typer.Option(None, help="Refined main text to use instead of MAIN_TEXT"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP),
) -> None:
    """Assemble a prompt from stored fragments and record the generation."""
    if phase_prompt and not phase:
        raise typer.BadParameter("--phase-prompt requires --phase")

    settings = _settings(data_dir)
    store = FragmentStore.from_settings(settings)
    try:
        prefix_text = PART_SEPARATOR.join(store.get(PREFIXES, item).text for item in prefix)
        suffix_text = PART_SEPARATOR.join(store.get(SUFFIXES, item).text for item in suffix)
        phase_text = ""
        if phase_prompt:
            phase_text = store.get(_resolve_collection(settings, phase_collection(phase)), phase_prompt).text
    except FragmentStoreError as exc:
        _fail(exc)

    prompt = assemble_prompt(prefix_text, phase_text, refined or main_text, suffix_text)
    typer.echo(prompt)

    event = record_generation(
        GenerationLog.from_settings(settings),
        GenerationEventDraft(
            user_text=main_text,
            ai_refined_text=refined,
            prefix_ids=prefix,
            suffix_ids=suffix,
            phase_prompt_id=phase_prompt,
            phase_number=phase,
        ),
    )
    if event is None:
        typer.echo("warning: prompt assembled but the generation log could not be written", err=True)


@app.command("log")
def log(
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
    data_dir: Path | None = typer.Option(None, "--data-dir", help=DATA_DIR_HELP),
) -> None:
    """List recorded generation events, oldest first."""
    try:
        events = GenerationLog.from_settings(_settings(data_dir)).list_all()
    except FragmentStoreError as exc:
        _fail(exc)
    if as_json:
        _echo_json([event.model_dump(mode="json") for event in events])
        return
    for event in events:
        typer.echo(f"{event.id}  {event.timestamp.isoformat()}  {_preview(event.user_text)}")


if __name__ == "__main__":
    app()
