from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor

import pytest

from prompt_fragments.errors import InvalidArgumentError, NotFoundError, StorageFailureError
from prompt_fragments.models import FragmentDraft, FragmentPatch
from prompt_fragments.store import FragmentStore, collection_path, filter_fragments, phase_collection, phase_id_of


def test_create_given_draft_when_listed_then_exactly_one_matching_fragment_exists(store, fragment_draft) -> None:
    # Given
    # Empty store.

    # When
    created = store.create("prefixes", fragment_draft)
    listed = store.list("prefixes")

    # Then
    assert listed == [created]
    stored = listed[0]
    assert stored.model_dump(include=set(FragmentDraft.model_fields)) == fragment_draft.model_dump()
    assert stored.length == len(fragment_draft.text)
    assert stored.history_log == []
    assert stored.phase_id is None
    assert re.fullmatch(r"[0-9a-f-]{36}", stored.id)


def test_create_given_mapping_draft_when_created_then_defaults_are_applied(store) -> None:
    # Given
    draft = {"text": "Be brief.", "tags": ["style", "style", "short"]}

    # When
    created = store.create("suffixes", draft)

    # Then
    assert created.uses == 0
    assert created.deprecated is False
    assert created.tags == ["style", "short"]
    assert created.ai_version_compatibility == []


def test_create_given_blank_text_when_created_then_invalid_argument_and_no_file(store, data_dir) -> None:
    # Given
    draft = {"text": "   "}

    # When / Then
    with pytest.raises(InvalidArgumentError):
        store.create("prefixes", draft)
    assert not (data_dir / "prefixes.json").exists()


def test_create_given_phase_collection_when_created_then_phase_scheme_id_and_phase_id(store, data_dir) -> None:
    # Given
    collection = phase_collection("3")

    # When
    created = store.create(collection, {"text": "Plan the build."})

    # Then
    assert re.fullmatch(r"p3_[0-9a-f]{8}", created.id)
    assert created.phase_id == "3"
    assert (data_dir / "phases" / "3.json").exists()
    assert store.list("prefixes") == []


def test_create_given_non_numeric_phase_when_created_then_invalid_argument(store) -> None:
    with pytest.raises(InvalidArgumentError):
        store.create("phase/intro", {"text": "hello"})


def test_create_given_concurrent_calls_when_listed_then_all_fragments_are_present(store) -> None:
    # Given
    count = 30

    # When
    with ThreadPoolExecutor(max_workers=10) as pool:
        created = list(pool.map(lambda i: store.create("prefixes", {"text": f"prefix {i}"}), range(count)))

    # Then
    listed = store.list("prefixes")
    assert len({fragment.id for fragment in created}) == count
    assert {fragment.id for fragment in listed} == {fragment.id for fragment in created}
    assert sorted(fragment.text for fragment in listed) == sorted(f"prefix {i}" for i in range(count))


def test_create_given_concurrent_calls_across_store_instances_when_listed_then_no_write_is_lost(settings) -> None:
    # Given
    stores = [FragmentStore.from_settings(settings) for _ in range(3)]

    # When
    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(lambda i: stores[i % 3].create("suffixes", {"text": f"s{i}"}), range(18)))

    # Then
    assert len(stores[0].list("suffixes")) == 18


def test_update_given_new_text_when_updated_then_pre_image_is_recorded(store, fragment_draft) -> None:
    # Given
    created = store.create("prefixes", fragment_draft)

    # When
    updated = store.update("prefixes", created.id, {"text": "You are a strict reviewer!"})

    # Then
    assert updated.text == "You are a strict reviewer!"
    assert updated.length == len("You are a strict reviewer!")
    assert [entry.text for entry in updated.history_log] == [fragment_draft.text]
    assert store.get("prefixes", created.id) == updated


def test_update_given_restore_to_earlier_text_when_updated_then_history_keeps_both_pre_images(store) -> None:
    # Given
    created = store.create("prefixes", {"text": "A"})
    store.update("prefixes", created.id, {"text": "B"})

    # When
    restored = store.update("prefixes", created.id, {"text": "A"})

    # Then
    assert restored.text == "A"
    assert [entry.text for entry in restored.history_log] == ["A", "B"]
    assert restored.history_log[0].timestamp <= restored.history_log[1].timestamp


def test_restore_given_history_index_when_restored_then_overwritten_text_is_recorded(store) -> None:
    # Given
    created = store.create("suffixes", {"text": "first"})
    store.update("suffixes", created.id, {"text": "second"})

    # When
    restored = store.restore("suffixes", created.id, 0)

    # Then
    assert restored.text == "first"
    assert [entry.text for entry in restored.history_log] == ["first", "second"]


def test_restore_given_out_of_range_index_when_restored_then_invalid_argument(store) -> None:
    created = store.create("suffixes", {"text": "only"})

    with pytest.raises(InvalidArgumentError, match="out of range"):
        store.restore("suffixes", created.id, 0)


def test_update_given_same_tags_twice_when_updated_then_no_history_and_text_unchanged(store, fragment_draft) -> None:
    # Given
    created = store.create("prefixes", fragment_draft)
    patch = FragmentPatch(tags=["review", "tone"])

    # When
    store.update("prefixes", created.id, patch)
    second = store.update("prefixes", created.id, patch)

    # Then
    assert second.history_log == []
    assert second.text == created.text
    assert second.length == created.length


def test_update_given_unchanged_text_when_updated_then_no_history_entry(store) -> None:
    created = store.create("prefixes", {"text": "same"})

    updated = store.update("prefixes", created.id, {"text": "same", "rating": 2})

    assert updated.history_log == []
    assert updated.rating == 2


def test_update_given_metadata_patch_when_updated_then_only_given_fields_change(store, fragment_draft) -> None:
    # Given
    created = store.create("prefixes", fragment_draft)

    # When
    updated = store.update("prefixes", created.id, {"uses": 7, "associated_model_type": None})

    # Then
    assert updated.uses == 7
    assert updated.associated_model_type is None
    assert updated.tags == created.tags
    assert updated.rating == created.rating
    assert updated.created_by == "alice"


def test_update_given_missing_id_when_updated_then_not_found_and_no_file_written(store, data_dir) -> None:
    # Given
    # Nothing stored yet.

    # When / Then
    with pytest.raises(NotFoundError) as excinfo:
        store.update("prefixes", "missing-id", {"text": "x"})
    assert excinfo.value.item_id == "missing-id"
    assert not (data_dir / "prefixes.json").exists()


def test_update_given_missing_id_in_existing_collection_when_updated_then_document_is_untouched(
    store,
    data_dir,
) -> None:
    # Given
    store.create("prefixes", {"text": "keep me"})
    before = (data_dir / "prefixes.json").read_bytes()

    # When / Then
    with pytest.raises(NotFoundError):
        store.update("prefixes", "missing-id", {"tags": ["x"]})
    assert (data_dir / "prefixes.json").read_bytes() == before


@pytest.mark.parametrize(
    "patch",
    [
        {"text": ""},
        {"id": "other"},
        {"length": 3},
        {"history_log": []},
        {"uses": -1},
    ],
)
def test_update_given_invalid_patch_when_updated_then_invalid_argument(store, patch) -> None:
    created = store.create("prefixes", {"text": "abc"})

    with pytest.raises(InvalidArgumentError):
        store.update("prefixes", created.id, patch)

    assert store.get("prefixes", created.id) == created


def test_deprecate_given_fragment_when_deprecated_then_flag_set_and_history_untouched(store) -> None:
    # Given
    created = store.create("prefixes", {"text": "old"})
    store.update("prefixes", created.id, {"text": "new"})

    # When
    result = store.deprecate("prefixes", created.id)

    # Then
    fragment = store.get("prefixes", created.id)
    assert result is None
    assert fragment.deprecated is True
    assert [entry.text for entry in fragment.history_log] == ["old"]
    assert fragment.text == "new"


def test_deprecate_given_deprecated_fragment_when_updated_then_still_editable_and_listed(store) -> None:
    # Given
    created = store.create("suffixes", {"text": "v1"})
    store.deprecate("suffixes", created.id)

    # When
    updated = store.update("suffixes", created.id, {"text": "v2"})

    # Then
    assert updated.deprecated is True
    assert [fragment.id for fragment in store.list("suffixes")] == [created.id]


def test_deprecate_given_missing_id_when_deprecated_then_not_found(store) -> None:
    with pytest.raises(NotFoundError):
        store.deprecate("suffixes", "nope")


def test_update_given_many_edits_when_applied_then_history_only_grows_in_order(store) -> None:
    # Given
    created = store.create("prefixes", {"text": "t0"})
    seen: list[str] = []

    # When / Then
    for step in range(1, 6):
        before = store.get("prefixes", created.id)
        updated = store.update("prefixes", created.id, {"text": f"t{step}", "tags": [f"v{step}"]})
        seen.append(before.text)
        assert [entry.text for entry in updated.history_log] == seen
        assert updated.history_log[: len(before.history_log)] == before.history_log
        assert updated.length == len(updated.text)


def test_list_given_corrupt_length_on_disk_when_read_then_storage_failure(store, data_dir) -> None:
    # Given
    data_dir.mkdir(parents=True)
    (data_dir / "prefixes.json").write_text(
        '[{"id": "x", "text": "abc", "length": 5}]',
        encoding="utf-8",
    )

    # When / Then
    with pytest.raises(StorageFailureError):
        store.list("prefixes")


def test_collections_given_created_documents_when_listed_then_names_are_reported(store) -> None:
    # Given
    store.list("prefixes")
    store.create("phase/2", {"text": "p2"})
    store.create("phase/1", {"text": "p1"})

    # When
    names = store.collections()

    # Then
    assert names == ["prefixes", "phase/1", "phase/2"]


@pytest.mark.parametrize("collection", ["", "prefix", "phase/", "phase/../secrets", "../prefixes", "phase/a/b"])
def test_collection_path_given_invalid_name_when_resolved_then_invalid_argument(tmp_path, collection) -> None:
    with pytest.raises(InvalidArgumentError):
        collection_path(tmp_path, collection)


def test_phase_id_of_given_names_when_parsed_then_phase_ids_are_returned() -> None:
    assert phase_id_of("prefixes") is None
    assert phase_id_of("suffixes") is None
    assert phase_id_of("phase/4") == "4"


def test_filter_fragments_given_mixed_fragments_when_filtered_then_linear_rules_apply(store) -> None:
    # Given
    first = store.create("prefixes", {"text": "Formal tone", "tags": ["tone", "formal"]})
    second = store.create("prefixes", {"text": "Casual TONE", "tags": ["tone"]})
    third = store.create("prefixes", {"text": "Old tone", "tags": ["tone", "formal"]})
    store.deprecate("prefixes", third.id)
    fragments = store.list("prefixes")

    # When
    active = filter_fragments(fragments)
    formal = filter_fragments(fragments, tags=["formal"], include_deprecated=True)
    casual = filter_fragments(fragments, text="casual tone")

    # Then
    assert [f.id for f in active] == [first.id, second.id]
    assert [f.id for f in formal] == [first.id, third.id]
    assert [f.id for f in casual] == [second.id]


def test_create_given_zero_padded_phase_id_when_created_then_invalid_argument(store, data_dir) -> None:
    # Given
    # "phase/03" would collide with "phase/3" on the p3_ id prefix.

    # When
    with pytest.raises(InvalidArgumentError, match="leading zeros"):
        store.create("phase/03", {"text": "Build it"})

    # Then
    assert not collection_path(data_dir, "phase/03").exists()


def test_create_given_other_collection_lock_held_when_writing_then_suffixes_and_log_do_not_wait(
    store, generation_log
) -> None:
    # Given
    held = store.repository("prefixes")

    # When
    with held.locked():
        with ThreadPoolExecutor(max_workers=2) as pool:
            suffix_future = pool.submit(store.create, "suffixes", {"text": "Answer briefly."})
            event_future = pool.submit(generation_log.append, {"user_text": "hi", "ai_refined_text": "hello"})
            suffix = suffix_future.result(timeout=1.0)
            event = event_future.result(timeout=1.0)

    # Then
    assert store.list("suffixes") == [suffix]
    assert generation_log.list_all() == [event]
