from __future__ import annotations

import pytest

from fakes import FakeAdapter, InMemoryStore, make_item, make_manifest
from restore_engine.data_models import LiveTorrent
from restore_engine.errors import LiveStateUnavailableError, SnapshotNotFoundError
from restore_engine.restore.data_models import RestoreMode, RestoreRequest
from restore_engine.restore.errors import RestoreModeError
from restore_engine.restore.plan import apply_exclusions, build_restore_plan, parse_restore_mode


def _example_store() -> InMemoryStore:
    return InMemoryStore(make_manifest(categories={"Movies": "/m"}, tags={"4k"}, items=[make_item("abc")]))


def _complex_store() -> InMemoryStore:
    items = [
        make_item("aaa", category="Movies"),
        make_item("bbb", name="new-name"),
        make_item("ccc", tags=("4k",)),
    ]
    return InMemoryStore(make_manifest(categories={"Movies": "/m"}, tags={"4k"}, items=items))


def _complex_adapter() -> FakeAdapter:
    return FakeAdapter(
        categories={"Other": "/o"},
        tags={"old"},
        torrents=[
            LiveTorrent(hash="bbb", name="old-name"),
            LiveTorrent(hash="ddd", name="extra"),
            LiveTorrent(hash="eee", name="extra-2"),
        ],
    )


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("incremental", RestoreMode.INCREMENTAL),
        ("Overwrite", RestoreMode.OVERWRITE),
        (" complete ", RestoreMode.COMPLETE),
        ("", RestoreMode.INCREMENTAL),
        (None, RestoreMode.INCREMENTAL),
    ],
)
def test_parse_restore_mode(value: str | None, expected: RestoreMode) -> None:
    assert parse_restore_mode(value) is expected


def test_parse_restore_mode_rejects_unknown() -> None:
    with pytest.raises(RestoreModeError):
        parse_restore_mode("mirror")


def test_build_plan_example_incremental() -> None:
    plan = build_restore_plan(
        RestoreRequest.create("run-1", RestoreMode.INCREMENTAL),
        store=_example_store(),
        adapter=FakeAdapter(),
    )

    assert [c.name for c in plan.categories.create] == ["Movies"]
    assert plan.tags.create == ("4k",)
    assert [a.hash for a in plan.torrents.add] == ["abc"]
    assert plan.to_dict()["tags"]["create"] == [{"name": "4k"}]


def test_excluding_a_hash_leaves_categories_and_tags_alone() -> None:
    store = _example_store()

    full = build_restore_plan(
        RestoreRequest.create("run-1", RestoreMode.INCREMENTAL), store=store, adapter=FakeAdapter()
    )
    excluded = build_restore_plan(
        RestoreRequest.create("run-1", RestoreMode.INCREMENTAL, ["abc"]),
        store=store,
        adapter=FakeAdapter(),
    )

    assert excluded.torrents.add == ()
    assert excluded.categories == full.categories
    assert excluded.tags == full.tags


@pytest.mark.parametrize("mode", list(RestoreMode))
@pytest.mark.parametrize("excluded", [{"aaa"}, {"bbb"}, {"ddd", "eee"}, {"AAA", "zzz"}])
def test_exclusion_equals_filtering_the_unexcluded_plan(mode: RestoreMode, excluded: set[str]) -> None:
    store = _complex_store()

    full = build_restore_plan(RestoreRequest.create("run-1", mode), store=store, adapter=_complex_adapter())
    filtered = build_restore_plan(
        RestoreRequest.create("run-1", mode, excluded), store=store, adapter=_complex_adapter()
    )

    assert filtered == apply_exclusions(full, excluded)
    lowered = {h.lower() for h in excluded}
    assert not filtered.torrents.hashes() & lowered
    assert filtered.torrents.hashes() == full.torrents.hashes() - lowered


def test_rebuilding_without_exclusions_reproduces_the_original_plan() -> None:
    store = _complex_store()
    request = RestoreRequest.create("run-1", RestoreMode.COMPLETE)

    original = build_restore_plan(request, store=store, adapter=_complex_adapter())
    build_restore_plan(
        RestoreRequest.create("run-1", RestoreMode.COMPLETE, ["bbb"]), store=store, adapter=_complex_adapter()
    )
    rebuilt = build_restore_plan(request, store=store, adapter=_complex_adapter())

    assert rebuilt == original
    assert rebuilt.to_dict() == original.to_dict()


def test_empty_exclusion_returns_same_plan() -> None:
    plan = build_restore_plan(
        RestoreRequest.create("run-1", RestoreMode.COMPLETE),
        store=_complex_store(),
        adapter=_complex_adapter(),
    )

    assert apply_exclusions(plan, set()) is plan


def test_request_normalizes_exclusions() -> None:
    a = RestoreRequest.create("run-1", RestoreMode.OVERWRITE, [" ABC ", "def", ""])
    b = RestoreRequest.create("run-1", RestoreMode.OVERWRITE, ["abc", "DEF"])

    assert a == b
    assert a.exclude_hashes == frozenset({"abc", "def"})


def test_plan_is_deterministic_across_calls() -> None:
    store = _complex_store()
    request = RestoreRequest.create("run-1", RestoreMode.COMPLETE)

    first = build_restore_plan(request, store=store, adapter=_complex_adapter())
    second = build_restore_plan(request, store=store, adapter=_complex_adapter())

    assert first.to_dict() == second.to_dict()


def test_planning_issues_no_mutations() -> None:
    adapter = _complex_adapter()

    build_restore_plan(RestoreRequest.create("run-1", RestoreMode.COMPLETE), store=_complex_store(), adapter=adapter)

    assert adapter.calls == []


def test_unknown_run_raises_snapshot_not_found() -> None:
    with pytest.raises(SnapshotNotFoundError):
        build_restore_plan(
            RestoreRequest.create("missing", RestoreMode.INCREMENTAL), store=_example_store(), adapter=FakeAdapter()
        )


def test_unreadable_live_state_raises_live_state_unavailable() -> None:
    adapter = FakeAdapter()
    adapter.list_error = ConnectionError("refused")

    with pytest.raises(LiveStateUnavailableError):
        build_restore_plan(
            RestoreRequest.create("run-1", RestoreMode.INCREMENTAL), store=_example_store(), adapter=adapter
        )
