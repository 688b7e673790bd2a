from __future__ import annotations

import pytest

from fakes import live_from_item, make_item, make_manifest
from restore_engine.data_models import BackupManifest, CategorySnapshot, LiveState, LiveTorrent
from restore_engine.restore.changes import StaticCapabilityGate
from restore_engine.restore.data_models import CategoryCreate, CategoryUpdate, RestoreMode
from restore_engine.restore.diff import compute_diff, diff_categories, diff_tags

GATE = StaticCapabilityGate()


def _live(
    *,
    categories: dict[str, str] | None = None,
    tags: tuple[str, ...] = (),
    torrents: tuple[LiveTorrent, ...] | list[LiveTorrent] = (),
) -> LiveState:
    return LiveState.from_parts(
        categories={name: CategorySnapshot(save_path=path) for name, path in (categories or {}).items()},
        tags=tags,
        torrents=torrents,
    )


def test_incremental_example_creates_category_tag_and_adds_torrent() -> None:
    manifest = make_manifest(categories={"Movies": "/m"}, tags={"4k"}, items=[make_item("abc")])

    diff = compute_diff(manifest, _live(), RestoreMode.INCREMENTAL, gate=GATE)

    assert diff.categories.create == (CategoryCreate(name="Movies", save_path="/m"),)
    assert diff.categories.update == ()
    assert diff.categories.delete == ()
    assert diff.tags.create == ("4k",)
    assert diff.tags.delete == ()
    assert [a.hash for a in diff.torrents.add] == ["abc"]
    assert diff.torrents.update == ()
    assert diff.torrents.delete == ()


def test_overwrite_updates_category_save_path() -> None:
    manifest = make_manifest(categories={"Movies": "/m"}, tags={"4k"}, items=[make_item("abc")])

    plan = diff_categories(manifest, _live(categories={"Movies": "/old"}), RestoreMode.OVERWRITE)

    assert plan.create == ()
    assert plan.update == (CategoryUpdate(name="Movies", current_path="/old", desired_path="/m"),)


def test_incremental_never_updates_existing_category() -> None:
    manifest = make_manifest(categories={"Movies": "/m"})

    plan = diff_categories(manifest, _live(categories={"Movies": "/old"}), RestoreMode.INCREMENTAL)

    assert plan.update == ()
    assert plan.create == ()


def test_extra_torrent_is_deleted_only_in_complete_mode() -> None:
    manifest = make_manifest(items=[make_item("abc")])
    live = _live(torrents=[LiveTorrent(hash="xyz", name="extra")])

    complete = compute_diff(manifest, live, RestoreMode.COMPLETE, gate=GATE)
    overwrite = compute_diff(manifest, live, RestoreMode.OVERWRITE, gate=GATE)

    assert complete.torrents.delete == ("xyz",)
    assert "xyz" not in overwrite.torrents.hashes()


def test_extra_categories_and_tags_are_deleted_only_in_complete_mode() -> None:
    manifest = make_manifest(categories={"Movies": "/m"}, tags={"keep"})
    live = _live(categories={"Movies": "/m", "Old": "/o"}, tags=("keep", "stale"))

    assert diff_categories(manifest, live, RestoreMode.COMPLETE).delete == ("Old",)
    assert diff_tags(manifest, live, RestoreMode.COMPLETE).delete == ("stale",)
    assert diff_categories(manifest, live, RestoreMode.OVERWRITE).delete == ()
    assert diff_tags(manifest, live, RestoreMode.OVERWRITE).delete == ()


def test_tags_referenced_by_items_are_created_and_kept() -> None:
    manifest = make_manifest(tags={"a"}, items=[make_item("abc", tags=("b",))])
    live = _live(tags=("b",))

    tags = diff_tags(manifest, live, RestoreMode.COMPLETE)

    assert tags.create == ("a",)
    assert tags.delete == ()


def test_incremental_never_touches_existing_torrents() -> None:
    item = make_item("abc", category="Movies")
    live = _live(torrents=[LiveTorrent(hash="abc", name="renamed", category="Other")])

    diff = compute_diff(make_manifest(items=[item]), live, RestoreMode.INCREMENTAL, gate=GATE)

    assert diff.torrents.hashes() == set()


def test_overwrite_emits_update_with_classified_changes() -> None:
    item = make_item("abc", category="Movies", tags=("4k", "hdr"))
    live = _live(torrents=[LiveTorrent(hash="abc", name=item.name, category="Other", tags=("4k",))])

    diff = compute_diff(make_manifest(items=[item]), live, RestoreMode.OVERWRITE, gate=GATE)

    (update,) = diff.torrents.update
    assert update.hash == "abc"
    assert [c.field for c in update.changes] == ["category", "tags"]
    assert update.changes[1].desired == ("4k", "hdr")
    assert all(c.supported for c in update.changes)
    assert update.current["category"] == "Other"
    assert update.desired["category"] == "Movies"


def test_matching_torrent_produces_no_update() -> None:
    item = make_item("abc", category="Movies", tags=("x",), save_path="/data")
    live = _live(torrents=[live_from_item(item)])

    diff = compute_diff(make_manifest(items=[item]), live, RestoreMode.COMPLETE, gate=GATE)

    assert diff.torrents.update == ()


def test_hash_case_is_ignored_when_matching_live_torrents() -> None:
    item = make_item("abcdef")
    live = _live(torrents=[LiveTorrent(hash="ABCDEF", name=item.name)])

    diff = compute_diff(make_manifest(items=[item]), live, RestoreMode.COMPLETE, gate=GATE)

    assert diff.torrents.hashes() == set()


def test_buckets_are_sorted() -> None:
    manifest = make_manifest(
        categories={"b": "/b", "a": "/a", "c": "/c"},
        tags={"z", "m", "a"},
        items=[make_item("ccc"), make_item("aaa"), make_item("bbb")],
    )
    live = _live(torrents=[LiveTorrent(hash="zzz", name="z"), LiveTorrent(hash="yyy", name="y")])

    diff = compute_diff(manifest, live, RestoreMode.COMPLETE, gate=GATE)

    assert [c.name for c in diff.categories.create] == ["a", "b", "c"]
    assert diff.tags.create == ("a", "m", "z")
    assert [a.hash for a in diff.torrents.add] == ["aaa", "bbb", "ccc"]
    assert diff.torrents.delete == ("yyy", "zzz")


def _scenario() -> tuple[BackupManifest, LiveState]:
    items = [
        make_item("aaa", category="Movies", tags=("4k",)),
        make_item("bbb", category="TV", name="show"),
        make_item("ccc"),
    ]
    manifest = make_manifest(categories={"Movies": "/m", "TV": "/tv"}, tags={"4k", "hdr"}, items=items)
    live = _live(
        categories={"Movies": "/old", "Music": "/music"},
        tags=("4k", "lossless"),
        torrents=[
            LiveTorrent(hash="bbb", name="show-renamed", category="TV"),
            LiveTorrent(hash="ccc", name="torrent-ccc"),
            LiveTorrent(hash="ddd", name="extra"),
        ],
    )
    return manifest, live


def test_diff_is_deterministic() -> None:
    manifest, live = _scenario()

    first = compute_diff(manifest, live, RestoreMode.COMPLETE, gate=GATE)
    second = compute_diff(manifest, live, RestoreMode.COMPLETE, gate=GATE)

    assert first == second


@pytest.mark.parametrize("mode", list(RestoreMode))
def test_no_update_entry_has_empty_changes(mode: RestoreMode) -> None:
    manifest, live = _scenario()

    diff = compute_diff(manifest, live, mode, gate=GATE)

    assert all(update.changes for update in diff.torrents.update)


@pytest.mark.parametrize("mode", list(RestoreMode))
def test_hash_appears_in_at_most_one_torrent_bucket(mode: RestoreMode) -> None:
    manifest, live = _scenario()

    diff = compute_diff(manifest, live, mode, gate=GATE)
    added = {a.hash for a in diff.torrents.add}
    updated = {u.hash for u in diff.torrents.update}
    deleted = set(diff.torrents.delete)

    assert not added & updated
    assert not added & deleted
    assert not updated & deleted


def test_modes_are_monotonic() -> None:
    manifest, live = _scenario()

    incremental = compute_diff(manifest, live, RestoreMode.INCREMENTAL, gate=GATE)
    overwrite = compute_diff(manifest, live, RestoreMode.OVERWRITE, gate=GATE)
    complete = compute_diff(manifest, live, RestoreMode.COMPLETE, gate=GATE)

    for diff in (incremental, overwrite):
        assert diff.categories.delete == ()
        assert diff.tags.delete == ()
        assert diff.torrents.delete == ()
    assert complete.categories.delete == ("Music",)
    assert complete.tags.delete == ("lossless",)
    assert complete.torrents.delete == ("ddd",)

    assert overwrite.categories.create == complete.categories.create
    assert overwrite.categories.update == complete.categories.update
    assert overwrite.tags.create == complete.tags.create
    assert overwrite.torrents.add == complete.torrents.add
    assert overwrite.torrents.update == complete.torrents.update

    assert incremental.categories.update == ()
    assert incremental.torrents.update == ()
    assert incremental.torrents.add == overwrite.torrents.add
