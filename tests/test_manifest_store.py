from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from fakes import make_item, make_manifest
from restore_engine.errors import ManifestIOError, ManifestValidationError, SnapshotNotFoundError
from restore_engine.manifest_store import JsonManifestStore, read_json, write_json_atomic, write_manifest_atomic


def _write_manifest(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


def _payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "kind": "full",
        "generatedAt": "2025-01-02T03:04:05.123456789Z",
        "instanceId": 7,
        "categories": {"Movies": {"savePath": "/m"}, "Empty": None},
        "tags": ["4k", " hdr ", "4k"],
        "items": [
            {
                "hash": "ABCDEF",
                "name": "Some Movie",
                "category": "Movies",
                "tags": "hdr,4k",
                "sizeBytes": 1024,
                "archivePath": "torrents/abcdef.torrent",
                "infohashV1": "abcdef",
                "savePath": "/m/some",
            },
            {"hash": "123456", "name": "Other", "category": ""},
        ],
    }
    payload.update(overrides)
    return payload


def test_get_manifest_parses_camel_case_fields(tmp_path: Path) -> None:
    store = JsonManifestStore(tmp_path)
    _write_manifest(store.runs_root / "run-1" / "manifest.json", _payload())

    manifest = store.get_manifest("run-1")

    assert manifest.run_id == "run-1"
    assert manifest.kind == "full"
    assert manifest.instance_id == 7
    assert manifest.generated_at == datetime(2025, 1, 2, 3, 4, 5, 123456, tzinfo=timezone.utc)
    assert manifest.categories["Movies"].save_path == "/m"
    assert manifest.categories["Empty"].save_path == ""
    assert manifest.tags == frozenset({"4k", "hdr"})

    first, second = manifest.items
    assert first.hash == "abcdef"
    assert first.tags == ("4k", "hdr")
    assert first.size_bytes == 1024
    assert first.save_path == "/m/some"
    assert first.infohash_v1 == "abcdef"
    assert first.content_layout is None
    assert second.category is None
    assert second.tags == ()


def test_duplicate_hashes_fail_validation(tmp_path: Path) -> None:
    store = JsonManifestStore(tmp_path)
    items = [{"hash": "abc", "name": "a"}, {"hash": "ABC", "name": "b"}]
    _write_manifest(store.runs_root / "run-1" / "manifest.json", _payload(items=items))

    with pytest.raises(ManifestValidationError) as excinfo:
        store.get_manifest("run-1")

    assert "Duplicate torrent hash" in str(excinfo.value)


def test_missing_required_keys_fail_validation(tmp_path: Path) -> None:
    store = JsonManifestStore(tmp_path)
    _write_manifest(store.runs_root / "run-1" / "manifest.json", {"items": []})

    with pytest.raises(ManifestValidationError):
        store.get_manifest("run-1")


def test_unknown_run_raises_snapshot_not_found(tmp_path: Path) -> None:
    with pytest.raises(SnapshotNotFoundError):
        JsonManifestStore(tmp_path).get_manifest("nope")


@pytest.mark.parametrize("run_id", ["", "../escape", "a/b", ".hidden"])
def test_invalid_run_id_is_not_found(tmp_path: Path, run_id: str) -> None:
    with pytest.raises(SnapshotNotFoundError):
        JsonManifestStore(tmp_path).get_manifest(run_id)


def test_corrupt_manifest_raises_io_error(tmp_path: Path) -> None:
    store = JsonManifestStore(tmp_path)
    path = store.runs_root / "run-1" / "manifest.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ManifestIOError):
        store.get_manifest("run-1")


def test_torrent_blobs_are_resolved_to_absolute_paths(tmp_path: Path) -> None:
    store = JsonManifestStore(tmp_path)
    run_dir = store.runs_root / "run-1"
    archived = run_dir / "torrents" / "abcdef.torrent"
    archived.parent.mkdir(parents=True)
    archived.write_bytes(b"d4:infoe")
    cached = tmp_path / "blobs" / "123456.torrent"
    cached.parent.mkdir()
    cached.write_bytes(b"d4:infoe")
    items = [
        {"hash": "abcdef", "name": "a", "archivePath": "torrents/abcdef.torrent"},
        {"hash": "123456", "name": "b", "torrentBlob": "blobs/123456.torrent"},
        {"hash": "999999", "name": "c", "archivePath": "torrents/missing.torrent"},
    ]
    _write_manifest(run_dir / "manifest.json", _payload(items=items))

    by_hash = store.get_manifest("run-1").items_by_hash()

    assert by_hash["abcdef"].torrent_blob == str(archived)
    assert by_hash["123456"].torrent_blob == str(cached)
    assert by_hash["999999"].torrent_blob is None


def test_list_runs_is_newest_first_and_skips_unreadable(tmp_path: Path) -> None:
    store = JsonManifestStore(tmp_path)
    _write_manifest(store.runs_root / "older" / "manifest.json", _payload(generatedAt="2025-01-01T00:00:00Z"))
    _write_manifest(store.runs_root / "newer" / "manifest.json", _payload(generatedAt="2025-02-01T00:00:00Z"))
    broken = store.runs_root / "broken" / "manifest.json"
    broken.parent.mkdir(parents=True)
    broken.write_text("[]", encoding="utf-8")
    (store.runs_root / "no-manifest").mkdir()

    runs = store.list_runs()

    assert [r.run_id for r in runs] == ["newer", "older"]
    assert runs[0].torrent_count == 2
    assert runs[0].kind == "full"
    assert runs[0].to_dict()["manifest_path"].endswith("manifest.json")


def test_list_runs_without_runs_root_is_empty(tmp_path: Path) -> None:
    assert JsonManifestStore(tmp_path / "missing").list_runs() == []


def test_write_manifest_atomic_round_trips(tmp_path: Path) -> None:
    store = JsonManifestStore(tmp_path)
    manifest = make_manifest(
        run_id="run-9",
        categories={"TV": "/tv"},
        tags={"x"},
        items=[make_item("aaa", category="TV", tags=("x",), size_bytes=5)],
    )

    path = write_manifest_atomic(store, manifest)

    assert path == store.runs_root / "run-9" / "manifest.json"
    assert not path.with_suffix(".json.tmp").exists()
    assert store.get_manifest("run-9") == manifest
    assert read_json(path)["torrentCount"] == 1


def test_write_json_atomic_creates_parents_and_sorts_keys(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "out.json"

    write_json_atomic(path, {"b": 1, "a": "é"})

    text = path.read_text(encoding="utf-8")
    assert text.index('"a"') < text.index('"b"')
    assert "é" in text
    assert text.endswith("\n")


def test_read_json_rejects_non_object(tmp_path: Path) -> None:
    path = tmp_path / "list.json"
    path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ManifestIOError):
        read_json(path)
