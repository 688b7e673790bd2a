"""Snapshot and live-state models for the restore engine.

A manifest is the immutable record of a torrent client's categories, tags and
torrents captured by a backup run. Live state has the same shape but is read
fresh from the running client on every planning call.

The models in this module are standard-library-only dataclasses so the diff
and planning code stays pure and deterministic.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Self

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def normalize_hash(value: str) -> str:
    """Return the canonical (trimmed, lowercase) form of a torrent hash."""
    return str(value).strip().lower()


def normalize_hashes(values: Iterable[str] | None) -> frozenset[str]:
    """Normalize a collection of hashes, dropping blanks."""
    if not values:
        return frozenset()
    return frozenset(h for h in (normalize_hash(v) for v in values) if h)


def datetime_from_iso(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as an aware datetime.

    Parameters
    ----------
    value
        Timestamp such as ``2025-01-01T00:00:00Z`` or with a numeric offset.
        Sub-microsecond precision is truncated.

    Returns
    -------
    datetime
        Timezone-aware datetime. Naive input is treated as UTC.

    Raises
    ------
    ValueError
        If the value is not a valid timestamp.
    """

    text = _FRACTION_RE.sub(r"\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def datetime_to_iso(dt: datetime) -> str:
    """Serialize an aware datetime as UTC RFC 3339 with a ``Z`` suffix."""
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _require_keys(payload: Mapping[str, Any], keys: set[str], *, context: str) -> None:
    missing = keys.difference(payload.keys())
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ValueError(f"Missing required keys in {context}: {missing_str}")


def optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def tag_tuple(raw: Any, *, context: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        # qBittorrent reports tags as a comma separated string.
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple, set, frozenset)):
        raise ValueError(f"{context} must be a list of tags")
    return tuple(sorted({str(t).strip() for t in raw if str(t).strip()}))


@dataclass(frozen=True, slots=True)
class CategorySnapshot:
    """A category and its save path."""

    save_path: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Self:
        """Construct from ``{"savePath": ...}`` (``save_path`` is also accepted)."""

        value = payload.get("savePath", payload.get("save_path", ""))
        return cls(save_path=str(value or ""))

    def to_dict(self) -> dict[str, Any]:
        return {"savePath": self.save_path}


@dataclass(frozen=True, slots=True)
class ManifestItem:
    """
    One torrent captured in a backup run.

    Attributes
    ----------
    hash : str
        Stable identity key, normalized to lowercase.
    name : str
        Torrent display name at capture time.
    category : str | None
        Category name, or None when the torrent had no category.
    tags : tuple[str, ...]
        Sorted, de-duplicated tag names.
    size_bytes : int
        Total torrent size.
    archive_path : str
        Relative path of the captured ``.torrent`` inside the run directory.
    torrent_blob : str | None
        Optional path (relative to the data root, or absolute once resolved by
        the store) of the cached ``.torrent`` bytes.
    infohash_v1, infohash_v2 : str | None
        Identity hashes when the client reported them.
    save_path, content_layout : str | None
        Captured placement details. None when the backup did not record them.
    """

    hash: str
    name: str
    category: str | None = None
    tags: tuple[str, ...] = ()
    size_bytes: int = 0
    archive_path: str = ""
    torrent_blob: str | None = None
    infohash_v1: str | None = None
    infohash_v2: str | None = None
    save_path: str | None = None
    content_layout: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Self:
        """Construct a :class:`ManifestItem` from its camelCase JSON form."""

        _require_keys(payload, {"hash", "name"}, context="manifest item")
        torrent_hash = normalize_hash(payload["hash"])
        if not torrent_hash:
            raise ValueError("manifest item hash must be non-empty")
        return cls(
            hash=torrent_hash,
            name=str(payload["name"]),
            category=optional_str(payload.get("category")),
            tags=tag_tuple(payload.get("tags"), context=f"tags of {torrent_hash}"),
            size_bytes=int(payload.get("sizeBytes", 0) or 0),
            archive_path=str(payload.get("archivePath", "") or ""),
            torrent_blob=optional_str(payload.get("torrentBlob")),
            infohash_v1=optional_str(payload.get("infohashV1")),
            infohash_v2=optional_str(payload.get("infohashV2")),
            save_path=optional_str(payload.get("savePath")),
            content_layout=optional_str(payload.get("contentLayout")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase JSON form, omitting unset optional fields."""

        payload: dict[str, Any] = {
            "hash": self.hash,
            "name": self.name,
            "sizeBytes": self.size_bytes,
            "archivePath": self.archive_path,
        }
        optional = {
            "category": self.category,
            "torrentBlob": self.torrent_blob,
            "infohashV1": self.infohash_v1,
            "infohashV2": self.infohash_v2,
            "savePath": self.save_path,
            "contentLayout": self.content_layout,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        if self.tags:
            payload["tags"] = list(self.tags)
        return payload


@dataclass(frozen=True, slots=True)
class BackupManifest:
    """Immutable snapshot of a client's state, identified by a backup run id.

    Notes
    -----
    Items keep the order recorded by the backup. No two items share a hash.
    """

    run_id: str
    generated_at: datetime
    categories: Mapping[str, CategorySnapshot] = field(default_factory=dict)
    tags: frozenset[str] = frozenset()
    items: tuple[ManifestItem, ...] = ()
    instance_id: int | None = None
    kind: str = ""

    def validate(self) -> None:
        """Validate manifest invariants.

        Raises
        ------
        ValueError
            If the timestamp is naive or two items share a hash.
        """

        if self.generated_at.tzinfo is None:
            raise ValueError("generatedAt must be timezone-aware")

        seen: set[str] = set()
        for item in self.items:
            if item.hash in seen:
                raise ValueError(f"Duplicate torrent hash in manifest: {item.hash}")
            seen.add(item.hash)

    def items_by_hash(self) -> dict[str, ManifestItem]:
        """Return items keyed by normalized hash."""
        return {item.hash: item for item in self.items}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, run_id: str) -> Self:
        """Parse a manifest from the JSON written by the backup service.

        Parameters
        ----------
        payload
            Mapping with ``generatedAt``, ``items`` and optional ``categories``,
            ``tags``, ``instanceId`` and ``kind``.
        run_id
            Identifier of the backup run this manifest belongs to.

        Returns
        -------
        BackupManifest
            Parsed and validated manifest.

        Raises
        ------
        ValueError
            If required fields are missing or invariants are violated.
        """

        _require_keys(payload, {"generatedAt", "items"}, context="manifest root")

        categories_raw = payload.get("categories") or {}
        if not isinstance(categories_raw, Mapping):
            raise ValueError("manifest categories must be an object")
        categories = {
            str(name): CategorySnapshot.from_dict(value or {})
            for name, value in categories_raw.items()
        }

        items_raw = payload.get("items") or []
        if not isinstance(items_raw, list):
            raise ValueError("manifest items must be a list")

        instance_raw = payload.get("instanceId")
        manifest = cls(
            run_id=str(run_id),
            generated_at=datetime_from_iso(str(payload["generatedAt"])),
            categories=categories,
            tags=frozenset(tag_tuple(payload.get("tags"), context="manifest tags")),
            items=tuple(ManifestItem.from_dict(entry) for entry in items_raw),
            instance_id=int(instance_raw) if instance_raw is not None else None,
            kind=str(payload.get("kind", "") or ""),
        )
        manifest.validate()
        return manifest

    def to_dict(self) -> dict[str, Any]:
        """Convert this manifest to its JSON form."""

        self.validate()
        payload: dict[str, Any] = {
            "kind": self.kind,
            "generatedAt": datetime_to_iso(self.generated_at),
            "torrentCount": len(self.items),
            "categories": {name: self.categories[name].to_dict() for name in sorted(self.categories)},
            "tags": sorted(self.tags),
            "items": [item.to_dict() for item in self.items],
        }
        if self.instance_id is not None:
            payload["instanceId"] = self.instance_id
        return payload


@dataclass(frozen=True, slots=True)
class LiveTorrent:
    """A torrent as currently reported by the managed client."""

    hash: str
    name: str
    category: str | None = None
    tags: tuple[str, ...] = ()
    save_path: str | None = None
    content_layout: str | None = None
    size_bytes: int = 0
    infohash_v1: str | None = None
    infohash_v2: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "name": self.name,
            "category": self.category,
            "tags": list(self.tags),
            "save_path": self.save_path,
            "content_layout": self.content_layout,
            "size_bytes": self.size_bytes,
            "infohash_v1": self.infohash_v1,
            "infohash_v2": self.infohash_v2,
        }


@dataclass(frozen=True, slots=True)
class LiveState:
    """
    Point-in-time view of the managed client.

    Attributes
    ----------
    categories : Mapping[str, CategorySnapshot]
        Categories keyed by name.
    tags : frozenset[str]
        Tag names.
    torrents : Mapping[str, LiveTorrent]
        Torrents keyed by normalized hash.
    """

    categories: Mapping[str, CategorySnapshot] = field(default_factory=dict)
    tags: frozenset[str] = frozenset()
    torrents: Mapping[str, LiveTorrent] = field(default_factory=dict)

    @classmethod
    def from_parts(
        cls,
        *,
        categories: Mapping[str, CategorySnapshot],
        tags: Iterable[str],
        torrents: Iterable[LiveTorrent],
    ) -> Self:
        """Assemble live state from adapter enumerations, keying torrents by hash."""

        return cls(
            categories=dict(categories),
            tags=frozenset(t for t in tags if t),
            torrents={normalize_hash(t.hash): t for t in torrents},
        )
