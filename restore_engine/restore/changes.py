"""
Field-level change classification for torrents present in both manifest and live state.

Comparable fields are declared once in :data:`TORRENT_FIELDS`. Each descriptor
knows how to read the field from a manifest item and from a live torrent,
whether it is compared as a set, and whether it is an identity field that can
never change in place. Adding a comparable field means adding one descriptor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Protocol

from restore_engine.data_models import LiveTorrent, ManifestItem

from .data_models import Change

# Changed in place by default when no capability gate is configured.
DEFAULT_MUTABLE_FIELDS: frozenset[str] = frozenset({"name", "category", "tags"})


class CapabilityGate(Protocol):
    """Decides whether a torrent field can be changed in place on the client."""

    def is_field_mutable(self, field_name: str) -> bool: ...


@dataclass(frozen=True, slots=True)
class StaticCapabilityGate:
    """Capability gate backed by a fixed set of mutable field names."""

    mutable_fields: frozenset[str] = DEFAULT_MUTABLE_FIELDS

    def is_field_mutable(self, field_name: str) -> bool:
        return field_name in self.mutable_fields


@dataclass(frozen=True, slots=True)
class FieldDescriptor:
    """
    One comparable torrent field.

    Attributes
    ----------
    name : str
        Field name used in :class:`Change` records.
    desired : Callable[[ManifestItem], Any]
        Reads the field from a manifest item.
    current : Callable[[LiveTorrent], Any]
        Reads the field from a live torrent.
    label : str
        Human-readable name used in manual-action messages.
    is_set : bool
        Compare as an unordered set; values are reported as sorted tuples.
    identity : bool
        Identity fields are never mutable, whatever the gate says.
    skip_when_uncaptured : bool
        Skip the comparison when either side did not record a value (None).
    """

    name: str
    desired: Callable[[ManifestItem], Any]
    current: Callable[[LiveTorrent], Any]
    label: str
    is_set: bool = False
    identity: bool = False
    skip_when_uncaptured: bool = False

    def normalize(self, value: Any) -> Any:
        if self.is_set:
            return tuple(sorted({str(v) for v in (value or ())}))
        return value

    def is_mutable(self, gate: CapabilityGate) -> bool:
        return not self.identity and gate.is_field_mutable(self.name)

    def manual_message(self) -> str:
        if self.identity:
            return f"{self.label} differs; remove the torrent and re-add it from the backup to restore it."
        return f"{self.label} cannot be changed in place on this client; update it manually or re-add the torrent."


TORRENT_FIELDS: tuple[FieldDescriptor, ...] = (
    FieldDescriptor("name", lambda i: i.name, lambda t: t.name, "Name"),
    FieldDescriptor("category", lambda i: i.category or "", lambda t: t.category or "", "Category"),
    FieldDescriptor("tags", lambda i: i.tags, lambda t: t.tags, "Tags", is_set=True),
    FieldDescriptor(
        "save_path", lambda i: i.save_path, lambda t: t.save_path, "Save path", skip_when_uncaptured=True
    ),
    FieldDescriptor(
        "content_layout",
        lambda i: i.content_layout,
        lambda t: t.content_layout,
        "Content layout",
        skip_when_uncaptured=True,
    ),
    FieldDescriptor(
        "size_bytes",
        lambda i: i.size_bytes or None,
        lambda t: t.size_bytes or None,
        "Size",
        identity=True,
        skip_when_uncaptured=True,
    ),
    FieldDescriptor(
        "infohash_v1",
        lambda i: i.infohash_v1,
        lambda t: t.infohash_v1,
        "Infohash v1",
        identity=True,
        skip_when_uncaptured=True,
    ),
    FieldDescriptor(
        "infohash_v2",
        lambda i: i.infohash_v2,
        lambda t: t.infohash_v2,
        "Infohash v2",
        identity=True,
        skip_when_uncaptured=True,
    ),
)


def classify_changes(
    current: LiveTorrent,
    desired: ManifestItem,
    *,
    gate: CapabilityGate,
    fields: Iterable[FieldDescriptor] = TORRENT_FIELDS,
) -> tuple[Change, ...]:
    """
    Compare a live torrent against its manifest record.

    Parameters
    ----------
    current : LiveTorrent
        Torrent as reported by the client.
    desired : ManifestItem
        Torrent as captured in the manifest.
    gate : CapabilityGate
        Capability gate deciding which non-identity fields are mutable.
    fields : Iterable[FieldDescriptor]
        Field registry, in reporting order.

    Returns
    -------
    tuple[Change, ...]
        One change per differing field, in registry order. Empty when the
        torrent already matches.
    """
    changes: list[Change] = []
    for descriptor in fields:
        desired_value = descriptor.desired(desired)
        current_value = descriptor.current(current)
        if descriptor.skip_when_uncaptured and (desired_value is None or current_value is None):
            continue

        desired_value = descriptor.normalize(desired_value)
        current_value = descriptor.normalize(current_value)
        if current_value == desired_value:
            continue

        supported = descriptor.is_mutable(gate)
        changes.append(
            Change(
                field=descriptor.name,
                current=current_value,
                desired=desired_value,
                supported=supported,
                message=None if supported else descriptor.manual_message(),
            )
        )
    return tuple(changes)


def extract_fields(
    obj: ManifestItem | LiveTorrent,
    *,
    fields: Iterable[FieldDescriptor] = TORRENT_FIELDS,
) -> Mapping[str, Any]:
    """Return the registry fields of a manifest item or live torrent as a plain mapping."""
    reader_is_manifest = isinstance(obj, ManifestItem)
    values: dict[str, Any] = {}
    for descriptor in fields:
        raw = descriptor.desired(obj) if reader_is_manifest else descriptor.current(obj)  # type: ignore[arg-type]
        values[descriptor.name] = descriptor.normalize(raw)
    return values
