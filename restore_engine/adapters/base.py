"""
Live client adapter contract.

The engine reads and mutates the managed torrent client only through this
boundary. Adapters hold no reconciliation logic: they enumerate state and
carry out single mutations, raising :class:`AdapterError` on failure.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Protocol, Sequence

from restore_engine.data_models import CategorySnapshot, LiveState, LiveTorrent, ManifestItem
from restore_engine.errors import LiveStateUnavailableError, RestoreEngineError
from restore_engine.restore.data_models import BehaviorFlags, Change

logger = logging.getLogger(__name__)


class AdapterError(RestoreEngineError):
    """Base class for failures reported by a live client adapter."""


class AdapterOperationError(AdapterError):
    """Raised when a single mutation is rejected or fails on the client."""


class UnsupportedChangeError(AdapterError):
    """Raised when an adapter is asked to apply a field it cannot change in place."""


class LiveClientAdapter(Protocol):
    """Read/write boundary to one managed client instance."""

    def list_categories(self) -> Mapping[str, CategorySnapshot]:
        """Return categories keyed by name."""
        ...

    def list_tags(self) -> Iterable[str]:
        """Return tag names."""
        ...

    def list_torrents(self) -> Iterable[LiveTorrent]:
        """Return every torrent on the instance."""
        ...

    def create_category(self, name: str, save_path: str) -> None: ...

    def update_category(self, name: str, save_path: str) -> None: ...

    def delete_category(self, name: str) -> None: ...

    def create_tag(self, name: str) -> None: ...

    def delete_tag(self, name: str) -> None: ...

    def add_torrent(self, item: ManifestItem, flags: BehaviorFlags) -> None:
        """Add a captured torrent using its ``.torrent`` bytes."""
        ...

    def update_torrent(self, torrent_hash: str, changes: Sequence[Change]) -> None:
        """Apply supported field changes. Set-valued fields are replaced wholesale."""
        ...

    def delete_torrent(self, torrent_hash: str) -> None:
        """Remove a torrent from the client, keeping its data on disk."""
        ...


def read_live_state(adapter: LiveClientAdapter) -> LiveState:
    """
    Enumerate categories, tags and torrents into a :class:`LiveState`.

    Raises
    ------
    LiveStateUnavailableError
        If any enumeration fails.
    """
    try:
        categories = dict(adapter.list_categories())
        tags = list(adapter.list_tags())
        torrents = list(adapter.list_torrents())
    except LiveStateUnavailableError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to read live client state: %s", exc)
        raise LiveStateUnavailableError(f"Live client state unavailable: {exc}") from exc

    return LiveState.from_parts(categories=categories, tags=tags, torrents=torrents)
