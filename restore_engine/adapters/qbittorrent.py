"""
qBittorrent implementation of the live client adapter.

Talks to the WebUI API through ``qbittorrent-api``. Connection and login
happen lazily on first use. Failures while enumerating surface as
:class:`LiveStateUnavailableError`; failures of a single mutation surface as
:class:`AdapterOperationError` so the executor can record them and continue.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence, TypeVar

import qbittorrentapi

from restore_engine.data_models import (
    CategorySnapshot,
    LiveTorrent,
    ManifestItem,
    normalize_hash,
    optional_str,
    tag_tuple,
)
from restore_engine.errors import LiveStateUnavailableError
from restore_engine.restore.data_models import BehaviorFlags, Change
from restore_engine.settings import ClientSettings

from .base import AdapterOperationError, UnsupportedChangeError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields this adapter can change in place.
MUTABLE_FIELDS: frozenset[str] = frozenset({"name", "category", "tags", "save_path"})


class QBittorrentAdapter:
    """
    Live client adapter for one qBittorrent instance.

    Parameters
    ----------
    settings : ClientSettings
        Host, credentials and HTTP timeout.
    client : qbittorrentapi.Client | None
        Pre-built client, mainly for tests. When omitted a client is created
        from ``settings`` on first use.
    """

    def __init__(self, settings: ClientSettings, *, client: qbittorrentapi.Client | None = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def client(self) -> qbittorrentapi.Client:
        if self._client is None:
            self._client = self._connect()
        return self._client

    def _connect(self) -> qbittorrentapi.Client:
        s = self._settings
        client = qbittorrentapi.Client(
            host=s.host,
            port=s.port,
            username=s.username or None,
            password=s.password or None,
            VERIFY_WEBUI_CERTIFICATE=s.verify_cert,
            REQUESTS_ARGS={"timeout": s.request_timeout_seconds},
        )
        try:
            client.auth_log_in()
        except qbittorrentapi.LoginFailed as exc:
            raise LiveStateUnavailableError(f"qBittorrent login failed for {s.host}:{s.port}") from exc
        except qbittorrentapi.APIConnectionError as exc:
            raise LiveStateUnavailableError(f"Cannot connect to qBittorrent at {s.host}:{s.port}: {exc}") from exc
        logger.debug("Connected to qBittorrent %s:%s", s.host, s.port)
        return client

    def is_field_mutable(self, field_name: str) -> bool:
        """Capability gate for the fields :meth:`update_torrent` understands."""
        return field_name in MUTABLE_FIELDS

    # Enumeration

    def list_categories(self) -> Mapping[str, CategorySnapshot]:
        raw = self._read("list categories", self.client.torrents_categories)
        return {str(name): CategorySnapshot.from_dict(info or {}) for name, info in dict(raw).items()}

    def list_tags(self) -> Iterable[str]:
        raw = self._read("list tags", self.client.torrents_tags)
        return sorted(str(tag) for tag in raw if str(tag).strip())

    def list_torrents(self) -> Iterable[LiveTorrent]:
        raw = self._read("list torrents", self.client.torrents_info)
        return [torrent_from_info(info) for info in raw]

    # Categories and tags

    def create_category(self, name: str, save_path: str) -> None:
        self._mutate("create category", name, self.client.torrents_create_category, name=name, save_path=save_path)

    def update_category(self, name: str, save_path: str) -> None:
        self._mutate("update category", name, self.client.torrents_edit_category, name=name, save_path=save_path)

    def delete_category(self, name: str) -> None:
        self._mutate("delete category", name, self.client.torrents_remove_categories, categories=[name])

    def create_tag(self, name: str) -> None:
        self._mutate("create tag", name, self.client.torrents_create_tags, tags=[name])

    def delete_tag(self, name: str) -> None:
        self._mutate("delete tag", name, self.client.torrents_delete_tags, tags=[name])

    # Torrents

    def add_torrent(self, item: ManifestItem, flags: BehaviorFlags) -> None:
        """
        Add a torrent from its captured ``.torrent`` bytes.

        Raises
        ------
        AdapterOperationError
            If the ``.torrent`` file is missing or the client rejects the add.
        """
        if not item.torrent_blob:
            raise AdapterOperationError(f"No captured .torrent file for {item.hash}")
        try:
            torrent_bytes = Path(item.torrent_blob).read_bytes()
        except OSError as exc:
            raise AdapterOperationError(f"Cannot read .torrent for {item.hash}: {exc}") from exc

        add_kwargs: dict[str, Any] = dict(
            torrent_files=torrent_bytes,
            rename=item.name,
            is_paused=flags.start_paused,
            is_skip_checking=flags.skip_hash_check,
        )
        if item.category:
            add_kwargs["category"] = item.category
        if item.tags:
            add_kwargs["tags"] = list(item.tags)
        if item.save_path:
            add_kwargs["save_path"] = item.save_path
            add_kwargs["use_auto_torrent_management"] = False
        if item.content_layout:
            add_kwargs["content_layout"] = item.content_layout

        result = self._mutate("add torrent", item.hash, self.client.torrents_add, **add_kwargs)
        if isinstance(result, str) and result.strip().lower().startswith("fail"):
            raise AdapterOperationError(f"qBittorrent rejected torrent {item.hash}")
        logger.debug("Added torrent %s (%s)", item.hash, item.name)

        if flags.auto_resume_verified and flags.skip_hash_check and flags.start_paused:
            # The torrent is on the client now; a failed resume leaves it paused, not missing.
            try:
                self._resume_if_verified(item.hash)
            except AdapterOperationError as exc:
                logger.warning("Added torrent %s but could not auto-resume it: %s", item.hash, exc)

    def _resume_if_verified(self, torrent_hash: str) -> None:
        infos = self._mutate("read added torrent", torrent_hash, self.client.torrents_info, torrent_hashes=torrent_hash)
        for info in infos or ():
            if float(info.get("progress", 0) or 0) >= 1.0:
                self._mutate("resume torrent", torrent_hash, self.client.torrents_resume, torrent_hashes=torrent_hash)
                logger.info("Resumed verified torrent %s", torrent_hash)

    def update_torrent(self, torrent_hash: str, changes: Sequence[Change]) -> None:
        """
        Apply field changes to an existing torrent.

        Tags are replaced as a set: tags not desired are removed, missing ones added.

        Raises
        ------
        UnsupportedChangeError
            If a change targets a field this adapter cannot mutate.
        """
        for change in changes:
            if change.field not in MUTABLE_FIELDS:
                raise UnsupportedChangeError(f"Field {change.field!r} cannot be changed on qBittorrent")

        client = self.client
        for change in changes:
            if change.field == "name":
                self._mutate(
                    "rename torrent",
                    torrent_hash,
                    client.torrents_rename,
                    torrent_hash=torrent_hash,
                    new_torrent_name=change.desired,
                )
            elif change.field == "category":
                self._mutate(
                    "set category",
                    torrent_hash,
                    client.torrents_set_category,
                    category=change.desired or "",
                    torrent_hashes=torrent_hash,
                )
            elif change.field == "tags":
                self._replace_tags(torrent_hash, set(change.current or ()), set(change.desired or ()))
            elif change.field == "save_path":
                self._mutate(
                    "set location",
                    torrent_hash,
                    client.torrents_set_location,
                    location=change.desired,
                    torrent_hashes=torrent_hash,
                )

    def _replace_tags(self, torrent_hash: str, current: set[str], desired: set[str]) -> None:
        remove = sorted(current - desired)
        add = sorted(desired - current)
        if remove:
            self._mutate(
                "remove tags", torrent_hash, self.client.torrents_remove_tags, tags=remove, torrent_hashes=torrent_hash
            )
        if add:
            self._mutate("add tags", torrent_hash, self.client.torrents_add_tags, tags=add, torrent_hashes=torrent_hash)

    def delete_torrent(self, torrent_hash: str) -> None:
        self._mutate(
            "delete torrent",
            torrent_hash,
            self.client.torrents_delete,
            delete_files=False,
            torrent_hashes=torrent_hash,
        )

    # Error translation

    def _read(self, what: str, call: Callable[..., T]) -> T:
        try:
            return call()
        except qbittorrentapi.APIError as exc:
            raise LiveStateUnavailableError(f"qBittorrent: failed to {what}: {exc}") from exc

    def _mutate(self, what: str, target: str, call: Callable[..., T], **kwargs: Any) -> T:
        try:
            return call(**kwargs)
        except qbittorrentapi.APIError as exc:
            raise AdapterOperationError(f"qBittorrent: failed to {what} {target}: {exc}") from exc


def torrent_from_info(info: Mapping[str, Any]) -> LiveTorrent:
    """Convert one ``torrents_info`` entry into a :class:`LiveTorrent`."""
    size = info.get("total_size")
    if size is None or int(size) < 0:
        size = info.get("size", 0)
    return LiveTorrent(
        hash=normalize_hash(str(info.get("hash", ""))),
        name=str(info.get("name", "")),
        category=optional_str(info.get("category")),
        tags=tag_tuple(info.get("tags"), context="torrent tags"),
        save_path=optional_str(info.get("save_path")),
        content_layout=None,
        size_bytes=int(size or 0),
        infohash_v1=optional_str(info.get("infohash_v1")),
        infohash_v2=optional_str(info.get("infohash_v2")),
    )
