"""
Folder tree resolution and the shared folder-title cache.

Grafana only lists the *direct* children of a folder per call, so the full
tree is rebuilt wave by wave: top-level folders first, then the children of
every folder found in the previous wave, until a wave discovers nothing new.
"""
from __future__ import annotations

import threading
from collections import Counter
from typing import Optional

import structlog

from grafana_export.client import EndpointCategory, GrafanaAPIError, GrafanaClient
from grafana_export.models import GENERAL_FOLDER, DashboardSummary, Folder

log = structlog.get_logger(__name__)

FOLDER_PAGE_LIMIT = 1000
SEARCH_LIMIT = 5000


class FolderCache:
    """Thread-safe UID → title memo shared by every request in the process.

    Best effort only: a miss means "ask Grafana", never "folder does not exist".
    """

    def __init__(self) -> None:
        self._titles: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, uid: str) -> Optional[str]:
        with self._lock:
            return self._titles.get(uid)

    def put(self, uid: str, title: str) -> None:
        if not uid:
            return
        with self._lock:
            self._titles[uid] = title

    def __contains__(self, uid: object) -> bool:
        with self._lock:
            return uid in self._titles

    def __len__(self) -> int:
        with self._lock:
            return len(self._titles)


class FolderResolver:
    """Rebuilds the folder tree and resolves folder titles by UID."""

    def __init__(self, client: GrafanaClient, cache: FolderCache) -> None:
        self._client = client
        self._cache = cache

    @property
    def cache(self) -> FolderCache:
        return self._cache

    # ------------------------------------------------------------------
    # Tree resolution
    # ------------------------------------------------------------------

    async def _fetch_children(self, parent: Folder) -> list[Folder]:
        try:
            return await self._client.fetch(
                "folders",
                list[Folder],
                category=EndpointCategory.CHILDREN,
                params={"limit": FOLDER_PAGE_LIMIT, "withParents": "true", "parentUid": parent.uid},
            )
        except GrafanaAPIError as exc:
            log.warning(
                "folders.children_failed",
                parent_uid=parent.uid,
                parent_title=parent.title,
                error=str(exc),
            )
            return []

    async def resolve_tree(self) -> list[Folder]:
        """Return every folder, top-level and nested, as a flat list.

        Each folder carries its resolved ``parentUid`` and ``dashboardCount``.
        Branches whose children cannot be listed are kept as leaves.
        """
        try:
            top_level = await self._client.fetch(
                "folders", list[Folder], params={"limit": FOLDER_PAGE_LIMIT}
            )
        except GrafanaAPIError as exc:
            log.warning("folders.top_level_failed", error=str(exc))
            return []

        visited: set[str] = set()
        folders: list[Folder] = []
        for folder in top_level:
            if folder.uid in visited:
                continue
            visited.add(folder.uid)
            folders.append(folder)
            self._cache.put(folder.uid, folder.title)
        top_level_count = len(folders)

        wave = list(folders)
        depth = 0
        while wave:
            depth += 1
            next_wave: list[Folder] = []
            for parent in wave:
                for child in await self._fetch_children(parent):
                    if child.uid in visited:
                        continue
                    # the parent we asked about wins over whatever the API reports
                    child = child.model_copy(update={"parentUid": parent.uid})
                    visited.add(child.uid)
                    folders.append(child)
                    self._cache.put(child.uid, child.title)
                    next_wave.append(child)
            log.info("folders.wave", depth=depth, processed=len(wave), discovered=len(next_wave))
            wave = next_wave

        log.info(
            "folders.resolved",
            total=len(folders),
            top_level=top_level_count,
            nested=len(folders) - top_level_count,
        )
        return await self._attach_dashboard_counts(folders)

    async def _attach_dashboard_counts(self, folders: list[Folder]) -> list[Folder]:
        try:
            hits = await self._client.fetch(
                "search",
                list[DashboardSummary],
                params={"type": "dash-db", "limit": SEARCH_LIMIT},
            )
        except GrafanaAPIError as exc:
            log.warning("folders.dashboard_counts_failed", error=str(exc))
            return folders

        counts = Counter(hit.folderId for hit in hits if hit.is_dashboard())
        return [
            folder.model_copy(update={"dashboardCount": counts.get(folder.id, 0)})
            for folder in folders
        ]

    # ------------------------------------------------------------------
    # Title lookups
    # ------------------------------------------------------------------

    async def folder_title(self, uid: str) -> Optional[str]:
        """Cache first, then a direct ``folders/<uid>`` fetch; ``None`` if both miss."""
        if not uid:
            return None
        cached = self._cache.get(uid)
        if cached is not None:
            return cached
        try:
            folder = await self._client.fetch(f"folders/{uid}", Folder)
        except GrafanaAPIError as exc:
            log.info("folders.lookup_failed", uid=uid, error=str(exc))
            return None
        self._cache.put(uid, folder.title)
        return folder.title

    async def resolve_folder_title(self, folder_id: int, folder_uid: str, placeholder: str) -> str:
        if not folder_uid:
            return GENERAL_FOLDER if folder_id == 0 else placeholder
        title = await self.folder_title(folder_uid)
        return title if title else placeholder
