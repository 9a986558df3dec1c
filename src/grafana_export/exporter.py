"""
Export orchestrator: writes a timestamped, folder-structured JSON snapshot of
the selected dashboards, the library panels they use, and (optionally) alert
rules.

Layout of one export::

    <export root>/<YYYYMMDD_HHMMSS>/
        <Folder Title>/<Dashboard Title>.json
        <Folder Title>/<Library Panel Name>.json
        Alerts/<Alert Title>.json

A name already used in the same folder by this export gets the item UID
appended (``<Title>_<uid>.json``).

Individual failures never abort the batch; they are collected in
``ExportResult.errors``. Only failing to create the export directory is fatal.
"""
from __future__ import annotations

import itertools
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import structlog
from pydantic import ValidationError

from grafana_export.catalog import fetch_alert_document
from grafana_export.client import GrafanaAPIError, GrafanaClient
from grafana_export.folders import FolderResolver
from grafana_export.models import (
    GENERAL_FOLDER,
    DashboardDetail,
    ExportRequest,
    ExportResult,
    LibraryElementEnvelope,
    NestedPanel,
    Panel,
)

log = structlog.get_logger(__name__)

ALERTS_DIRECTORY = "Alerts"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
FORBIDDEN_PATH_CHARS = '/\\:*?"<>|'

_PanelT = TypeVar("_PanelT", bound=NestedPanel)

_SANITIZE_TABLE = str.maketrans({char: "_" for char in FORBIDDEN_PATH_CHARS})


class ExportDirectoryError(Exception):
    """Raised when the per-export output directory cannot be created."""


class PanelStructureError(ValueError):
    """Raised when a dashboard's ``panels`` value is not a list."""


def sanitize_path(name: str) -> str:
    """Replace characters that are invalid in file names with ``_``."""
    return name.translate(_SANITIZE_TABLE)


def _panel_view(raw: Any, model: type[_PanelT]) -> Optional[_PanelT]:
    try:
        return model.model_validate(raw)
    except ValidationError:
        return None


def extract_library_panel_uids(dashboard: dict[str, Any]) -> list[str]:
    """Return the UIDs of library panels used by *dashboard*.

    Looks at top-level panels and one level of nested panels (rows).
    Entries that are not panel objects are ignored.
    """
    raw_panels = dashboard.get("panels")
    if raw_panels is None:
        return []
    if not isinstance(raw_panels, list):
        raise PanelStructureError("panels is not an array")

    uids: list[str] = []
    for raw in raw_panels:
        panel = _panel_view(raw, Panel)
        if panel is None:
            continue
        if panel.libraryPanel:
            uids.append(panel.libraryPanel.uid)
        for nested_raw in panel.panels or []:
            nested = _panel_view(nested_raw, NestedPanel)
            if nested is not None and nested.libraryPanel:
                uids.append(nested.libraryPanel.uid)
    return list(dict.fromkeys(uids))


def _write_json(path: Path, document: Any) -> None:
    path.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")


def _file_stem(title: Any, fallback: str) -> str:
    if isinstance(title, str) and title:
        return sanitize_path(title)
    return sanitize_path(fallback)


def _claim_file(folder_path: Path, title: Any, uid: str, written: set[str]) -> Path:
    """Pick a file name in *folder_path* not yet used by this batch.

    Clashes (same title twice, or a library panel named like a dashboard)
    fall back to ``<title>_<uid>.json``, then ``<title>_<uid>_<n>.json``.
    *written* holds case-folded paths.
    """
    stem = _file_stem(title, uid)
    suffixed = f"{stem}_{sanitize_path(uid)}"
    candidates = itertools.chain((stem, suffixed), (f"{suffixed}_{n}" for n in itertools.count(1)))
    while True:
        path = folder_path / f"{next(candidates)}.json"
        key = str(path).casefold()
        if key not in written:
            written.add(key)
            return path


class Exporter:
    """Runs one export batch against a Grafana instance."""

    def __init__(
        self,
        client: GrafanaClient,
        resolver: FolderResolver,
        export_root: str | Path,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._client = client
        self._resolver = resolver
        self._export_root = Path(export_root)
        self._clock = clock

    # ------------------------------------------------------------------
    # Output directory
    # ------------------------------------------------------------------

    def _create_export_dir(self) -> Path:
        root = self._export_root.resolve()
        stamp = self._clock().strftime(TIMESTAMP_FORMAT)
        candidate = root / stamp
        suffix = 0
        while True:
            try:
                candidate.mkdir(parents=True, exist_ok=False)
                return candidate
            except FileExistsError:
                suffix += 1
                candidate = root / f"{stamp}_{suffix}"
            except OSError as exc:
                raise ExportDirectoryError(f"Failed to create export directory {candidate}: {exc}") from exc

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def run(self, request: ExportRequest) -> ExportResult:
        export_dir = self._create_export_dir()
        result = ExportResult(exportPath=str(export_dir))
        log.info(
            "export.started",
            path=str(export_dir),
            dashboards=len(request.dashboardUIDs),
            alerts=len(request.alertUIDs) if request.includeAlerts else 0,
        )

        # case-folded paths already claimed in this export
        written: set[str] = set()
        # library UID -> folder of the last dashboard that referenced it
        library_targets: dict[str, Path] = {}
        for uid in request.dashboardUIDs:
            await self._export_dashboard(uid, export_dir, result, library_targets, written)

        for library_uid, folder_path in library_targets.items():
            await self._export_library(library_uid, folder_path, result, written)

        if request.includeAlerts:
            for uid in request.alertUIDs:
                await self._export_alert(uid, export_dir / ALERTS_DIRECTORY, result, written)

        log.info(
            "export.finished",
            path=str(export_dir),
            dashboards=result.exportedDashboards,
            libraries=result.exportedLibraries,
            alerts=result.exportedAlerts,
            errors=len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------

    async def _dashboard_folder_name(self, detail: DashboardDetail) -> str:
        meta = detail.meta
        if meta.folderId == 0:
            return GENERAL_FOLDER
        if meta.folderTitle:
            self._resolver.cache.put(meta.folderUid, meta.folderTitle)
            return meta.folderTitle
        return await self._resolver.resolve_folder_title(
            meta.folderId, meta.folderUid, f"Folder ID {meta.folderId}"
        )

    async def _export_dashboard(
        self,
        uid: str,
        export_dir: Path,
        result: ExportResult,
        library_targets: dict[str, Path],
        written: set[str],
    ) -> None:
        try:
            detail = await self._client.fetch(f"dashboards/uid/{uid}", DashboardDetail)
        except GrafanaAPIError as exc:
            result.errors.append(f"Failed to fetch dashboard {uid}: {exc}")
            return

        folder_path = export_dir / sanitize_path(await self._dashboard_folder_name(detail))
        try:
            folder_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            result.errors.append(f"Failed to create folder structure for {uid}: {exc}")
            return

        filename = _claim_file(folder_path, detail.dashboard.get("title"), uid, written)
        try:
            _write_json(filename, detail.dashboard)
        except (TypeError, ValueError) as exc:
            result.errors.append(f"Failed to marshal dashboard {uid}: {exc}")
            return
        except OSError as exc:
            result.errors.append(f"Failed to write dashboard {uid}: {exc}")
            return

        result.exportedDashboards += 1
        log.info("export.dashboard_written", uid=uid, file=str(filename))

        try:
            library_uids = extract_library_panel_uids(detail.dashboard)
        except PanelStructureError as exc:
            result.errors.append(f"Failed to extract library panels from {uid}: {exc}")
            return
        for library_uid in library_uids:
            library_targets[library_uid] = folder_path

    # ------------------------------------------------------------------
    # Library elements
    # ------------------------------------------------------------------

    async def _export_library(self, uid: str, folder_path: Path, result: ExportResult, written: set[str]) -> None:
        try:
            envelope = await self._client.fetch(f"library-elements/{uid}", LibraryElementEnvelope)
        except GrafanaAPIError as exc:
            result.errors.append(f"Failed to fetch library element {uid}: {exc}")
            return
        element = envelope.result

        home_folder = await self._resolver.resolve_folder_title(
            element.folderId, element.folderUid, f"Unknown_{element.folderUid}"
        )

        try:
            folder_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            result.errors.append(f"Failed to create folder structure for library {uid}: {exc}")
            return

        filename = _claim_file(folder_path, element.name, uid, written)
        try:
            _write_json(filename, element.export_document())
        except (TypeError, ValueError) as exc:
            result.errors.append(f"Failed to marshal library element {uid}: {exc}")
            return
        except OSError as exc:
            result.errors.append(f"Failed to write library element {uid}: {exc}")
            return

        result.exportedLibraries += 1
        log.info("export.library_written", uid=uid, home_folder=home_folder, file=str(filename))

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def _export_alert(self, uid: str, alerts_dir: Path, result: ExportResult, written: set[str]) -> None:
        try:
            document = await fetch_alert_document(self._client, uid)
        except GrafanaAPIError as exc:
            result.errors.append(f"Failed to fetch alert {uid}: {exc}")
            return

        try:
            alerts_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            result.errors.append(f"Failed to create alerts directory for {uid}: {exc}")
            return

        title = document.get("title") or document.get("name")
        filename = _claim_file(alerts_dir, title, uid, written)
        try:
            _write_json(filename, document)
        except (TypeError, ValueError) as exc:
            result.errors.append(f"Failed to marshal alert {uid}: {exc}")
            return
        except OSError as exc:
            result.errors.append(f"Failed to write alert {uid}: {exc}")
            return

        result.exportedAlerts += 1
        log.info("export.alert_written", uid=uid, file=str(filename))
