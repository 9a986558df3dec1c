"""Tests for the export orchestrator, path sanitization and panel discovery."""
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
import pytest
import respx

from grafana_export.client import GrafanaClient
from grafana_export.config import Settings
from grafana_export.exporter import (
    ExportDirectoryError,
    Exporter,
    PanelStructureError,
    extract_library_panel_uids,
    sanitize_path,
)
from grafana_export.folders import FolderCache, FolderResolver
from grafana_export.models import ExportRequest

BASE = "https://grafana.test"

SETTINGS = Settings(grafana_url=BASE, api_token="test-token", timeout=5.0)

FIXED_NOW = datetime(2026, 10, 18, 9, 30, 0)


def _exporter(client: GrafanaClient, root: Path) -> Exporter:
    return Exporter(client, FolderResolver(client, FolderCache()), root, clock=lambda: FIXED_NOW)


def _dashboard(title: Any, folder_id: int = 0, folder_uid: str = "", folder_title: str = "", panels: Any = None) -> dict:
    doc: dict[str, Any] = {"uid": "ignored", "title": title, "schemaVersion": 39}
    if panels is not None:
        doc["panels"] = panels
    return {
        "dashboard": doc,
        "meta": {"folderId": folder_id, "folderUid": folder_uid, "folderTitle": folder_title},
    }


def _library(uid: str, name: str, folder_id: int = 0, folder_uid: str = "") -> dict:
    return {
        "result": {
            "id": 11,
            "uid": uid,
            "name": name,
            "kind": 1,
            "folderId": folder_id,
            "folderUid": folder_uid,
            "model": {"type": "timeseries", "title": name},
            "version": 3,
        }
    }


def _mock_dashboard(uid: str, body: dict) -> respx.Route:
    return respx.get(f"{BASE}/api/dashboards/uid/{uid}").mock(return_value=httpx.Response(200, json=body))


def _mock_library(uid: str, body: dict) -> respx.Route:
    return respx.get(f"{BASE}/api/library-elements/{uid}").mock(return_value=httpx.Response(200, json=body))


def _read(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# sanitize_path
# ---------------------------------------------------------------------------

class TestSanitizePath:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("normal/path", "normal_path"),
            ("file:name", "file_name"),
            ("file*name?", "file_name_"),
            ("file\\name", "file_name"),
            ("file<>name", "file__name"),
            ("file|name", "file_name"),
            ('say "hi"', "say _hi_"),
            ("normal name", "normal name"),
            ("  spaced  ", "  spaced  "),
            ("", ""),
        ],
    )
    def test_replaces_forbidden_characters(self, raw, expected):
        assert sanitize_path(raw) == expected

    def test_idempotent(self):
        raw = 'a/b\\c:d*e?f"g<h>i|j'
        once = sanitize_path(raw)
        assert sanitize_path(once) == once
        assert once == "a_b_c_d_e_f_g_h_i_j"


# ---------------------------------------------------------------------------
# extract_library_panel_uids
# ---------------------------------------------------------------------------

class TestExtractLibraryPanelUIDs:
    def test_top_level_and_nested(self):
        dashboard = {
            "panels": [
                {"libraryPanel": {"uid": "panel1"}},
                {"type": "row", "panels": [{"libraryPanel": {"uid": "panel2"}}]},
            ]
        }
        assert set(extract_library_panel_uids(dashboard)) == {"panel1", "panel2"}

    def test_order_independent(self):
        dashboard = {
            "panels": [
                {"type": "row", "panels": [{"libraryPanel": {"uid": "panel2"}}]},
                {"libraryPanel": {"uid": "panel1"}},
            ]
        }
        assert set(extract_library_panel_uids(dashboard)) == {"panel1", "panel2"}

    def test_no_panels_key(self):
        assert extract_library_panel_uids({}) == []

    def test_panels_not_a_list(self):
        with pytest.raises(PanelStructureError):
            extract_library_panel_uids({"panels": {"0": {}}})

    def test_skips_malformed_entries(self):
        dashboard = {
            "panels": [
                "not a panel",
                {"libraryPanel": "oops", "panels": [{"libraryPanel": {"uid": "nested"}}]},
                {"libraryPanel": {"name": "missing uid"}},
                {"libraryPanel": {"uid": 42}},
                {"type": "row", "panels": "not a list"},
                {"type": "row", "panels": [None, 3, {"libraryPanel": {"uid": "ok"}}]},
            ]
        }
        assert extract_library_panel_uids(dashboard) == ["nested", "ok"]

    def test_only_one_level_of_nesting(self):
        dashboard = {
            "panels": [
                {"panels": [{"panels": [{"libraryPanel": {"uid": "too-deep"}}]}]},
            ]
        }
        assert extract_library_panel_uids(dashboard) == []

    def test_duplicates_collapsed(self):
        dashboard = {"panels": [{"libraryPanel": {"uid": "x"}}, {"libraryPanel": {"uid": "x"}}]}
        assert extract_library_panel_uids(dashboard) == ["x"]


# ---------------------------------------------------------------------------
# Exporter
# ---------------------------------------------------------------------------

class TestExporter:
    @respx.mock
    @pytest.mark.asyncio
    async def test_dashboard_with_library_panel_in_team_folder(self, tmp_path):
        _mock_dashboard("d1", _dashboard(
            "Service Overview", folder_id=5, folder_uid="team-a", folder_title="Team A",
            panels=[{"id": 1, "libraryPanel": {"uid": "lp1", "name": "CPU Panel"}}],
        ))
        _mock_library("lp1", _library("lp1", "CPU Panel", folder_id=5, folder_uid="team-a"))

        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["d1"]))

        export_dir = Path(result.exportPath)
        assert export_dir == tmp_path.resolve() / "20261018_093000"
        assert export_dir.is_absolute()
        assert (result.exportedDashboards, result.exportedLibraries, result.exportedAlerts) == (1, 1, 0)
        assert result.errors == []

        dashboard_file = export_dir / "Team A" / "Service Overview.json"
        library_file = export_dir / "Team A" / "CPU Panel.json"
        assert _read(dashboard_file)["title"] == "Service Overview"
        assert _read(library_file) == {
            "folderUid": "team-a",
            "name": "CPU Panel",
            "model": {"type": "timeseries", "title": "CPU Panel"},
            "kind": 1,
            "uid": "lp1",
        }

    @respx.mock
    @pytest.mark.asyncio
    async def test_shared_library_fetched_and_written_once(self, tmp_path):
        panels = [
            {"libraryPanel": {"uid": "shared"}},
            {"type": "row", "panels": [{"libraryPanel": {"uid": "shared"}}]},
        ]
        _mock_dashboard("d1", _dashboard("First", 5, "team-a", "Team A", panels=panels))
        _mock_dashboard("d2", _dashboard("Second", 6, "team-b", "Team B", panels=panels))
        library_route = _mock_library("shared", _library("shared", "Shared Panel", 5, "team-a"))

        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["d1", "d2"]))

        export_dir = Path(result.exportPath)
        assert library_route.call_count == 1
        assert result.exportedDashboards == 2
        assert result.exportedLibraries == 1
        assert result.errors == []
        written = sorted(p.relative_to(export_dir).as_posix() for p in export_dir.rglob("Shared Panel.json"))
        # placed with the last dashboard that referenced it
        assert written == ["Team B/Shared Panel.json"]

    @respx.mock
    @pytest.mark.asyncio
    async def test_failed_dashboard_does_not_block_batch(self, tmp_path):
        _mock_dashboard("ok1", _dashboard("One"))
        respx.get(f"{BASE}/api/dashboards/uid/broken").mock(return_value=httpx.Response(500, text="db locked"))
        _mock_dashboard("ok2", _dashboard("Two"))

        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(
                ExportRequest(dashboardUIDs=["ok1", "broken", "ok2"])
            )

        assert result.exportedDashboards == 2
        assert len(result.errors) == 1
        assert "broken" in result.errors[0]
        assert (Path(result.exportPath) / "General" / "One.json").exists()
        assert (Path(result.exportPath) / "General" / "Two.json").exists()

    @respx.mock
    @pytest.mark.asyncio
    async def test_title_round_trips(self, tmp_path):
        title = 'Ops "Prod" / Überblick: CPU?'
        _mock_dashboard("d1", _dashboard(title))

        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["d1"]))

        path = Path(result.exportPath) / "General" / f"{sanitize_path(title)}.json"
        document = _read(path)
        assert document["title"] == title
        assert document == {"uid": "ignored", "title": title, "schemaVersion": 39}

    @respx.mock
    @pytest.mark.asyncio
    async def test_missing_title_uses_uid(self, tmp_path):
        _mock_dashboard("no-title", _dashboard(None))
        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["no-title"]))
        assert (Path(result.exportPath) / "General" / "no-title.json").exists()

    @respx.mock
    @pytest.mark.asyncio
    async def test_sanitizes_folder_title(self, tmp_path):
        _mock_dashboard("d1", _dashboard("Dash", 3, "nested", "Prod/EU"))
        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["d1"]))
        assert (Path(result.exportPath) / "Prod_EU" / "Dash.json").exists()

    @respx.mock
    @pytest.mark.asyncio
    async def test_malformed_panels_still_exports_dashboard(self, tmp_path):
        _mock_dashboard("d1", _dashboard("Odd", panels={"not": "a list"}))
        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["d1"]))
        assert result.exportedDashboards == 1
        assert result.exportedLibraries == 0
        assert len(result.errors) == 1
        assert "Failed to extract library panels from d1" in result.errors[0]

    @respx.mock
    @pytest.mark.asyncio
    async def test_failed_library_is_reported(self, tmp_path):
        _mock_dashboard("d1", _dashboard("Dash", panels=[{"libraryPanel": {"uid": "gone"}}]))
        respx.get(f"{BASE}/api/library-elements/gone").mock(return_value=httpx.Response(404))
        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["d1"]))
        assert result.exportedDashboards == 1
        assert result.exportedLibraries == 0
        assert result.errors == [
            "Failed to fetch library element gone: Grafana API error 404: Not found: library-elements/gone"
        ]

    @respx.mock
    @pytest.mark.asyncio
    async def test_library_home_folder_lookup_failure_is_not_fatal(self, tmp_path):
        _mock_dashboard("d1", _dashboard("Dash", panels=[{"libraryPanel": {"uid": "lp"}}]))
        _mock_library("lp", _library("lp", "Panel", folder_id=9, folder_uid="hidden"))
        respx.get(f"{BASE}/api/folders/hidden").mock(return_value=httpx.Response(403))
        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["d1"]))
        assert result.exportedLibraries == 1
        assert (Path(result.exportPath) / "General" / "Panel.json").exists()

    @respx.mock
    @pytest.mark.asyncio
    async def test_alerts_current_then_legacy(self, tmp_path):
        respx.get(f"{BASE}/api/v1/provisioning/alert-rules/r1").mock(
            return_value=httpx.Response(200, json={"uid": "r1", "title": "High: CPU", "folderUID": "ops"})
        )
        respx.get(f"{BASE}/api/v1/provisioning/alert-rules/7").mock(return_value=httpx.Response(404))
        respx.get(f"{BASE}/api/alerts/7").mock(
            return_value=httpx.Response(200, json={"id": 7, "name": "Legacy disk"})
        )
        respx.get(f"{BASE}/api/v1/provisioning/alert-rules/none").mock(return_value=httpx.Response(404))
        respx.get(f"{BASE}/api/alerts/none").mock(return_value=httpx.Response(404))

        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(
                ExportRequest(alertUIDs=["r1", "7", "none"], includeAlerts=True)
            )

        alerts_dir = Path(result.exportPath) / "Alerts"
        assert result.exportedAlerts == 2
        assert _read(alerts_dir / "High_ CPU.json")["uid"] == "r1"
        assert _read(alerts_dir / "Legacy disk.json")["id"] == 7
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Failed to fetch alert none")

    @respx.mock(assert_all_called=False)
    @pytest.mark.asyncio
    async def test_alerts_skipped_unless_included(self, tmp_path):
        route = respx.get(f"{BASE}/api/v1/provisioning/alert-rules/r1").mock(
            return_value=httpx.Response(200, json={"uid": "r1", "title": "High CPU"})
        )
        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(alertUIDs=["r1"]))
        assert not route.called
        assert result.exportedAlerts == 0
        assert not (Path(result.exportPath) / "Alerts").exists()

    @pytest.mark.asyncio
    async def test_repeated_exports_get_distinct_directories(self, tmp_path):
        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            exporter = _exporter(client, tmp_path)
            first = await exporter.run(ExportRequest())
            second = await exporter.run(ExportRequest())
        assert Path(first.exportPath).name == "20261018_093000"
        assert Path(second.exportPath).name == "20261018_093000_1"

    @pytest.mark.asyncio
    async def test_unwritable_root_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            with pytest.raises(ExportDirectoryError):
                await _exporter(client, blocker).run(ExportRequest(dashboardUIDs=["d1"]))

    @respx.mock
    @pytest.mark.asyncio
    async def test_unusable_uid_does_not_block_batch(self, tmp_path):
        _mock_dashboard("ok1", _dashboard("One"))

        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["bad\nuid", "ok1"]))

        assert result.exportedDashboards == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Failed to fetch dashboard bad\nuid")
        assert (Path(result.exportPath) / "General" / "One.json").exists()

    @respx.mock
    @pytest.mark.asyncio
    async def test_library_named_like_dashboard_keeps_both_files(self, tmp_path):
        _mock_dashboard("d1", _dashboard(
            "CPU", 5, "team-a", "Team A", panels=[{"libraryPanel": {"uid": "lp1"}}],
        ))
        _mock_library("lp1", _library("lp1", "CPU", 5, "team-a"))

        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["d1"]))

        folder = Path(result.exportPath) / "Team A"
        assert (result.exportedDashboards, result.exportedLibraries) == (1, 1)
        assert result.errors == []
        assert sorted(p.name for p in folder.iterdir()) == ["CPU.json", "CPU_lp1.json"]
        assert _read(folder / "CPU.json")["title"] == "CPU"
        assert _read(folder / "CPU_lp1.json")["uid"] == "lp1"

    @respx.mock
    @pytest.mark.asyncio
    async def test_same_title_in_one_folder_keeps_both_files(self, tmp_path):
        _mock_dashboard("d1", _dashboard("Overview"))
        _mock_dashboard("d2", _dashboard("overview"))

        async with GrafanaClient(SETTINGS, retry_delay=0) as client:
            result = await _exporter(client, tmp_path).run(ExportRequest(dashboardUIDs=["d1", "d2"]))

        folder = Path(result.exportPath) / "General"
        assert result.exportedDashboards == 2
        assert sorted(p.name for p in folder.iterdir()) == ["Overview.json", "overview_d2.json"]
        assert _read(folder / "overview_d2.json")["title"] == "overview"
