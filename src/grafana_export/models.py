"""
Pydantic models for the Grafana API shapes the exporter consumes, plus the
export request / result exchanged with callers.

Field names follow Grafana's camelCase JSON so models serialize back to the
same shape the frontend expects. Unknown upstream fields are ignored.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DASHBOARD_TYPE = "dash-db"
GENERAL_FOLDER = "General"


class _GrafanaModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------


class Folder(_GrafanaModel):
    id: int = 0
    uid: str
    title: str = ""
    url: Optional[str] = None
    parentUid: str = ""
    dashboardCount: int = 0


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------


class DashboardSummary(_GrafanaModel):
    id: int = 0
    uid: str = ""
    title: str = ""
    folderId: int = 0
    folderUid: str = ""
    folderTitle: Optional[str] = None
    url: Optional[str] = None
    type: str = ""
    tags: list[str] = []

    def is_dashboard(self) -> bool:
        """Search hits also include folders and saved searches."""
        return self.type in ("", DASHBOARD_TYPE)


class DashboardMeta(_GrafanaModel):
    folderId: int = 0
    folderUid: str = ""
    folderTitle: str = ""


class DashboardDetail(_GrafanaModel):
    dashboard: dict[str, Any]
    meta: DashboardMeta = Field(default_factory=DashboardMeta)


# ---------------------------------------------------------------------------
# Panel view — only the fields needed to discover library panel references
# ---------------------------------------------------------------------------


class LibraryPanelRef(_GrafanaModel):
    uid: str


class NestedPanel(_GrafanaModel):
    libraryPanel: Optional[LibraryPanelRef] = None

    @field_validator("libraryPanel", mode="before")
    @classmethod
    def drop_malformed_reference(cls, v: Any) -> Any:
        if isinstance(v, dict) and isinstance(v.get("uid"), str) and v["uid"]:
            return v
        return None


class Panel(NestedPanel):
    panels: Optional[list[Any]] = None

    @field_validator("panels", mode="before")
    @classmethod
    def drop_malformed_children(cls, v: Any) -> Any:
        return v if isinstance(v, list) else None


# ---------------------------------------------------------------------------
# Library elements
# ---------------------------------------------------------------------------


class LibraryElement(_GrafanaModel):
    id: int = 0
    uid: str
    name: str = ""
    kind: int = 0
    folderId: int = 0
    folderUid: str = ""
    model: dict[str, Any] = {}

    def export_document(self) -> dict[str, Any]:
        """Normalized on-disk representation of a library element."""
        return {
            "folderUid": self.folderUid,
            "name": self.name,
            "model": self.model,
            "kind": self.kind,
            "uid": self.uid,
        }


class LibraryElementEnvelope(_GrafanaModel):
    result: LibraryElement


# ---------------------------------------------------------------------------
# Alert rules
# ---------------------------------------------------------------------------


class AlertRule(_GrafanaModel):
    uid: str
    title: str = ""
    folderId: int = 0
    # provisioning API spells it folderUID
    folderUid: str = Field("", validation_alias=AliasChoices("folderUid", "folderUID"))
    folderTitle: Optional[str] = None


# ---------------------------------------------------------------------------
# Export request / result
# ---------------------------------------------------------------------------


class ExportRequest(_GrafanaModel):
    dashboardUIDs: list[str] = []
    alertUIDs: list[str] = []
    includeAlerts: bool = False

    def is_empty(self) -> bool:
        return not self.dashboardUIDs and not self.alertUIDs


class ExportResult(_GrafanaModel):
    exportedDashboards: int = 0
    exportedLibraries: int = 0
    exportedAlerts: int = 0
    errors: list[str] = []
    exportPath: str = ""
