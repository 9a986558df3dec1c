"""
Grafana Export MCP Server.

Tools:
  1.  health_check       — verify connectivity and token validity
  2.  list_folders       — full folder tree (flattened) with dashboard counts
  3.  list_dashboards    — dashboards with resolved folder titles
  4.  list_libraries     — library panels (upstream listing shape)
  5.  list_alerts        — alert rules with resolved folder titles
  6.  export_dashboards  — write dashboards, their library panels and
                           optionally alert rules to the export directory

Run:
    python -m grafana_export.server
    # or via the installed script:
    grafana-export-mcp
"""
from __future__ import annotations

import asyncio
import json
import sys

import structlog
from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server
from pydantic import ValidationError

from grafana_export.catalog import list_alerts, list_dashboards, list_libraries
from grafana_export.client import GrafanaAPIError, GrafanaClient
from grafana_export.config import Settings, get_settings
from grafana_export.exporter import ExportDirectoryError, Exporter
from grafana_export.folders import FolderCache, FolderResolver
from grafana_export.log_setup import configure_logging
from grafana_export.models import ExportRequest

log = structlog.get_logger(__name__)


def _ok(data: object) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


def _err(message: str) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps({"error": message}))]


_NO_ARGS = {"type": "object", "properties": {}, "required": []}

TOOLS = [
    types.Tool(
        name="health_check",
        description="Validate Grafana connectivity and API token validity. Returns Grafana version and database status.",
        inputSchema=_NO_ARGS,
    ),
    types.Tool(
        name="list_folders",
        description="List every dashboard folder, including nested folders, with parent UID and dashboard count.",
        inputSchema=_NO_ARGS,
    ),
    types.Tool(
        name="list_dashboards",
        description="List all dashboards with their folder titles.",
        inputSchema=_NO_ARGS,
    ),
    types.Tool(
        name="list_libraries",
        description="List library panels (reusable panel definitions).",
        inputSchema=_NO_ARGS,
    ),
    types.Tool(
        name="list_alerts",
        description="List alert rules with their folder titles. Empty when alerting is unavailable.",
        inputSchema=_NO_ARGS,
    ),
    types.Tool(
        name="export_dashboards",
        description=(
            "Export dashboards (by UID) and every library panel they use to a new timestamped "
            "directory, organized by folder. Set include_alerts to also export the given alert rules."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "dashboard_uids": {"type": "array", "items": {"type": "string"}, "description": "Dashboard UIDs to export."},
                "alert_uids": {"type": "array", "items": {"type": "string"}, "description": "Alert rule UIDs to export."},
                "include_alerts": {"type": "boolean", "description": "Export the alert rules in alert_uids.", "default": False},
            },
            "required": [],
        },
    ),
]


class GrafanaExportTools:
    """Tool handlers bound to one set of settings and one folder-title cache."""

    def __init__(self, settings: Settings, folder_cache: FolderCache) -> None:
        self.settings = settings
        self.folder_cache = folder_cache

    async def list_tools(self) -> list[types.Tool]:
        return TOOLS

    async def call_tool(self, name: str, arguments: dict) -> list[types.TextContent]:
        log.info("tool.called", tool=name)
        try:
            async with GrafanaClient(self.settings) as client:
                return await self._dispatch(name, arguments or {}, client)
        except GrafanaAPIError as e:
            log.error("grafana.api_error", tool=name, status=e.status_code, error=str(e))
            return _err(str(e))
        except ValidationError as e:
            log.warning("tool.validation_error", tool=name, errors=e.errors(include_url=False))
            return _err(f"Input validation error: {e}")
        except ExportDirectoryError as e:
            log.error("export.directory_failed", error=str(e))
            return _err(str(e))

    async def _dispatch(self, name: str, arguments: dict, client: GrafanaClient) -> list[types.TextContent]:
        resolver = FolderResolver(client, self.folder_cache)

        if name == "health_check":
            return _ok(await client.health())

        if name == "list_folders":
            folders = await resolver.resolve_tree()
            return _ok([folder.model_dump() for folder in folders])

        if name == "list_dashboards":
            dashboards = await list_dashboards(client, resolver)
            return _ok({"dashboards": [dash.model_dump() for dash in dashboards]})

        if name == "list_libraries":
            return _ok(await list_libraries(client))

        if name == "list_alerts":
            alerts = await list_alerts(client, resolver)
            return _ok({"alerts": [alert.model_dump() for alert in alerts]})

        if name == "export_dashboards":
            selection = ExportRequest(
                dashboardUIDs=arguments.get("dashboard_uids") or [],
                alertUIDs=arguments.get("alert_uids") or [],
                includeAlerts=arguments.get("include_alerts", False),
            )
            if selection.is_empty():
                return _err("No dashboards or alerts selected")
            result = await Exporter(client, resolver, self.settings.export_directory).run(selection)
            return _ok(result.model_dump())

        return _err(f"Unknown tool: {name!r}")


def create_server(tools: GrafanaExportTools) -> Server:
    """Return an MCP server whose handlers are bound to *tools*."""
    server = Server("grafana-export")
    server.list_tools()(tools.list_tools)
    server.call_tool()(tools.call_tool)
    return server


async def _serve() -> None:
    cfg = get_settings()
    server = create_server(GrafanaExportTools(cfg, FolderCache()))
    log.info("server.starting", name="grafana-export", url=cfg.grafana_url)
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def main() -> None:
    configure_logging(sys.stderr)
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
