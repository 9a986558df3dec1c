"""FastAPI application factory for the Grafana export web service.

Routes
------
GET  /api/folders         Full folder tree (flattened) with dashboard counts
GET  /api/dashboards      Dashboards with resolved folder titles
GET  /api/libraries       Library-element listing (upstream shape)
GET  /api/alerts          Alert rules with resolved folder titles
POST /api/export          Export dashboards / library panels / alerts to disk
GET  /api/config-status   Whether a .env file was found and config is usable

Read routes always answer 200 with best-effort data. ``/api/export`` answers
400 for a malformed or empty selection and 500 only when the export
directory cannot be created; per-item failures are reported in ``errors``.

Run:
    grafana-export
"""
from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from grafana_export.catalog import list_alerts, list_dashboards, list_libraries
from grafana_export.client import GrafanaAPIError, GrafanaClient
from grafana_export.config import Settings, config_status, get_settings
from grafana_export.exporter import ExportDirectoryError, Exporter
from grafana_export.folders import FolderCache, FolderResolver
from grafana_export.log_setup import configure_logging
from grafana_export.models import ExportRequest

log = structlog.get_logger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def get_client(request: Request) -> AsyncIterator[GrafanaClient]:
    """One Grafana client per request."""
    async with GrafanaClient(request.app.state.settings) as client:
        yield client


def get_resolver(request: Request, client: GrafanaClient = Depends(get_client)) -> FolderResolver:
    return FolderResolver(client, request.app.state.folder_cache)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/folders")
async def get_folders(resolver: FolderResolver = Depends(get_resolver)) -> list[dict[str, Any]]:
    folders = await resolver.resolve_tree()
    return [folder.model_dump() for folder in folders]


@router.get("/dashboards")
async def get_dashboards(
    client: GrafanaClient = Depends(get_client),
    resolver: FolderResolver = Depends(get_resolver),
) -> dict[str, Any]:
    dashboards = await list_dashboards(client, resolver)
    return {"dashboards": [dash.model_dump() for dash in dashboards]}


@router.get("/libraries")
async def get_libraries(client: GrafanaClient = Depends(get_client)) -> Any:
    return await list_libraries(client)


@router.get("/alerts")
async def get_alerts(
    client: GrafanaClient = Depends(get_client),
    resolver: FolderResolver = Depends(get_resolver),
) -> dict[str, Any]:
    alerts = await list_alerts(client, resolver)
    return {"alerts": [alert.model_dump() for alert in alerts]}


@router.post("/export")
async def export_dashboards(
    request: Request,
    client: GrafanaClient = Depends(get_client),
    resolver: FolderResolver = Depends(get_resolver),
) -> Any:
    try:
        selection = ExportRequest.model_validate_json(await request.body())
    except ValidationError as exc:
        log.warning("export.invalid_request", errors=exc.errors(include_url=False))
        return JSONResponse(status_code=400, content={"error": "Invalid request format"})

    if selection.is_empty():
        return JSONResponse(status_code=400, content={"error": "No dashboards or alerts selected"})

    settings: Settings = request.app.state.settings
    exporter = Exporter(client, resolver, settings.export_directory)
    try:
        result = await exporter.run(selection)
    except ExportDirectoryError as exc:
        log.error("export.directory_failed", error=str(exc))
        return JSONResponse(status_code=500, content={"error": str(exc)})
    return result.model_dump()


@router.get("/config-status")
async def get_config_status(request: Request) -> dict[str, Any]:
    return config_status(request.app.state.settings)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

async def check_grafana_connection(settings: Settings) -> bool:
    """Log whether Grafana is reachable; never raises."""
    if settings.skip_tls_verify:
        log.warning("grafana.tls_verification_disabled")
    try:
        async with GrafanaClient(settings) as client:
            health = await client.health()
    except GrafanaAPIError as exc:
        log.warning("grafana.unreachable", url=settings.grafana_url, error=str(exc))
        return False
    log.info("grafana.connected", url=settings.grafana_url, version=health.get("version"))
    return True


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    settings.export_directory.mkdir(parents=True, exist_ok=True)
    log.info(
        "server.initialized",
        grafana_url=settings.grafana_url,
        export_directory=str(settings.export_directory),
        port=settings.server_port,
        grafana_version=settings.grafana_version,
    )
    if app.state.check_connection:
        await check_grafana_connection(settings)
    yield


def create_app(
    settings: Optional[Settings] = None,
    folder_cache: Optional[FolderCache] = None,
    check_connection: bool = True,
) -> FastAPI:
    """Return a configured FastAPI application.

    The folder cache lives on ``app.state`` and is shared by all requests.
    """
    app = FastAPI(
        title="Grafana Export",
        description="Browse Grafana folders, dashboards, library panels and alerts, and export them to disk.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings if settings is not None else get_settings()
    app.state.folder_cache = folder_cache if folder_cache is not None else FolderCache()
    app.state.check_connection = check_connection

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router, prefix="/api", tags=["export"])
    return app


def main() -> None:
    configure_logging(sys.stdout)
    settings = get_settings()
    app = create_app(settings)
    log.info("server.starting", url=f"http://localhost:{settings.server_port}")
    uvicorn.run(app, host="0.0.0.0", port=settings.server_port, log_level="info")


if __name__ == "__main__":
    main()
