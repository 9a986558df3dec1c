"""
Read-through listings of dashboards, library elements and alert rules.

Every listing degrades to an empty result instead of raising: the UI should
still render whatever Grafana was able to return.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from grafana_export.client import GrafanaAPIError, GrafanaClient
from grafana_export.folders import SEARCH_LIMIT, FolderResolver
from grafana_export.models import GENERAL_FOLDER, AlertRule, DashboardSummary

log = structlog.get_logger(__name__)

LIBRARY_PAGE_SIZE = 100

CURRENT_ALERTS_PATH = "v1/provisioning/alert-rules"
LEGACY_ALERTS_PATH = "alerts"


def _folder_placeholder(folder_id: int) -> str:
    return f"Folder ID {folder_id}"


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------


async def list_dashboards(client: GrafanaClient, resolver: FolderResolver) -> list[DashboardSummary]:
    """Search for dashboards and give each one a displayable folder title."""
    try:
        hits = await client.fetch(
            "search",
            list[DashboardSummary],
            params={"type": "dash-db", "limit": SEARCH_LIMIT},
        )
    except GrafanaAPIError as exc:
        log.warning("catalog.dashboards_failed", error=str(exc))
        return []

    dashboards = [hit for hit in hits if hit.is_dashboard() and hit.title and hit.uid]
    log.info("catalog.dashboards", retrieved=len(hits), kept=len(dashboards))

    resolved: list[DashboardSummary] = []
    for dash in dashboards:
        if dash.folderId == 0:
            title = GENERAL_FOLDER
        elif dash.folderTitle:
            title = dash.folderTitle
            resolver.cache.put(dash.folderUid, title)
        else:
            title = await resolver.resolve_folder_title(
                dash.folderId, dash.folderUid, _folder_placeholder(dash.folderId)
            )
        resolved.append(dash.model_copy(update={"folderTitle": title}))
    return resolved


# ---------------------------------------------------------------------------
# Library elements
# ---------------------------------------------------------------------------


def empty_library_listing() -> dict[str, Any]:
    return {"result": {"totalCount": 0, "elements": [], "page": 1, "perPage": LIBRARY_PAGE_SIZE}}


async def list_libraries(client: GrafanaClient) -> Any:
    """Return Grafana's library-element listing, following pages when paged.

    The upstream shape is passed through; later pages are appended to the
    first page's ``result.elements``.
    """
    try:
        listing = await client.fetch(
            "library-elements", params={"perPage": LIBRARY_PAGE_SIZE, "page": 1}
        )
    except GrafanaAPIError as exc:
        log.warning("catalog.libraries_failed", error=str(exc))
        return empty_library_listing()

    result = listing.get("result") if isinstance(listing, dict) else None
    if not isinstance(result, dict) or not isinstance(result.get("elements"), list):
        return listing

    elements: list[Any] = result["elements"]
    total = result.get("totalCount")
    if not isinstance(total, int):
        return listing

    page = 1
    while len(elements) < total:
        page += 1
        try:
            next_listing = await client.fetch(
                "library-elements", params={"perPage": LIBRARY_PAGE_SIZE, "page": page}
            )
        except GrafanaAPIError as exc:
            log.warning("catalog.libraries_page_failed", page=page, error=str(exc))
            break
        more = (next_listing.get("result") or {}).get("elements") if isinstance(next_listing, dict) else None
        if not more:
            break
        elements.extend(more)

    log.info("catalog.libraries", total=total, retrieved=len(elements), pages=page)
    return listing


# ---------------------------------------------------------------------------
# Alert rules
# ---------------------------------------------------------------------------


def legacy_alert_rule(item: dict[str, Any]) -> Optional[AlertRule]:
    """Map a legacy alerting entry onto the provisioning rule shape."""
    uid = item.get("uid") or item.get("id")
    if uid in (None, ""):
        return None
    return AlertRule(
        uid=str(uid),
        title=item.get("title") or item.get("name") or "",
        folderId=item.get("folderId") or 0,
        folderUid=item.get("folderUid") or item.get("folderUID") or "",
        folderTitle=item.get("folderTitle"),
    )


async def _fetch_alert_rules(client: GrafanaClient) -> list[AlertRule]:
    try:
        return await client.fetch(CURRENT_ALERTS_PATH, list[AlertRule])
    except GrafanaAPIError as exc:
        log.info("catalog.alerts_current_failed", error=str(exc))

    try:
        legacy = await client.fetch(LEGACY_ALERTS_PATH, list[dict[str, Any]])
    except GrafanaAPIError as exc:
        log.warning("catalog.alerts_unavailable", error=str(exc))
        return []
    return [rule for rule in map(legacy_alert_rule, legacy) if rule is not None]


async def list_alerts(client: GrafanaClient, resolver: FolderResolver) -> list[AlertRule]:
    """List alert rules with folder titles; empty when alerting is unavailable."""
    rules = await _fetch_alert_rules(client)

    resolved: list[AlertRule] = []
    for rule in rules:
        if rule.folderTitle:
            title = rule.folderTitle
            resolver.cache.put(rule.folderUid, title)
        else:
            title = await resolver.resolve_folder_title(
                rule.folderId, rule.folderUid, _folder_placeholder(rule.folderId)
            )
        resolved.append(rule.model_copy(update={"folderTitle": title}))
    log.info("catalog.alerts", count=len(resolved))
    return resolved


async def fetch_alert_document(client: GrafanaClient, uid: str) -> dict[str, Any]:
    """Fetch one alert rule, trying the provisioning API before legacy alerting.

    Raises the legacy endpoint's ``GrafanaAPIError`` when both fail.
    """
    try:
        return await client.fetch(f"{CURRENT_ALERTS_PATH}/{uid}", dict[str, Any])
    except GrafanaAPIError as exc:
        log.info("catalog.alert_current_failed", uid=uid, error=str(exc))
    return await client.fetch(f"{LEGACY_ALERTS_PATH}/{uid}", dict[str, Any])
