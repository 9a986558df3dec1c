"""
macOS Keychain integration for the Grafana API token and URL.

Uses the `security` CLI tool (built into macOS) so the service-account token
never has to live in a `.env` file on shared machines.
"""
from __future__ import annotations

import shutil
import subprocess
from typing import Optional

import structlog

log = structlog.get_logger(__name__)

_SERVICE = "grafana-export"
_SECURITY_BIN = "/usr/bin/security"


def _run_security(*args: str) -> subprocess.CompletedProcess[str]:
    """Run a macOS `security` command and return the result."""
    return subprocess.run(
        [_SECURITY_BIN, *args],
        capture_output=True,
        text=True,
        check=False,
    )


def keychain_available() -> bool:
    return shutil.which(_SECURITY_BIN) is not None


def store_secret(account: str, value: str) -> None:
    """Store *value* under *account*, replacing any existing entry."""
    _run_security("delete-generic-password", "-s", _SERVICE, "-a", account)

    result = _run_security(
        "add-generic-password",
        "-s", _SERVICE,
        "-a", account,
        "-w", value,
    )
    if result.returncode != 0:
        raise RuntimeError(
            f"Keychain store failed for account '{account}': {result.stderr.strip()}"
        )
    log.info("keychain.stored", account=account)


def retrieve_secret(account: str) -> Optional[str]:
    """Return the secret stored under *account*, or ``None`` if absent."""
    result = _run_security(
        "find-generic-password",
        "-s", _SERVICE,
        "-a", account,
        "-w",
    )
    if result.returncode != 0:
        log.debug("keychain.not_found", account=account)
        return None
    value = result.stdout.strip()
    log.info("keychain.retrieved", account=account)
    return value or None
