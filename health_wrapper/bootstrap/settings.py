"""
Gateway settings bootstrap.

The gateway only honours X-Forwarded-For / X-Real-IP from peers listed in
``gateway.trustedProxies`` of its JSON settings file. Since every request
reaches it through this wrapper over loopback, the loopback addresses must be
in that list before the gateway starts. The file is merged, never replaced:
an unreadable file aborts startup instead of being overwritten.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable

from health_wrapper.vars import (
    GATEWAY_CONFIG_FILE,
    GATEWAY_STATE_DIR,
    GATEWAY_TRUSTED_PROXIES,
)

logger = logging.getLogger("uvicorn.error")


class SettingsError(RuntimeError):
    """The settings file or its directory cannot be prepared."""


def merge_trusted_proxies(settings: dict, trusted: Iterable[str]) -> bool:
    """Add missing addresses to gateway.trustedProxies in place. Returns True if changed."""
    gateway = settings.setdefault("gateway", {})
    if not isinstance(gateway, dict):
        raise SettingsError("'gateway' entry in settings is not an object")

    current = gateway.get("trustedProxies")
    if current is None:
        current = []
    if not isinstance(current, list):
        raise SettingsError("'gateway.trustedProxies' in settings is not a list")

    missing = [address for address in trusted if address not in current]
    if not missing and "trustedProxies" in gateway:
        return False
    gateway["trustedProxies"] = current + missing
    return True


def _load(path: Path) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            settings = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SettingsError(f"Cannot read settings file {path}: {e}") from e
    if not isinstance(settings, dict):
        raise SettingsError(f"Settings file {path} does not contain a JSON object")
    return settings


def _write_atomic(path: Path, settings: dict) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(settings, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def ensure_gateway_settings(
    state_dir: str = GATEWAY_STATE_DIR,
    file_name: str = GATEWAY_CONFIG_FILE,
    trusted_proxies: Iterable[str] = GATEWAY_TRUSTED_PROXIES,
) -> Path:
    """
    Make sure the settings file exists and trusts the loopback proxy.

    Idempotent: a file that already trusts every address is not rewritten.
    Raises SettingsError on any failure; callers treat that as fatal.
    """
    trusted = list(trusted_proxies)
    directory = Path(state_dir)
    path = directory / file_name

    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise SettingsError(f"Cannot create state directory {directory}: {e}") from e

    if path.exists():
        settings = _load(path)
    else:
        logger.info(f"[proxy] Creating gateway settings at {path}")
        settings = {}

    if not merge_trusted_proxies(settings, trusted) and path.exists():
        logger.info(f"[proxy] Gateway settings already trust {', '.join(trusted)}")
        return path

    try:
        _write_atomic(path, settings)
    except OSError as e:
        raise SettingsError(f"Cannot write settings file {path}: {e}") from e

    logger.info(f"[proxy] Gateway settings trust {', '.join(settings['gateway']['trustedProxies'])}")
    return path
