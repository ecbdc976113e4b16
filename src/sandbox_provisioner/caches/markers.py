"""Install markers recording what a cache mount already contains."""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from sandbox_provisioner.logging import get_logger
from sandbox_provisioner.types import CacheMount

logger = get_logger(__name__)

MARKER_DIR = ".installed"


def marker_path(mount: CacheMount, fingerprint: str) -> Path:
    return mount.mount_path / MARKER_DIR / f"{fingerprint}.json"


def read_marker(mount: CacheMount, fingerprint: str) -> Optional[Dict[str, Any]]:
    """Return the marker for a step fingerprint, or None when not installed.

    An unreadable marker is reported as an empty dict so that callers treat
    it as a corrupted cache rather than a missing install.
    """
    path = marker_path(mount, fingerprint)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.error("marker_unreadable", path=str(path), error=str(e))
        return {}
    return data if isinstance(data, dict) else {}


def write_marker(mount: CacheMount, fingerprint: str, data: Dict[str, Any]) -> Path:
    """Atomically write the marker; the artifact must already be in place."""
    path = marker_path(mount, fingerprint)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = {
        **data,
        "fingerprint": fingerprint,
        "installed_at": datetime.now(timezone.utc).isoformat(),
    }
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(json.dumps(payload, sort_keys=True))
    os.replace(tmp_path, path)

    logger.debug("marker_written", path=str(path))
    return path
