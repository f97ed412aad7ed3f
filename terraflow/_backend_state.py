"""Persist the last used backend to detect backend type migrations."""

from __future__ import annotations

import json
import logging
import os
from contextlib import suppress
from datetime import UTC, datetime
from pathlib import Path

from terraflow._config_models import BackendConfig
from terraflow._terraflow_errors import ConfigError

logger = logging.getLogger(__name__)

STATE_DIR = ".terraflow"
STATE_FILE = "state.json"


def state_path(working_dir: Path) -> Path:
    """Return the state file location for *working_dir*.

    Examples
    --------
    >>> state_path(Path("/infra")).as_posix()
    '/infra/.terraflow/state.json'
    """
    return working_dir / STATE_DIR / STATE_FILE


def load_backend_state(working_dir: Path) -> BackendConfig | None:
    """Return the previously saved backend, or ``None``.

    A missing, unreadable or corrupt state file counts as no previous state.
    """
    path = state_path(working_dir)
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        backend = payload.get("backend") if isinstance(payload, dict) else None
        if not isinstance(backend, dict):
            return None
        return BackendConfig.from_mapping(backend)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, ConfigError) as exc:
        logger.debug("Ignoring unreadable backend state %s: %s", path, exc)
        return None


def save_backend_state(working_dir: Path, backend: BackendConfig) -> Path:
    """Write *backend* to the state file atomically and return its path."""
    path = state_path(working_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    payload = json.dumps(
        {
            "backend": backend.to_mapping(),
            "lastUpdated": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        },
        indent=2,
    )

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
    except Exception:
        with suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise

    tmp_path.replace(path)
    os.chmod(path, 0o600)
    logger.debug("Saved backend state to %s", path)
    return path


def detect_migration(working_dir: Path, current: BackendConfig) -> str | None:
    """Return the previous backend type when it differs from *current*'s.

    Only the type is compared; a changed bucket or key within the same
    backend type is not a migration.
    """
    previous = load_backend_state(working_dir)
    if previous is None or previous.type == current.type:
        return None
    return previous.type
