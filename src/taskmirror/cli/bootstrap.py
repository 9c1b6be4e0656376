# src/taskmirror/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the remote store and the SQLite fallback store into an Engine,
- persists the demo remote store's documents as JSON between runs.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
from pathlib import Path

from ..config import get_settings
from ..core.engine import Engine, EngineConfig
from ..storage.fallback_store import SqliteFallbackStore
from ..storage.memory_remote import InMemoryRemoteStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.fallback_db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.remote_snapshot_path.parent.mkdir(parents=True, exist_ok=True)


def create_engine(*, settings=None, remote: InMemoryRemoteStore | None = None) -> Engine:
    """
    Build an Engine from the provided settings.

    If settings is None, falls back to get_settings(). The remote store defaults
    to the in-process one, seeded from the JSON snapshot of the previous run.
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    if remote is None:
        remote = InMemoryRemoteStore()
        load_remote_documents(remote, settings.remote_snapshot_path)

    return Engine(
        remote,
        SqliteFallbackStore(settings.fallback_db_path),
        EngineConfig.from_settings(settings),
    )


def load_remote_documents(remote: InMemoryRemoteStore, path: Path) -> int:
    path = Path(path)
    if not path.exists():
        return 0
    try:
        data = json.loads(path.read_text("utf-8"))
        if not isinstance(data, dict):
            return 0
        remote.import_documents(data)
        logger.info("Loaded %d remote documents from %s", len(data), path)
        return len(data)
    except Exception:
        logger.exception("Failed to load remote documents from %s", path)
        return 0


def save_remote_documents(remote: InMemoryRemoteStore, path: Path) -> None:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        docs = remote.export_documents()
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(docs, ensure_ascii=False, indent=2, default=str), "utf-8")
        os.replace(tmp, path)
        with contextlib.suppress(Exception):
            os.chmod(path, 0o600)
        logger.info("Saved %d remote documents to %s", len(docs), path)
    except Exception:
        logger.exception("Failed to save remote documents to %s", path)
