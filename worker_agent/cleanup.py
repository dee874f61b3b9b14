# worker_agent/cleanup.py
"""Workspace retention and container garbage collection."""

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from paas_engine.runtime.backend import ContainerBackend

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    workspaces_removed: int = 0
    workspaces_kept: int = 0
    garbage: Dict[str, int] = field(default_factory=dict)


def cleanup_workspaces(workspace_dir: str, retention_minutes: int, now: Optional[float] = None) -> CleanupReport:
    """Remove build directories older than the retention window. Younger entries are never touched."""
    report = CleanupReport()
    if not os.path.isdir(workspace_dir):
        return report

    now = now if now is not None else time.time()
    cutoff = now - retention_minutes * 60

    with os.scandir(workspace_dir) as entries:
        entries = list(entries)

    for entry in entries:
        try:
            modified = last_modified(entry)
        except FileNotFoundError:
            continue

        if modified >= cutoff:
            report.workspaces_kept += 1
            continue

        try:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.remove(entry.path)
            report.workspaces_removed += 1
        except OSError as e:
            logger.warning(f"[agent] failed to remove workspace {entry.path}: {e}")

    if report.workspaces_removed:
        logger.info(f"[agent] removed {report.workspaces_removed} workspace(s) older than {retention_minutes}m")
    return report


def last_modified(entry: os.DirEntry) -> float:
    """Newest mtime of the entry and its direct children (app/, cache/, slug)."""
    newest = entry.stat(follow_symlinks=False).st_mtime
    if entry.is_dir(follow_symlinks=False):
        with os.scandir(entry.path) as children:
            for child in children:
                try:
                    newest = max(newest, child.stat(follow_symlinks=False).st_mtime)
                except FileNotFoundError:
                    continue
    return newest


def run_cleanup(workspace_dir: str, retention_minutes: int, backend: ContainerBackend) -> CleanupReport:
    report = cleanup_workspaces(workspace_dir, retention_minutes)
    try:
        report.garbage = backend.garbage_collect()
        logger.info(
            f"[agent] garbage collected {report.garbage.get('containers_removed', 0)} container(s), "
            f"{report.garbage.get('images_removed', 0)} image(s)"
        )
    except Exception as e:
        logger.error(f"[agent] container garbage collection failed: {e}")
    return report
