"""Capacity metrics reported with every heartbeat."""

import logging
import os
from typing import Any, Dict, Optional

import psutil

from paas_engine.runtime.backend import ContainerBackend

logger = logging.getLogger(__name__)

MB = 1024 * 1024


def collect_metrics(workspace_dir: str, backend: Optional[ContainerBackend] = None) -> Dict[str, Any]:
    """
    CPU in millicores, sizes in MB. Values that cannot be read are None
    and leave the node's stored figure unchanged.
    """
    metrics: Dict[str, Any] = {
        "cpu_total": None,
        "cpu_used": None,
        "memory_total_mb": None,
        "memory_used_mb": None,
        "disk_total_mb": None,
        "disk_used_mb": None,
        "container_count": None,
    }

    cpus = psutil.cpu_count()
    if cpus:
        cpu_total = cpus * 1000
        metrics["cpu_total"] = cpu_total
        # Non-blocking: utilization since the previous heartbeat
        metrics["cpu_used"] = min(int(psutil.cpu_percent() / 100 * cpu_total), cpu_total)

    memory = psutil.virtual_memory()
    metrics["memory_total_mb"] = memory.total // MB
    metrics["memory_used_mb"] = max(memory.total - memory.available, 0) // MB

    disk_path = workspace_dir if os.path.exists(workspace_dir) else "/"
    try:
        usage = psutil.disk_usage(disk_path)
        metrics["disk_total_mb"] = usage.total // MB
        metrics["disk_used_mb"] = usage.used // MB
    except OSError as e:
        logger.debug(f"[agent] disk usage unavailable for {disk_path}: {e}")

    if backend is not None:
        try:
            metrics["container_count"] = int(backend.info().get("containers_running", 0))
        except Exception as e:
            logger.warning(f"[agent] container backend info unavailable: {e}")

    return metrics
