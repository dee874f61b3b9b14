"""Per-build log, separate from process logging."""

import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional
from uuid import UUID

logger = logging.getLogger(__name__)

STEP_PREFIX = "-----> "
ERROR_PREFIX = "!     "


class BuildLog:
    """
    Accumulates build output. Lines are optionally forwarded to a live sink
    (e.g. the worker's log upload); sink errors never break the build.
    """

    def __init__(self, build_label: str, sink: Optional[Callable[[str], None]] = None):
        self._label = build_label
        self._sink = sink
        self._lines: List[str] = []
        self._lock = threading.Lock()

    def step(self, message: str) -> None:
        self._append(f"{STEP_PREFIX}{message}")

    def error(self, message: str) -> None:
        self._append(f"{ERROR_PREFIX}{message}")

    def output(self, text: str) -> None:
        """Raw compiler output, one entry per line."""
        for line in text.splitlines():
            if line.strip():
                self._append(line)

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def _append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)
        logger.debug(f"[build {self._label}] {line}")
        if self._sink is not None:
            try:
                self._sink(line)
            except Exception as e:
                logger.warning(f"[builder] log sink failed for {self._label}: {e}")


class LiveLogStore:
    """Recent lines of in-flight builds, keyed by build job id."""

    def __init__(self, max_lines: int = 5000):
        self._max_lines = max_lines
        self._logs: Dict[UUID, Deque[str]] = {}
        self._lock = threading.Lock()

    def append(self, job_id: UUID, lines: Iterable[str]) -> int:
        with self._lock:
            buffer = self._logs.setdefault(job_id, deque(maxlen=self._max_lines))
            buffer.extend(lines)
            return len(buffer)

    def get(self, job_id: UUID) -> List[str]:
        with self._lock:
            return list(self._logs.get(job_id, ()))

    def discard(self, job_id: UUID) -> None:
        with self._lock:
            self._logs.pop(job_id, None)
