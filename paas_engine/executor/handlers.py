"""Dispatch table from job name to handler."""

import logging
from typing import Any, Callable, Dict, Optional

from paas_engine.core.errors import ValidationError
from paas_engine.core.models import Job

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Optional[Dict[str, Any]]]


class JobHandlerRegistry:

    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, name: str, handler: JobHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"Handler for {name!r} already registered")
        self._handlers[name] = handler
        logger.debug(f"[executor] registered handler for {name}")

    def get(self, name: str) -> JobHandler:
        handler = self._handlers.get(name)
        if handler is None:
            raise ValidationError(f"No handler registered for job {name!r}")
        return handler

    def names(self):
        return sorted(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers
