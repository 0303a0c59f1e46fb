"""Write-only diagnostics channel for configuration and delivery warnings."""

from __future__ import annotations

from typing import Any, Protocol

import structlog


class Diagnostics(Protocol):
    """Receives warnings from the merge engine, serializer and markup delivery."""

    def warn(self, event: str, **fields: Any) -> None:
        ...


class LogDiagnostics:
    """Forward warnings to structlog."""

    def __init__(self, logger: Any = None) -> None:
        self._logger = logger or structlog.get_logger("csp_guard.diagnostics")

    def warn(self, event: str, **fields: Any) -> None:
        self._logger.warning(event, **fields)
