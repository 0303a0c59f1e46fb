"""Static file serving that fills the CSP template slots of HTML pages."""

from __future__ import annotations

from pathlib import Path

import structlog
from starlette.concurrency import run_in_threadpool
from starlette.responses import FileResponse, HTMLResponse, Response
from starlette.staticfiles import StaticFiles
from starlette.types import Scope

from csp_guard.diagnostics import Diagnostics
from csp_guard.markup import render_slots
from csp_guard.snapshot import DeliverySnapshot, PolicyDelivery

logger = structlog.get_logger()

_HTML_SUFFIXES = (".html", ".htm")


class CspStaticFiles(StaticFiles):
    """``StaticFiles`` that renders ``{{content-for "..."}}`` slots in HTML files.

    Rendered pages are cached per file modification time and delivered
    snapshot, so slot warnings are reported once per change.
    """

    def __init__(self, *, delivery: PolicyDelivery, diagnostics: Diagnostics, **kwargs) -> None:
        super().__init__(**kwargs)
        self._delivery = delivery
        self._diagnostics = diagnostics
        self._rendered: dict[str, tuple[float, DeliverySnapshot, str]] = {}

    async def get_response(self, path: str, scope: Scope) -> Response:
        response = await super().get_response(path, scope)
        if not isinstance(response, FileResponse) or not str(response.path).endswith(_HTML_SUFFIXES):
            return response

        document = await run_in_threadpool(self._render, Path(response.path))
        return HTMLResponse(document, status_code=response.status_code)

    def _render(self, path: Path) -> str:
        key = str(path)
        mtime = path.stat().st_mtime
        snapshot = self._delivery.current
        cached = self._rendered.get(key)
        if cached is not None and cached[0] == mtime and cached[1] is snapshot:
            return cached[2]

        document = render_slots(path.read_text(encoding="utf-8"), snapshot, self._diagnostics)
        self._rendered[key] = (mtime, snapshot, document)
        logger.debug("csp_slots_rendered", path=key)
        return document
