"""CSP violation report sink."""

from __future__ import annotations

import json

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import Response

from csp_guard.snapshot import REPORT_PATH

logger = structlog.get_logger()

router = APIRouter(tags=["csp-report"])

_REPORT_CONTENT_TYPES = frozenset({"application/csp-report", "application/json"})

# Reports larger than this are dropped unread.
_MAX_REPORT_BYTES = 64 * 1024


def _content_type(request: Request) -> str:
    return request.headers.get("content-type", "").split(";")[0].strip().lower()


@router.post(REPORT_PATH, status_code=204)
async def csp_report(request: Request) -> Response:
    """Log a browser-posted CSP violation report.

    Always answers 204 with an empty body. Parse failures and unexpected
    payloads are logged, never reflected back to the browser.
    """
    content_type = _content_type(request)
    if content_type not in _REPORT_CONTENT_TYPES:
        logger.info("csp_report_ignored", content_type=content_type)
        return Response(status_code=204)

    body = await request.body()
    if len(body) > _MAX_REPORT_BYTES:
        logger.warning("csp_report_too_large", size=len(body), max=_MAX_REPORT_BYTES)
        return Response(status_code=204)

    try:
        report = json.loads(body) if body.strip() else {}
    except (ValueError, RecursionError) as exc:
        logger.warning("csp_report_unparseable", content_type=content_type, error=str(exc))
        return Response(status_code=204)

    logger.warning("csp_violation", report=report)
    return Response(status_code=204)
