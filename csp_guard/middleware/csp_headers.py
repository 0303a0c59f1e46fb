"""CSP header delivery middleware."""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from typing import Any

import structlog
from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from csp_guard.config.policy_config import CSP_HEADER, CSP_HEADER_REPORT_ONLY
from csp_guard.models.server import RuntimePolicy
from csp_guard.snapshot import RUNTIME_CONFIG_KEY, PolicyDelivery, set_csp_header

logger = structlog.get_logger()


class CspHeaderMiddleware(BaseHTTPMiddleware):
    """Set the CSP header on every response.

    - Test-run paths get the test policy when the build includes tests
    - Any CSP header set by the route or an inner layer is replaced
    """

    def __init__(self, app: ASGIApp, delivery: PolicyDelivery) -> None:
        super().__init__(app)
        self._delivery = delivery

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        try:
            self._delivery.current.apply(request.url.path, response.headers)
        except Exception:
            logger.exception("csp_header_error", path=request.url.path)
        return response


def install_csp_delivery(app: FastAPI, delivery: PolicyDelivery) -> bool:
    """Register header middleware and report route on ``app``.

    Nothing is installed when the policy is disabled.
    """
    if not delivery.enabled:
        logger.info("csp_delivery_disabled")
        return False

    from csp_guard.api.report_routes import router as report_router

    app.add_middleware(CspHeaderMiddleware, delivery=delivery)
    app.include_router(report_router)
    logger.info("csp_delivery_installed", header=delivery.current.main.header_name)
    return True


def apply_runtime_config(runtime_config: Mapping[str, Any], headers: MutableMapping[str, str]) -> bool:
    """Set the CSP header from a server-rendering runtime payload.

    Accepts either the full runtime config or just its
    ``content-security-policy`` entry. Returns False when there is nothing
    to set.
    """
    payload = runtime_config.get(RUNTIME_CONFIG_KEY, runtime_config)
    if not payload:
        return False
    runtime = RuntimePolicy.model_validate(payload)
    header = CSP_HEADER_REPORT_ONLY if runtime.report_only else CSP_HEADER
    set_csp_header(headers, header, runtime.policy)
    return True
