"""FastAPI application delivering the Content-Security-Policy.

Run with ``uvicorn csp_guard.main:create_app --factory`` or
``python -m csp_guard serve``.
"""

from __future__ import annotations

from pathlib import Path

import structlog
from fastapi import FastAPI

from csp_guard.config.loader import CspSettings, get_settings
from csp_guard.diagnostics import Diagnostics, LogDiagnostics
from csp_guard.logging_config import setup_logging
from csp_guard.middleware.csp_headers import install_csp_delivery
from csp_guard.snapshot import PolicyBuilder, PolicyDelivery
from csp_guard.static_files import CspStaticFiles

logger = structlog.get_logger()


def build_delivery(settings: CspSettings, diagnostics: Diagnostics) -> PolicyDelivery:
    """Build the policy snapshot and augment it for the configured server."""
    snapshot = PolicyBuilder.from_settings(settings, diagnostics).build()
    delivery = PolicyDelivery(snapshot)
    if delivery.enabled:
        delivery.configure(settings.server_options())
    return delivery


def create_app(settings: CspSettings | None = None, diagnostics: Diagnostics | None = None) -> FastAPI:
    """Create the application.

    The policy is computed here, before the app serves anything; requests
    only read the resulting snapshot.
    """
    settings = settings or get_settings()
    setup_logging(log_level=settings.log_level, json_format=settings.log_json)

    diagnostics = diagnostics or LogDiagnostics()
    delivery = build_delivery(settings, diagnostics)

    app = FastAPI(title="CSP Guard")
    app.state.csp_delivery = delivery
    app.state.csp_runtime_config = delivery.current.runtime_config()
    install_csp_delivery(app, delivery)

    if settings.static_dir:
        static_dir = Path(settings.project_root) / settings.static_dir
        if static_dir.is_dir():
            static = CspStaticFiles(delivery=delivery, diagnostics=diagnostics, directory=static_dir, html=True)
            app.mount("/", static, name="static")
        else:
            logger.warning("static_dir_not_found", path=str(static_dir))

    logger.info(
        "csp_app_created",
        environment=settings.environment,
        enabled=delivery.enabled,
        state=delivery.current.state.name,
    )
    return app
