"""Tests for the CSP header delivery middleware."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient
from starlette.datastructures import MutableHeaders

from csp_guard.config.loader import CspSettings
from csp_guard.main import create_app
from csp_guard.markup import build_meta_tag
from csp_guard.middleware.csp_headers import (
    CspHeaderMiddleware,
    apply_runtime_config,
    install_csp_delivery,
)
from csp_guard.models.server import ServerOptions
from csp_guard.snapshot import PolicyBuilder, PolicyDelivery

CSP = "content-security-policy"
CSP_REPORT_ONLY = "content-security-policy-report-only"


def _make_app(delivery) -> FastAPI:
    app = FastAPI()

    @app.get("/")
    async def index():
        return PlainTextResponse("ok")

    @app.get("/tests/index.html")
    async def tests_index():
        return PlainTextResponse("tests")

    @app.get("/upstream")
    async def upstream():
        # An inner layer that already set conflicting CSP headers
        return PlainTextResponse(
            "ok",
            headers={
                "Content-Security-Policy": "default-src *",
                "Content-Security-Policy-Report-Only": "script-src *",
            },
        )

    install_csp_delivery(app, delivery)
    return app


def _delivery(diagnostics, own=None, include_tests=False) -> PolicyDelivery:
    snapshot = PolicyBuilder("development", own or {}, {}, diagnostics, include_tests=include_tests).build()
    return PolicyDelivery(snapshot)


# ── Header selection ────────────────────────────────────────────────────


class TestCspHeaderMiddleware:
    def test_main_policy_on_root(self, diagnostics):
        delivery = _delivery(diagnostics, include_tests=True)
        with TestClient(_make_app(delivery)) as client:
            resp = client.get("/")

        assert resp.status_code == 200
        assert resp.headers[CSP] == delivery.current.main.policy_string
        assert CSP_REPORT_ONLY not in resp.headers

    def test_test_policy_on_test_path(self, diagnostics):
        delivery = _delivery(diagnostics, include_tests=True)
        with TestClient(_make_app(delivery)) as client:
            resp = client.get("/tests/index.html")

        assert resp.headers[CSP] == delivery.current.test.policy_string
        assert "'nonce-abcdefg'" in resp.headers[CSP]

    def test_test_path_without_tests_gets_main(self, diagnostics):
        delivery = _delivery(diagnostics)
        with TestClient(_make_app(delivery)) as client:
            resp = client.get("/tests/index.html")

        assert resp.headers[CSP] == delivery.current.main.policy_string

    def test_report_only_header(self, diagnostics):
        delivery = _delivery(diagnostics, own={"report_only": True})
        with TestClient(_make_app(delivery)) as client:
            resp = client.get("/")

        assert CSP not in resp.headers
        assert resp.headers[CSP_REPORT_ONLY] == delivery.current.main.policy_string

    @pytest.mark.parametrize("report_only", [False, True])
    def test_exactly_one_header(self, diagnostics, report_only):
        delivery = _delivery(diagnostics, own={"report_only": report_only})
        with TestClient(_make_app(delivery)) as client:
            resp = client.get("/upstream")

        expected, other = (CSP_REPORT_ONLY, CSP) if report_only else (CSP, CSP_REPORT_ONLY)
        assert resp.headers.get_list(expected) == [delivery.current.main.policy_string]
        assert resp.headers.get_list(other) == []

    def test_not_found_still_gets_header(self, diagnostics):
        delivery = _delivery(diagnostics)
        with TestClient(_make_app(delivery)) as client:
            resp = client.get("/missing")

        assert resp.status_code == 404
        assert CSP in resp.headers

    def test_reads_latest_snapshot(self, diagnostics):
        delivery = _delivery(diagnostics)
        with TestClient(_make_app(delivery)) as client:
            before = client.get("/").headers[CSP]
            delivery.configure(ServerOptions(live_reload=True))
            after = client.get("/").headers[CSP]

        assert "ws://localhost:7020" not in before
        assert "ws://localhost:7020" in after

    def test_error_passes_response_through(self):
        delivery = MagicMock()
        delivery.current.apply.side_effect = RuntimeError("boom")
        app = FastAPI()

        @app.get("/")
        async def index():
            return PlainTextResponse("ok")

        app.add_middleware(CspHeaderMiddleware, delivery=delivery)

        with patch("csp_guard.middleware.csp_headers.logger") as mock_logger:
            with TestClient(app) as client:
                resp = client.get("/")

        assert resp.status_code == 200
        assert resp.text == "ok"
        mock_logger.exception.assert_called_once()


class TestInstall:
    def test_disabled_installs_nothing(self, diagnostics):
        delivery = _delivery(diagnostics, own={"enabled": False})
        app = _make_app(delivery)

        with TestClient(app) as client:
            upstream = client.get("/upstream")
            root = client.get("/")
            report = client.post("/csp-report", json={})

        assert upstream.headers[CSP] == "default-src *"
        assert upstream.headers[CSP_REPORT_ONLY] == "script-src *"
        assert CSP not in root.headers
        assert report.status_code == 404

    def test_enabled_returns_true(self, diagnostics):
        assert install_csp_delivery(FastAPI(), _delivery(diagnostics)) is True

    def test_disabled_returns_false(self, diagnostics):
        assert install_csp_delivery(FastAPI(), _delivery(diagnostics, own={"enabled": False})) is False

    def test_report_route_mounted(self, diagnostics):
        with TestClient(_make_app(_delivery(diagnostics))) as client:
            resp = client.post("/csp-report", json={"csp-report": {}})
        assert resp.status_code == 204


# ── Runtime payload ─────────────────────────────────────────────────────


class TestApplyRuntimeConfig:
    def test_full_payload(self):
        headers = MutableHeaders()
        payload = {"content-security-policy": {"policy": "default-src 'self'", "reportOnly": False}}

        assert apply_runtime_config(payload, headers) is True
        assert headers["content-security-policy"] == "default-src 'self'"

    def test_inner_payload_report_only(self):
        headers = MutableHeaders(headers={"Content-Security-Policy": "default-src *"})

        apply_runtime_config({"policy": "default-src 'self'", "reportOnly": True}, headers)

        assert "content-security-policy" not in headers
        assert headers["content-security-policy-report-only"] == "default-src 'self'"

    def test_empty_payload(self):
        headers = MutableHeaders()
        assert apply_runtime_config({}, headers) is False
        assert len(headers) == 0

    def test_round_trip_from_snapshot(self, diagnostics):
        snapshot = PolicyBuilder(
            "production", {"report_only": True}, {}, diagnostics, server_rendering=True,
        ).build()
        headers = {}

        apply_runtime_config(snapshot.runtime_config(), headers)

        assert headers == {"Content-Security-Policy-Report-Only": snapshot.main.policy_string}


# ── Application factory ─────────────────────────────────────────────────


class TestCreateApp:
    def test_serves_test_policy(self, project, diagnostics):
        project({"policy": {"img-src": ["data:"]}})
        settings = CspSettings(project_root=str(project.root), include_tests=True, log_json=False)

        with TestClient(create_app(settings, diagnostics)) as client:
            root = client.get("/")
            tests = client.get("/tests/index.html")

        assert "img-src data:" in root.headers[CSP]
        assert "frame-src 'self'" not in root.headers[CSP]
        assert "frame-src 'self'" in tests.headers[CSP]

    def test_live_reload_from_settings(self, project, diagnostics):
        settings = CspSettings(project_root=str(project.root), live_reload=True, log_json=False)
        app = create_app(settings, diagnostics)

        with TestClient(app) as client:
            resp = client.get("/")

        assert "ws://localhost:7020" in resp.headers[CSP]
        assert app.state.csp_delivery.current.main.policy_string == resp.headers[CSP]

    def test_report_uri_from_settings(self, project, diagnostics):
        project({"report_only": True})
        settings = CspSettings(project_root=str(project.root), port=4300, log_json=False)

        with TestClient(create_app(settings, diagnostics)) as client:
            resp = client.get("/")

        assert resp.headers[CSP_REPORT_ONLY].endswith("report-uri http://localhost:4300/csp-report")

    def test_disabled(self, project, diagnostics):
        project({"enabled": False})
        settings = CspSettings(project_root=str(project.root), live_reload=True, log_json=False)

        with TestClient(create_app(settings, diagnostics)) as client:
            resp = client.get("/")

        assert CSP not in resp.headers
        assert CSP_REPORT_ONLY not in resp.headers

    def test_static_dir(self, project, diagnostics):
        dist = project.root / "dist"
        (dist / "tests").mkdir(parents=True)
        (dist / "index.html").write_text("<html>app</html>")
        (dist / "tests" / "index.html").write_text("<html>tests</html>")
        settings = CspSettings(
            project_root=str(project.root), static_dir="dist", include_tests=True, log_json=False,
        )

        with TestClient(create_app(settings, diagnostics)) as client:
            root = client.get("/")
            tests = client.get("/tests/index.html")

        assert root.status_code == 200
        assert "app" in root.text
        assert tests.status_code == 200
        assert "'nonce-abcdefg'" in tests.headers[CSP]
        assert "'nonce-abcdefg'" not in root.headers[CSP]

    def test_static_html_slots_rendered(self, project, diagnostics):
        project({"delivery": ["meta"]})
        dist = project.root / "dist"
        (dist / "tests").mkdir(parents=True)
        (dist / "index.html").write_text('<head>{{content-for "head"}}</head>')
        (dist / "tests" / "index.html").write_text(
            '<head>{{content-for "head"}}{{content-for "test-head"}}</head>'
            '<body>{{content-for "test-body"}}</body>'
        )
        (dist / "app.js").write_text('// {{content-for "head"}}')
        settings = CspSettings(
            project_root=str(project.root), static_dir="dist", include_tests=True, log_json=False,
        )
        app = create_app(settings, diagnostics)
        snapshot = app.state.csp_delivery.current

        with TestClient(app) as client:
            root = client.get("/")
            tests = client.get("/tests/")
            script = client.get("/app.js")

        assert root.text == f"<head>{build_meta_tag(snapshot.main.policy_string)}</head>"
        assert root.headers["content-type"].startswith("text/html")
        assert tests.text.count("<meta ") == 1
        assert "'nonce-abcdefg'" in tests.text
        assert "securitypolicyviolation" in tests.text
        assert script.text == '// {{content-for "head"}}'

    def test_runtime_config_on_state(self, project, diagnostics):
        settings = CspSettings(project_root=str(project.root), server_rendering=True, log_json=False)
        app = create_app(settings, diagnostics)

        payload = app.state.csp_runtime_config["content-security-policy"]
        assert payload == {"policy": app.state.csp_delivery.current.main.policy_string, "reportOnly": False}
