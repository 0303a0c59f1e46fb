"""Build-once policy snapshots and their serve-time augmentations.

``PolicyBuilder.build()`` runs the merge engine and serializer a single time
and returns an immutable ``DeliverySnapshot``. Only a snapshot can select and
set response headers, so nothing is served before the build step ran.

Development-server augmentations (live reload, report-uri) never touch a
snapshot in place; each returns a new snapshot. ``PolicyDelivery`` keeps the
built snapshot and a single reference to the latest augmented one.
"""

from __future__ import annotations

import dataclasses
import enum
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any

import structlog

from csp_guard.config.loader import CspSettings, read_app_config, read_config
from csp_guard.config.policy_config import (
    CSP_HEADER,
    CSP_HEADER_REPORT_ONLY,
    DELIVERY_HEADER,
    ResolvedConfig,
    calculate_config,
    derive_test_config,
)
from csp_guard.diagnostics import Diagnostics
from csp_guard.middleware.csp_builder import (
    CSP_REPORT_URI,
    Policy,
    append_source_list,
    build_policy_string,
)
from csp_guard.models.server import RuntimePolicy, ServerOptions

logger = structlog.get_logger()

REPORT_PATH = "/csp-report"
DEFAULT_TEST_PATH_PREFIX = "/tests"
RUNTIME_CONFIG_KEY = "content-security-policy"

_LIVE_RELOAD_HOSTS = ("localhost", "0.0.0.0")


class DeliveryState(enum.IntEnum):
    """Lifecycle of the delivered policy. Transitions only move forward."""

    UNINITIALIZED = 0
    MAIN_ONLY = 1
    MAIN_AND_TEST = 2
    LIVE_RELOAD_APPLIED = 3
    REPORT_URI_APPLIED = 4


def set_csp_header(headers: MutableMapping[str, str], name: str, value: str) -> None:
    """Set one CSP header, clearing both CSP header names first."""
    for header in (CSP_HEADER, CSP_HEADER_REPORT_ONLY):
        if header in headers:
            del headers[header]
    headers[name] = value


@dataclass(frozen=True)
class PolicyVariant:
    """A resolved configuration together with its serialized policy."""

    config: ResolvedConfig
    policy_string: str
    diagnostics: Diagnostics | None = dataclasses.field(default=None, compare=False, repr=False)

    @classmethod
    def from_config(cls, config: ResolvedConfig, diagnostics: Diagnostics | None = None) -> PolicyVariant:
        return cls(
            config=config,
            policy_string=build_policy_string(config.policy, diagnostics),
            diagnostics=diagnostics,
        )

    @property
    def header_name(self) -> str:
        return self.config.header_name

    def transform(self, mutate: Callable[[Policy], None]) -> PolicyVariant:
        """Return a new variant whose policy is a mutated copy of this one."""
        policy = self.config.copy_policy()
        mutate(policy)
        return PolicyVariant.from_config(self.config.with_policy(policy), self.diagnostics)


@dataclass(frozen=True)
class DeliverySnapshot:
    """Immutable main/test policy variants ready to be served."""

    main: PolicyVariant
    test: PolicyVariant | None = None
    test_path_prefix: str = DEFAULT_TEST_PATH_PREFIX
    server_rendering: bool = False
    state: DeliveryState = DeliveryState.MAIN_ONLY

    @property
    def config(self) -> ResolvedConfig:
        return self.main.config

    @property
    def enabled(self) -> bool:
        return self.main.config.enabled

    @property
    def includes_tests(self) -> bool:
        return self.test is not None

    def select(self, path: str) -> PolicyVariant:
        """Pick the test variant for test-run paths when the build has tests."""
        if self.test is not None and path.startswith(self.test_path_prefix):
            return self.test
        return self.main

    def apply(self, path: str, headers: MutableMapping[str, str]) -> str:
        """Set the CSP header for ``path`` on ``headers``; return the header name."""
        variant = self.select(path)
        set_csp_header(headers, variant.header_name, variant.policy_string)
        return variant.header_name

    def _transform(self, mutate: Callable[[Policy], None], state: DeliveryState) -> DeliverySnapshot:
        return dataclasses.replace(
            self,
            main=self.main.transform(mutate),
            test=self.test.transform(mutate) if self.test is not None else None,
            state=max(self.state, state),
        )

    def with_live_reload(self, options: ServerOptions) -> DeliverySnapshot:
        """Allow the live-reload websocket and script origins."""
        protocol = "wss://" if options.ssl else "ws://"
        hosts = [
            f"{hostname}:{options.live_reload_port}"
            for hostname in (*_LIVE_RELOAD_HOSTS, options.live_reload_host)
            if hostname
        ]

        def allow(policy: Policy) -> None:
            for host in hosts:
                append_source_list(policy, "connect-src", protocol + host)
                append_source_list(policy, "script-src", host)

        return self._transform(allow, DeliveryState.LIVE_RELOAD_APPLIED)

    def with_report_uri(self, options: ServerOptions) -> DeliverySnapshot:
        """Point ``report-uri`` at the local report sink.

        Only applies in report-only mode and when no ``report-uri`` is
        configured already.
        """
        if not self.config.report_only or CSP_REPORT_URI in self.config.policy:
            return self

        protocol = "https://" if options.ssl else "http://"
        origin = f"{protocol}{options.host or 'localhost'}:{options.port}"
        report_uri = origin + REPORT_PATH

        def inject(policy: Policy) -> None:
            append_source_list(policy, "connect-src", origin)
            policy[CSP_REPORT_URI] = report_uri

        return self._transform(inject, DeliveryState.REPORT_URI_APPLIED)

    def with_server_options(self, options: ServerOptions) -> DeliverySnapshot:
        snapshot = self
        if options.live_reload:
            snapshot = snapshot.with_live_reload(options)
        return snapshot.with_report_uri(options)

    def runtime_config(self) -> dict[str, Any]:
        """Payload a server-rendering host needs to set the header itself.

        Empty unless the policy is enabled, delivered by header, and server
        rendering is turned on.
        """
        config = self.config
        if not (self.server_rendering and config.enabled and config.delivers(DELIVERY_HEADER)):
            return {}
        payload = RuntimePolicy(policy=self.main.policy_string, report_only=config.report_only)
        return {RUNTIME_CONFIG_KEY: payload.model_dump(by_alias=True)}


class PolicyBuilder:
    """Compute the delivery snapshot once per process."""

    def __init__(
        self,
        environment: str,
        own_config: Mapping[str, Any] | None,
        run_config: Mapping[str, Any] | None,
        diagnostics: Diagnostics,
        *,
        include_tests: bool = False,
        test_own_config: Mapping[str, Any] | None = None,
        test_run_config: Mapping[str, Any] | None = None,
        test_path_prefix: str = DEFAULT_TEST_PATH_PREFIX,
        server_rendering: bool = False,
    ) -> None:
        self._environment = environment
        self._own_config = own_config
        self._run_config = run_config
        self._diagnostics = diagnostics
        self._include_tests = include_tests
        self._test_own_config = test_own_config
        self._test_run_config = test_run_config
        self._test_path_prefix = test_path_prefix
        self._server_rendering = server_rendering
        self._snapshot: DeliverySnapshot | None = None

    @classmethod
    def from_settings(cls, settings: CspSettings, diagnostics: Diagnostics) -> PolicyBuilder:
        """Read the configuration files named by ``settings``."""
        environment = settings.environment
        own_path = settings.config_path()
        app_path = settings.app_config_path()
        test_own_config = test_run_config = None
        if settings.include_tests:
            test_own_config = read_config(own_path, "test")
            test_run_config = read_app_config(app_path, "test")

        return cls(
            environment,
            read_config(own_path, environment),
            read_app_config(app_path, environment),
            diagnostics,
            include_tests=settings.include_tests,
            test_own_config=test_own_config,
            test_run_config=test_run_config,
            test_path_prefix=settings.test_path_prefix,
            server_rendering=settings.server_rendering,
        )

    @property
    def state(self) -> DeliveryState:
        if self._snapshot is None:
            return DeliveryState.UNINITIALIZED
        return self._snapshot.state

    def build(self) -> DeliverySnapshot:
        """Return the snapshot, computing it on first call."""
        if self._snapshot is not None:
            return self._snapshot

        config = calculate_config(self._environment, self._own_config, self._run_config, self._diagnostics)
        main = PolicyVariant.from_config(config, self._diagnostics)

        test = None
        if self._include_tests:
            test_config = calculate_config("test", self._test_own_config, self._test_run_config, self._diagnostics)
            test = PolicyVariant.from_config(derive_test_config(test_config), self._diagnostics)

        self._snapshot = DeliverySnapshot(
            main=main,
            test=test,
            test_path_prefix=self._test_path_prefix,
            server_rendering=self._server_rendering,
            state=DeliveryState.MAIN_AND_TEST if test is not None else DeliveryState.MAIN_ONLY,
        )
        logger.info(
            "csp_policy_built",
            environment=self._environment,
            enabled=config.enabled,
            report_only=config.report_only,
            delivery=sorted(config.delivery),
            includes_tests=test is not None,
        )
        return self._snapshot


class PolicyDelivery:
    """Holds the latest snapshot served to requests."""

    def __init__(self, snapshot: DeliverySnapshot) -> None:
        self._base = snapshot
        self._current = snapshot
        self._options: ServerOptions | None = None

    @property
    def current(self) -> DeliverySnapshot:
        return self._current

    @property
    def enabled(self) -> bool:
        return self._base.enabled

    def configure(self, options: ServerOptions) -> DeliverySnapshot:
        """Augment the built snapshot for ``options``.

        Recomputes only when the options differ from the last call.
        """
        if options == self._options:
            return self._current
        self._current = self._base.with_server_options(options)
        self._options = options
        logger.info(
            "csp_delivery_configured",
            state=self._current.state.name,
            live_reload=options.live_reload,
            policy=self._current.main.policy_string,
        )
        return self._current
