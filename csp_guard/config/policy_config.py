"""Resolve the effective CSP configuration for one environment.

Three sources feed a resolved configuration, highest precedence first:

1. the addon's own configuration (``config/content-security-policy.yaml``),
2. the application's legacy inline keys (deprecated),
3. the defaults baked in below.

Directive values are never concatenated across sources: a directive set by a
higher-precedence source replaces the lower one entirely.
"""

from __future__ import annotations

import dataclasses
import types
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from csp_guard.diagnostics import Diagnostics
from csp_guard.middleware.csp_builder import (
    CSP_NONE,
    CSP_SELF,
    CSP_UNSAFE_INLINE,
    SINGLE_VALUE_DIRECTIVES,
    Policy,
    append_source_list,
    parse_policy_string,
)

CSP_HEADER = "Content-Security-Policy"
CSP_HEADER_REPORT_ONLY = "Content-Security-Policy-Report-Only"

DELIVERY_HEADER = "header"
DELIVERY_META = "meta"
VALID_DELIVERY = frozenset({DELIVERY_HEADER, DELIVERY_META})

STATIC_TEST_NONCE = "abcdefg"

DEFAULT_POLICY: types.MappingProxyType = types.MappingProxyType({
    "default-src": (CSP_NONE,),
    "script-src": (CSP_SELF,),
    "font-src": (CSP_SELF,),
    "connect-src": (CSP_SELF,),
    "img-src": (CSP_SELF,),
    "style-src": (CSP_SELF,),
    "media-src": (CSP_SELF,),
})

# Accepted spellings for the top-level settings
_SETTING_KEYS = {
    "enabled": "enabled",
    "report_only": "report_only",
    "reportOnly": "report_only",
    "fail_tests": "fail_tests",
    "failTests": "fail_tests",
    "delivery": "delivery",
    "policy": "policy",
}

_LEGACY_KEYS = {
    "content_security_policy": "policy",
    "contentSecurityPolicy": "policy",
    "content_security_policy_meta": "meta",
    "contentSecurityPolicyMeta": "meta",
    "content_security_policy_header": "header",
    "contentSecurityPolicyHeader": "header",
}


def _copy_policy(policy: Mapping[str, Any]) -> Policy:
    return {
        directive: list(value) if isinstance(value, (list, tuple)) else value
        for directive, value in policy.items()
    }


@dataclass(frozen=True)
class ResolvedConfig:
    """Effective settings and policy for one environment."""

    environment: str
    enabled: bool = True
    report_only: bool = False
    delivery: frozenset[str] = frozenset({DELIVERY_HEADER})
    fail_tests: bool = True
    policy: Policy = field(default_factory=dict)

    @property
    def header_name(self) -> str:
        return CSP_HEADER_REPORT_ONLY if self.report_only else CSP_HEADER

    def delivers(self, mode: str) -> bool:
        return mode in self.delivery

    def copy_policy(self) -> Policy:
        """Return a deep copy of the policy, safe to mutate."""
        return _copy_policy(self.policy)

    def with_policy(self, policy: Policy) -> ResolvedConfig:
        return dataclasses.replace(self, policy=policy)


def _normalize_value(directive: str, value: Any, diagnostics: Diagnostics, source: str) -> tuple[bool, Any]:
    """Return ``(ok, normalized)`` for a single directive value."""
    if value is None or value is False:
        return True, None
    if value is True:
        return True, True
    if isinstance(value, str):
        if directive in SINGLE_VALUE_DIRECTIVES:
            return True, value.strip()
        value = value.split()
    if isinstance(value, (list, tuple)):
        sources: Policy = {}
        for item in value:
            if not isinstance(item, str) or not item.strip():
                diagnostics.warn(
                    "csp_source_ignored", source=source, directive=directive, value=repr(item),
                )
                continue
            append_source_list(sources, directive, item.strip())
        return True, sources.get(directive, [])
    diagnostics.warn(
        "csp_directive_value_invalid",
        source=source,
        directive=directive,
        value_type=type(value).__name__,
    )
    return False, None


def _normalize_policy(raw: Any, diagnostics: Diagnostics, source: str) -> dict[str, Any]:
    """Turn a policy mapping or CSP string into ``{directive: value}``.

    ``None`` values are kept as removal markers.
    """
    if isinstance(raw, str):
        return dict(parse_policy_string(raw))
    if not isinstance(raw, Mapping):
        diagnostics.warn("csp_policy_invalid", source=source, value_type=type(raw).__name__)
        return {}

    normalized: dict[str, Any] = {}
    for name, value in raw.items():
        if not isinstance(name, str) or not name.strip():
            diagnostics.warn("csp_directive_name_invalid", source=source, directive=repr(name))
            continue
        directive = name.strip().lower()
        ok, value = _normalize_value(directive, value, diagnostics, source)
        if ok:
            normalized[directive] = value
    return normalized


def _apply_policy(policy: Policy, overrides: Mapping[str, Any]) -> None:
    for directive, value in overrides.items():
        if value is None:
            policy.pop(directive, None)
        else:
            policy[directive] = value


def _as_mapping(value: Any, source: str, diagnostics: Diagnostics) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        diagnostics.warn("csp_config_invalid", source=source, value_type=type(value).__name__)
        return {}
    return value


def _coerce_bool(value: Any, key: str, default: bool, diagnostics: Diagnostics) -> bool:
    if isinstance(value, bool):
        return value
    diagnostics.warn("csp_setting_not_boolean", key=key, value=repr(value), default=default)
    return default


def _coerce_delivery(value: Any, default: frozenset[str], diagnostics: Diagnostics) -> frozenset[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        diagnostics.warn("csp_delivery_invalid", value=repr(value), default=sorted(default))
        return default

    modes = set()
    for mode in value:
        normalized = mode.strip().lower() if isinstance(mode, str) else None
        if normalized in VALID_DELIVERY:
            modes.add(normalized)
        else:
            diagnostics.warn("csp_delivery_unknown", mode=repr(mode))
    if not modes:
        diagnostics.warn("csp_delivery_empty", default=sorted(default))
        return default
    return frozenset(modes)


def calculate_config(
    environment: str,
    own_config: Mapping[str, Any] | None,
    run_config: Mapping[str, Any] | None,
    diagnostics: Diagnostics,
) -> ResolvedConfig:
    """Merge defaults, legacy and own configuration into a ResolvedConfig.

    Never raises. Malformed input is reported through ``diagnostics`` and
    falls back to the defaults. Inputs are not mutated.
    """
    own = _as_mapping(own_config, "own", diagnostics)
    run = _as_mapping(run_config, "legacy", diagnostics)

    enabled = True
    report_only = False
    fail_tests = True
    delivery = frozenset({DELIVERY_HEADER})
    policy = _copy_policy(DEFAULT_POLICY)

    # Legacy inline configuration
    legacy: dict[str, Any] = {}
    for key, target in _LEGACY_KEYS.items():
        if key in run:
            diagnostics.warn(
                "csp_legacy_config_deprecated",
                key=key,
                hint="move the setting to config/content-security-policy.yaml",
            )
            legacy[target] = run[key]
    if "policy" in legacy:
        _apply_policy(policy, _normalize_policy(legacy["policy"], diagnostics, "legacy"))
    if legacy.get("meta"):
        delivery = frozenset({DELIVERY_META})
    if "header" in legacy:
        report_only = str(legacy["header"]).strip().lower() != CSP_HEADER.lower()

    # Own configuration
    for key, value in own.items():
        setting = _SETTING_KEYS.get(key)
        if setting is None:
            diagnostics.warn("csp_config_key_unknown", key=repr(key))
        elif setting == "enabled":
            enabled = _coerce_bool(value, key, enabled, diagnostics)
        elif setting == "report_only":
            report_only = _coerce_bool(value, key, report_only, diagnostics)
        elif setting == "fail_tests":
            fail_tests = _coerce_bool(value, key, fail_tests, diagnostics)
        elif setting == "delivery":
            delivery = _coerce_delivery(value, delivery, diagnostics)
        elif setting == "policy":
            _apply_policy(policy, _normalize_policy(value, diagnostics, "own"))

    return ResolvedConfig(
        environment=environment,
        enabled=enabled,
        report_only=report_only,
        delivery=delivery,
        fail_tests=fail_tests,
        policy=policy,
    )


def derive_test_config(config: ResolvedConfig) -> ResolvedConfig:
    """Apply the test-run requirements to a resolved configuration.

    Adds the static test nonce to ``script-src`` unless ``'unsafe-inline'`` is
    allowed (browsers ignore ``'unsafe-inline'`` once a nonce is present), and
    allows ``frame-src 'self'`` for the test runner.
    """
    policy = config.copy_policy()
    script_src = policy.get("script-src")
    if not (isinstance(script_src, list) and CSP_UNSAFE_INLINE in script_src):
        append_source_list(policy, "script-src", f"'nonce-{STATIC_TEST_NONCE}'")
    policy["frame-src"] = [CSP_SELF]
    return config.with_policy(policy)
