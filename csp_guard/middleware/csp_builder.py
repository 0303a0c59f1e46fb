"""Pure-function CSP (Content-Security-Policy) utilities."""

from __future__ import annotations

from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from csp_guard.diagnostics import Diagnostics

CSP_NONE = "'none'"
CSP_SELF = "'self'"
CSP_UNSAFE_INLINE = "'unsafe-inline'"

CSP_REPORT_URI = "report-uri"
CSP_FRAME_ANCESTORS = "frame-ancestors"
CSP_SANDBOX = "sandbox"

# Presence alone is significant
BOOLEAN_DIRECTIVES = frozenset({
    "upgrade-insecure-requests",
    "block-all-mixed-content",
})

# Value is a single token, not a source list
SINGLE_VALUE_DIRECTIVES = frozenset({
    CSP_REPORT_URI,
    "report-to",
})

DirectiveValue = Union[list[str], str, bool]
Policy = dict[str, DirectiveValue]


def append_source_list(policy: Policy, directive: str, value: str) -> None:
    """Add ``value`` to the source list of ``directive`` in place.

    Adding a value twice is a no-op. ``'none'`` is dropped as soon as any
    other source is added, and is never added next to other sources.
    """
    sources = policy.get(directive)
    if not isinstance(sources, list):
        if isinstance(sources, str) and sources.strip():
            sources = sources.split()
        else:
            sources = []
        policy[directive] = sources

    if value in sources:
        return
    if value == CSP_NONE:
        if not sources:
            sources.append(value)
        return
    while CSP_NONE in sources:
        sources.remove(CSP_NONE)
    sources.append(value)


def parse_policy_string(csp_string: str) -> Policy:
    """Parse a CSP string into a policy dict.

    Example:
        >>> parse_policy_string("default-src 'self'; upgrade-insecure-requests")
        {"default-src": ["'self'"], "upgrade-insecure-requests": True}
    """
    result: Policy = {}
    if not csp_string or not csp_string.strip():
        return result
    for part in csp_string.split(";"):
        tokens = part.split()
        if not tokens:
            continue
        directive = tokens[0].lower()
        # Browsers ignore repeated directives
        if directive in result:
            continue
        values = tokens[1:]
        if not values:
            result[directive] = True
        elif directive in SINGLE_VALUE_DIRECTIVES:
            result[directive] = " ".join(values)
        else:
            result[directive] = []
            for value in values:
                append_source_list(result, directive, value)
    return result


def build_policy_string(policy: Policy, diagnostics: Diagnostics | None = None) -> str:
    """Build a CSP string from a policy dict, in insertion order.

    Example:
        >>> build_policy_string({"default-src": ["'self'"], "script-src": ["'self'", "https:"]})
        "default-src 'self'; script-src 'self' https:"
    """
    parts = []
    for directive, value in policy.items():
        if value is True:
            parts.append(directive)
        elif value is False or value is None:
            continue
        elif isinstance(value, str):
            if value.strip():
                parts.append(f"{directive} {value.strip()}")
        elif isinstance(value, (list, tuple)):
            sources = [source for source in value if source]
            if sources:
                parts.append(f"{directive} {' '.join(sources)}")
        elif diagnostics is not None:
            diagnostics.warn(
                "csp_directive_value_unsupported",
                directive=directive,
                value_type=type(value).__name__,
            )
    return "; ".join(parts)
