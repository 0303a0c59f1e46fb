"""Meta-tag delivery and test-page markup for the HTML template slots."""

from __future__ import annotations

import html
import re

from csp_guard.config.policy_config import CSP_HEADER, DELIVERY_META, STATIC_TEST_NONCE
from csp_guard.diagnostics import Diagnostics
from csp_guard.middleware.csp_builder import CSP_FRAME_ANCESTORS, CSP_REPORT_URI, CSP_SANDBOX, Policy
from csp_guard.snapshot import DeliverySnapshot

SLOT_HEAD = "head"
SLOT_TEST_HEAD = "test-head"
SLOT_TEST_BODY = "test-body"
SLOT_TEST_BODY_FOOTER = "test-body-footer"

# Ignored by browsers when delivered through <meta>
META_UNSUPPORTED_DIRECTIVES = (CSP_REPORT_URI, CSP_FRAME_ANCESTORS, CSP_SANDBOX)

TEST_HEAD_PLACEHOLDER = '{{content-for "test-head"}}'

_SLOT_PLACEHOLDER = re.compile(r'\{\{content-for\s+"([\w-]+)"\}\}')

# Inline script the build inserts to assert the test bundle was loaded
_TESTS_LOADED_SCRIPT = re.compile(r"<script>\s*Ember\.assert\(.*EmberENV\.TESTS_FILE_LOADED\);\s*</script>")

_VIOLATION_LISTENER = f"""
<script nonce="{STATIC_TEST_NONCE}">
  document.addEventListener('securitypolicyviolation', function(event) {{
    throw new Error(
      'Content-Security-Policy violation detected: ' +
      'Violated directive: ' + event.violatedDirective + '. ' +
      'Blocked URI: ' + event.blockedURI
    );
  }});
</script>
"""


def unsupported_directives(policy: Policy) -> list[str]:
    return [name for name in META_UNSUPPORTED_DIRECTIVES if name in policy]


def is_index_html_for_testing(existing_content: list[str] | None) -> bool:
    return any(TEST_HEAD_PLACEHOLDER in entry for entry in existing_content or ())


def build_meta_tag(policy_string: str) -> str:
    content = html.escape(policy_string, quote=False).replace('"', "&quot;")
    return f'<meta http-equiv="{CSP_HEADER}" content="{content}">'


def _add_test_nonce(match: re.Match[str]) -> str:
    return match.group(0).replace("<script>", f'<script nonce="{STATIC_TEST_NONCE}">', 1)


def nonce_tests_loaded_script(entries: list[str]) -> list[str]:
    """Add the static test nonce to the test-file-loaded assertion script.

    Other inline scripts are left alone so their violations still fail tests.
    """
    return [_TESTS_LOADED_SCRIPT.sub(_add_test_nonce, entry) for entry in entries]


def content_for(
    slot: str,
    snapshot: DeliverySnapshot,
    existing_content: list[str] | None,
    diagnostics: Diagnostics,
) -> str | None:
    """Return the markup for an HTML template slot, or None.

    ``test-body-footer`` rewrites ``existing_content`` in place and returns None.
    """
    config = snapshot.config
    if not config.enabled:
        return None

    if (slot == SLOT_HEAD and config.delivers(DELIVERY_META)) or slot == SLOT_TEST_HEAD:
        # tests/index.html gets the tag from its test-head slot
        if slot == SLOT_HEAD and is_index_html_for_testing(existing_content):
            return None

        variant = snapshot.main
        if slot == SLOT_TEST_HEAD and snapshot.test is not None:
            variant = snapshot.test

        if config.report_only and config.delivers(DELIVERY_META):
            diagnostics.warn(
                "csp_meta_report_only_unsupported",
                hint="set report_only to false or remove 'meta' from delivery "
                     "in config/content-security-policy.yaml",
            )
        for name in unsupported_directives(variant.config.policy):
            diagnostics.warn("csp_meta_directive_unsupported", directive=name)

        return build_meta_tag(variant.policy_string)

    if slot == SLOT_TEST_BODY and config.fail_tests:
        return _VIOLATION_LISTENER

    if slot == SLOT_TEST_BODY_FOOTER and existing_content:
        existing_content[:] = nonce_tests_loaded_script(existing_content)

    return None


def render_slots(document: str, snapshot: DeliverySnapshot, diagnostics: Diagnostics) -> str:
    """Fill the ``{{content-for "..."}}`` placeholders of an HTML document.

    Slots without markup, including ones this package does not own, render
    empty.
    """
    if '{{content-for "test-body-footer"}}' in document:
        entries = [document]
        content_for(SLOT_TEST_BODY_FOOTER, snapshot, entries, diagnostics)
        document = entries[0]

    def fill(match: re.Match[str]) -> str:
        return content_for(match.group(1), snapshot, [document], diagnostics) or ""

    return _SLOT_PLACEHOLDER.sub(fill, document)
