"""
csp-guard - Content-Security-Policy composition and delivery
"""

from csp_guard.markup import content_for, render_slots
from csp_guard.middleware.csp_headers import apply_runtime_config, install_csp_delivery
from csp_guard.snapshot import DeliverySnapshot, PolicyBuilder, PolicyDelivery

__version__ = "0.1.0"

__all__ = [
    "DeliverySnapshot",
    "PolicyBuilder",
    "PolicyDelivery",
    "apply_runtime_config",
    "content_for",
    "install_csp_delivery",
    "render_slots",
]
