"""
Feature capabilities, resolved once when the process starts.

Optional subsystems are switched by ``settings.HMS_FEATURES`` rather than by
probing for their tables on every request.
"""

import logging

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.core.signals import setting_changed
from django.dispatch import receiver

logger = logging.getLogger(__name__)

KNOWN_FEATURES = {
    'lab_orders': True,
    'parse_plan_medications': True,
    'auto_invoice_on_prescription': False,
}

_resolved = None


def load_features():
    """Validate HMS_FEATURES against the known set and cache the result."""
    global _resolved
    configured = getattr(settings, 'HMS_FEATURES', {}) or {}

    unknown = sorted(set(configured) - set(KNOWN_FEATURES))
    if unknown:
        raise ImproperlyConfigured(f"Unknown HMS_FEATURES keys: {', '.join(unknown)}")

    resolved = dict(KNOWN_FEATURES)
    resolved.update({name: bool(value) for name, value in configured.items()})
    _resolved = resolved

    enabled = [name for name, value in resolved.items() if value]
    logger.info(f"HMS features enabled: {', '.join(enabled) or 'none'}")
    return resolved


def feature_enabled(name):
    if name not in KNOWN_FEATURES:
        raise KeyError(f"Unknown feature: {name}")
    if _resolved is None:
        load_features()
    return _resolved[name]


def reset_features():
    """Drop the cached capabilities (used when settings change in tests)."""
    global _resolved
    _resolved = None


@receiver(setting_changed)
def reset_on_settings_change(setting, **kwargs):
    if setting == 'HMS_FEATURES':
        reset_features()
