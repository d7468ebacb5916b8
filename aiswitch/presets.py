"""Preset handling: apply a provider's active overrides to outbound bodies.

A preset is a flat mapping of request fields. Applying it replaces each named
top-level field of the outbound body wholesale (nested objects included);
fields the preset does not name are left untouched.
"""

from typing import Any, Dict, Optional

from aiswitch.config import Preset, ProviderProfile


def active_preset(profile: ProviderProfile) -> Optional[Preset]:
    """Return the profile's active preset, or None if unset or dangling."""
    if profile.active_preset_id is None:
        return None
    return profile.find_preset(profile.active_preset_id)


def apply_preset(profile: ProviderProfile, body: Dict[str, Any]) -> Dict[str, Any]:
    """Overwrite top-level fields of ``body`` with the active preset's overrides.

    The body is modified in place and returned. Applying the same preset
    twice gives the same result as applying it once.
    """
    preset = active_preset(profile)
    if preset is None or not isinstance(body, dict):
        return body
    if not isinstance(preset.overrides, dict):
        return body
    for key, value in preset.overrides.items():
        body[key] = value
    return body


def force_include_usage(body: Dict[str, Any]) -> Dict[str, Any]:
    """Ask the provider to report usage in the final streamed chunk."""
    options = body.get("stream_options")
    if not isinstance(options, dict):
        options = {}
    else:
        options = dict(options)
    options["include_usage"] = True
    body["stream_options"] = options
    return body


def pinned_model(profile: ProviderProfile) -> Optional[str]:
    """Return the model the active preset forces, if any."""
    preset = active_preset(profile)
    if preset is None:
        return None
    model = preset.overrides.get("model")
    return model if isinstance(model, str) else None
