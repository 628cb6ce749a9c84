from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import structlog

from .errors import InvalidInput
from .models import LimitPolicy

log = structlog.get_logger(__name__)

# Caller-facing override keys (request shape) -> policy field
OVERRIDE_KEYS: Dict[str, str] = {
    "cpu_ms": "cpu_ms",
    "cpuMs": "cpu_ms",
    "wall_ms": "wall_ms",
    "wallMs": "wall_ms",
    "memory_mb": "memory_mb",
    "memoryMb": "memory_mb",
}

_NUMERIC_FIELDS = ("cpu_ms", "wall_ms", "memory_mb", "max_output_bytes", "max_processes")


def _clamp(values: Dict[str, Any], ceilings: Mapping[str, Any], output_cap: int, language: str) -> Dict[str, Any]:
    out = dict(values)
    for name in _NUMERIC_FIELDS:
        ceiling = ceilings[name]
        if name == "max_output_bytes":
            ceiling = min(ceiling, output_cap)
        if out[name] > ceiling:
            log.warning("default_limit_clamped", language=language, field=name,
                        configured=out[name], ceiling=ceiling)
            out[name] = ceiling
    if out["network"] and not ceilings["network"]:
        log.warning("default_limit_clamped", language=language, field="network",
                    configured=True, ceiling=False)
        out["network"] = False
    return out


def resolve_policy(
    settings,
    language: str,
    adapter_defaults: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> LimitPolicy:
    """Resolve the LimitPolicy of one job.

    Layering: global defaults < adapter defaults < per-language config.
    Configured defaults are clamped to the hard ceilings; caller overrides
    above a ceiling are rejected with InvalidInput.
    """
    ceilings = settings.ceilings.model_dump()

    values: Dict[str, Any] = settings.default_limits.model_dump()
    values.update(adapter_defaults or {})
    values.update(settings.language_limits.get(language) or {})
    unknown = set(values) - set(ceilings)
    if unknown:
        raise InvalidInput(f"unknown limit field(s) for '{language}': {sorted(unknown)}")
    values = _clamp(values, ceilings, settings.output_cap_bytes, language)

    for key, raw in (overrides or {}).items():
        if raw is None:
            continue
        name = OVERRIDE_KEYS.get(key)
        if name is None:
            raise InvalidInput(f"unknown limit override '{key}'")
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise InvalidInput(f"limit override '{key}' must be an integer")
        if raw <= 0:
            raise InvalidInput(f"limit override '{key}' must be positive")
        if raw > ceilings[name]:
            raise InvalidInput(f"limit override '{key}'={raw} exceeds ceiling {ceilings[name]}")
        values[name] = raw

    return LimitPolicy(**values)
