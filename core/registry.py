from __future__ import annotations

import importlib
from collections.abc import MutableMapping
from typing import TypeVar

T = TypeVar("T")


def register_named(registry: MutableMapping[str, T], name: str):
    """Decorator to register a factory under a string key."""

    def decorator(obj: T) -> T:
        if name in registry and registry[name] is not obj:
            raise ValueError(f"duplicate registration for '{name}'")
        registry[name] = obj
        return obj

    return decorator


def resolve_registered(
    registry: MutableMapping[str, T],
    name: str,
    *,
    package: str,
    unknown_label: str,
    aliases: dict[str, str] | None = None,
) -> T:
    """Resolve a registry entry, importing `<package>.<module>` on first use.

    `aliases` maps a registered name onto the module that defines it when the two
    differ (e.g. segmenter "mediapipe" living in `segment.selfie`).
    """
    module_name = (aliases or {}).get(name, name)
    import_err: Exception | None = None
    if name not in registry:
        try:
            importlib.import_module(f"{package}.{module_name}")
        except ImportError as e:
            import_err = e
    if name not in registry:
        hint = f" (import failed: {import_err})" if import_err else ""
        raise ValueError(
            f"Unknown {unknown_label} '{name}'. "
            f"Available: {', '.join(sorted(registry.keys())) or 'none'}{hint}"
        )
    return registry[name]


__all__ = ["register_named", "resolve_registered"]
