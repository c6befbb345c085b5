import logging
from typing import Any, Callable, Dict, Protocol

import numpy as np

from core.registry import register_named, resolve_registered

L = logging.getLogger("snapbooth.segment")


class Segmenter(Protocol):
    def segment(self, img: np.ndarray) -> np.ndarray:
        """Return a (H, W) person-confidence mask for a BGR frame (float 0..1 or uint8)."""
        ...

    def close(self) -> None: ...


_registry: Dict[str, Callable[..., Segmenter]] = {}
_MODULE_ALIASES = {"mediapipe": "selfie"}


def register_segmenter(name: str):
    return register_named(_registry, name)


def create_segmenter(name: str, params: dict[str, Any] | None = None) -> Segmenter:
    # Lazy import: mediapipe stays optional unless a config selects it.
    factory = resolve_registered(
        _registry,
        name,
        package=__package__ or "segment",
        unknown_label="segmenter impl",
        aliases=_MODULE_ALIASES,
    )
    return factory(dict(params or {}))


def create_segmenter_from_loaded_config(cfg) -> Segmenter:
    return create_segmenter(str(cfg.segment.impl).strip(), cfg.segment.params or {})


def pop_param(params: dict[str, Any], key: str, default, cast):
    """Pop a typed parameter; leftovers are reported by `reject_unknown`."""
    if key not in params:
        return default
    try:
        return cast(params.pop(key))
    except (TypeError, ValueError) as e:
        raise ValueError(f"segment.params.{key}: {e}") from None


def reject_unknown(impl: str, params: dict[str, Any]):
    if params:
        raise ValueError(
            f"Unknown segment.params for {impl}: {', '.join(sorted(params))}"
        )


__all__ = [
    "Segmenter",
    "create_segmenter",
    "create_segmenter_from_loaded_config",
    "pop_param",
    "register_segmenter",
    "reject_unknown",
]
