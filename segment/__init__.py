from .base import (
    Segmenter,
    create_segmenter,
    create_segmenter_from_loaded_config,
    register_segmenter,
)

__all__ = [
    "Segmenter",
    "create_segmenter",
    "create_segmenter_from_loaded_config",
    "register_segmenter",
]
