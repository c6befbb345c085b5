from .base import (
    CameraConfig,
    CaptureResult,
    build_camera_config,
    BaseCamera,
    register_camera,
    create_camera,
    create_camera_from_loaded_config,
    warn_if_below_minimum,
)

__all__ = [
    "CameraConfig",
    "CaptureResult",
    "build_camera_config",
    "BaseCamera",
    "register_camera",
    "create_camera",
    "create_camera_from_loaded_config",
    "warn_if_below_minimum",
]
