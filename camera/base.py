# -- coding: utf-8 --

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Type

from core.contracts import CaptureResult
from core.registry import register_named, resolve_registered

L = logging.getLogger("snapbooth.camera")

CameraFactory = Dict[str, Type["BaseCamera"]]
_registry: CameraFactory = {}

# Below this the segmentation mask gets too coarse for the distance buckets.
MIN_WIDTH = 640
MIN_HEIGHT = 480


@dataclass
class CameraConfig:
    device_index: int = 0
    backend: str = "any"
    timeout_ms: int = 2000
    max_retry_per_frame: int = 3
    width: int = 1280
    height: int = 1024
    fps: float = 30.0
    mirror: bool = False
    image_dir: str = ""
    order: str = "name_asc"
    end_mode: str = "loop"


def build_camera_config(cfg_block) -> CameraConfig:
    return CameraConfig(
        device_index=int(cfg_block.device_index),
        backend=str(cfg_block.backend or "any").strip().lower(),
        timeout_ms=int(cfg_block.grab_timeout_ms),
        max_retry_per_frame=int(cfg_block.max_retry_per_frame),
        width=int(cfg_block.width),
        height=int(cfg_block.height),
        fps=float(cfg_block.fps),
        mirror=bool(cfg_block.mirror),
        image_dir=str(cfg_block.image_dir),
        order=str(cfg_block.order),
        end_mode=str(cfg_block.end_mode),
    )


def warn_if_below_minimum(width: int, height: int, *, device: str) -> bool:
    """Log a warning when the delivered resolution is below 640x480."""
    if width < MIN_WIDTH or height < MIN_HEIGHT:
        L.warning(
            "Camera %s delivers %dx%d, below the %dx%d minimum; distance estimates degrade",
            device,
            width,
            height,
            MIN_WIDTH,
            MIN_HEIGHT,
        )
        return True
    return False


class BaseCamera(ABC):
    def __init__(self, cfg: CameraConfig):
        self.cfg = cfg
        self.lock = threading.Lock()

    @abstractmethod
    def capture_once(self, idx, triggered_at: datetime | None = None) -> CaptureResult:
        """Grab one frame, returning CaptureResult."""

    @contextmanager
    @abstractmethod
    def session(self):
        """Manage camera lifecycle."""
        yield


def register_camera(name: str):
    return register_named(_registry, name)


def create_camera(name: str, cfg: CameraConfig) -> BaseCamera:
    cls = resolve_registered(
        _registry,
        name,
        package=__package__ or "camera",
        unknown_label="camera type",
    )
    return cls(cfg)


def create_camera_from_loaded_config(cfg) -> BaseCamera:
    return create_camera(cfg.camera.type, build_camera_config(cfg.camera))


__all__ = [
    "CameraConfig",
    "CaptureResult",
    "MIN_HEIGHT",
    "MIN_WIDTH",
    "build_camera_config",
    "BaseCamera",
    "register_camera",
    "create_camera",
    "create_camera_from_loaded_config",
    "warn_if_below_minimum",
]
