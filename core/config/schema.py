"""Typed config schema blocks shared by loader/validator/runtime."""

from dataclasses import dataclass, field
from typing import Any, Dict, List


class ConfigError(Exception):
    pass


def _default_distance_table() -> List[List[float]]:
    return [[0.25, 0.5], [0.15, 0.8], [0.08, 1.2], [0.04, 1.8], [0.01, 2.2]]


@dataclass
class RuntimeConfig:
    save_dir: str = "data"
    max_runtime_s: float = 0.0
    frame_queue_capacity: int = 2
    log_level: str = "info"


@dataclass
class CameraConfigBlock:
    type: str = "usb"
    device_index: int = 0
    backend: str = "any"
    grab_timeout_ms: int = 2000
    max_retry_per_frame: int = 3
    width: int = 1280
    height: int = 1024
    fps: float = 30.0
    mirror: bool = False
    image_dir: str = ""
    order: str = "name_asc"
    end_mode: str = "loop"


@dataclass
class SegmentConfigBlock:
    impl: str = "mediapipe"
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BoothConfigBlock:
    min_distance_m: float = 1.5
    max_distance_m: float = 2.0
    smoothing_alpha: float = 0.3
    mask_threshold: int = 200
    no_subject_distance_m: float = 2.5
    distance_table: List[List[float]] = field(default_factory=_default_distance_table)
    stillness_ms: float = 2000.0
    motion_threshold: float = 0.02
    motion_pixel_delta: int = 30
    countdown_length: int = 3
    countdown_interval_ms: float = 1000.0
    cooldown_ms: float = 3000.0
    manual_capture_mode: str = "direct"


@dataclass
class CanvasConfigBlock:
    width: int = 1280
    height: int = 1024
    blur_sigma: float = 8.0
    background_scale: float = 0.8
    letterbox_color: List[int] = field(default_factory=lambda: [0, 0, 0])
    dim_alpha: float = 0.5
    backdrop_alpha: float = 0.6


@dataclass
class ViewportConfigBlock:
    x: int = 189
    y: int = 328
    width: int = 262
    height: int = 368


@dataclass
class BackgroundsConfigBlock:
    root_dir: str = "assets/backgrounds"
    initial: str = "none"
    include_blur: bool = True
    items: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class TriggerTcpConfigBlock:
    enabled: bool = False
    word: str = "TRIG"


@dataclass
class TriggerConfigBlock:
    debounce_ms: float = 200.0
    ip_whitelist: List[str] = field(default_factory=list)
    tcp: TriggerTcpConfigBlock = field(default_factory=TriggerTcpConfigBlock)


@dataclass
class CommTcpConfigBlock:
    host: str = "0.0.0.0"
    port: int = 9000


@dataclass
class CommHttpConfigBlock:
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass
class CommConfigBlock:
    tcp: CommTcpConfigBlock = field(default_factory=CommTcpConfigBlock)
    http: CommHttpConfigBlock = field(default_factory=CommHttpConfigBlock)


@dataclass
class OutputHmiConfigBlock:
    enabled: bool = True
    history_size: int = 10
    preview_quality: int = 80


@dataclass
class OutputExportConfigBlock:
    enabled: bool = True
    subdir: str = "photos"
    ext: str = ".png"


@dataclass
class OutputWindowConfigBlock:
    enabled: bool = False
    title: str = "SnapBooth"
    poll_ms: int = 10


@dataclass
class OutputConfigBlock:
    hmi: OutputHmiConfigBlock = field(default_factory=OutputHmiConfigBlock)
    export: OutputExportConfigBlock = field(default_factory=OutputExportConfigBlock)
    window: OutputWindowConfigBlock = field(default_factory=OutputWindowConfigBlock)
    write_csv: bool = True


@dataclass
class LoadedConfig:
    imports: List[str]
    runtime: RuntimeConfig
    camera: CameraConfigBlock
    segment: SegmentConfigBlock
    booth: BoothConfigBlock
    canvas: CanvasConfigBlock
    viewport: ViewportConfigBlock
    backgrounds: BackgroundsConfigBlock
    trigger: TriggerConfigBlock
    comm: CommConfigBlock
    output: OutputConfigBlock
    paths: Dict[str, str] = field(default_factory=dict)


__all__ = [
    "ConfigError",
    "RuntimeConfig",
    "CameraConfigBlock",
    "SegmentConfigBlock",
    "BoothConfigBlock",
    "CanvasConfigBlock",
    "ViewportConfigBlock",
    "BackgroundsConfigBlock",
    "TriggerConfigBlock",
    "TriggerTcpConfigBlock",
    "CommConfigBlock",
    "CommHttpConfigBlock",
    "CommTcpConfigBlock",
    "OutputHmiConfigBlock",
    "OutputExportConfigBlock",
    "OutputWindowConfigBlock",
    "OutputConfigBlock",
    "LoadedConfig",
]
