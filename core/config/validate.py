"""Runtime config value validation."""

from __future__ import annotations

from typing import Any

from .schema import ConfigError, LoadedConfig

_RESERVED_BACKGROUND_IDS = {"none", "blur"}
_MANUAL_CAPTURE_MODES = {"direct", "countdown"}
_CAMERA_BACKENDS = {"any", "dshow", "msmf", "v4l2", "avfoundation", "gstreamer"}


def validate_config(cfg: LoadedConfig) -> None:
    # runtime
    _require_int(
        "runtime.frame_queue_capacity", cfg.runtime.frame_queue_capacity, min_v=1
    )
    _require_float("runtime.max_runtime_s", cfg.runtime.max_runtime_s, min_v=0.0)
    _require_int("output.hmi.history_size", cfg.output.hmi.history_size, min_v=1)
    _require_int(
        "output.hmi.preview_quality", cfg.output.hmi.preview_quality, min_v=1, max_v=100
    )
    if not str(cfg.output.export.ext or "").strip():
        raise ConfigError("output.export.ext must not be empty")
    _require_int("output.window.poll_ms", cfg.output.window.poll_ms, min_v=1, max_v=1000)
    for name, value in (
        ("output.write_csv", cfg.output.write_csv),
        ("output.hmi.enabled", cfg.output.hmi.enabled),
        ("output.export.enabled", cfg.output.export.enabled),
        ("output.window.enabled", cfg.output.window.enabled),
        ("trigger.tcp.enabled", cfg.trigger.tcp.enabled),
        ("backgrounds.include_blur", cfg.backgrounds.include_blur),
        ("camera.mirror", cfg.camera.mirror),
    ):
        _require_bool(name, value)

    # camera
    _require_int("camera.device_index", cfg.camera.device_index, min_v=0)
    _require_int("camera.grab_timeout_ms", cfg.camera.grab_timeout_ms, min_v=1)
    _require_int("camera.max_retry_per_frame", cfg.camera.max_retry_per_frame, min_v=1)
    _require_int("camera.width", cfg.camera.width, min_v=0)
    _require_int("camera.height", cfg.camera.height, min_v=0)
    _require_float("camera.fps", cfg.camera.fps, min_v=1.0, max_v=240.0)
    _require_choice("camera.backend", cfg.camera.backend, _CAMERA_BACKENDS)

    # segment
    if not str(cfg.segment.impl or "").strip():
        raise ConfigError("segment.impl must not be empty")

    # booth
    booth = cfg.booth
    min_d = _require_float("booth.min_distance_m", booth.min_distance_m, min_v=0.0)
    max_d = _require_float("booth.max_distance_m", booth.max_distance_m, min_v=0.0)
    if min_d <= 0 or max_d <= 0:
        raise ConfigError("booth distance bounds must be > 0")
    if min_d > max_d:
        raise ConfigError("booth.min_distance_m must be <= booth.max_distance_m")
    alpha = _require_float("booth.smoothing_alpha", booth.smoothing_alpha, max_v=1.0)
    if alpha <= 0:
        raise ConfigError("booth.smoothing_alpha must be in (0, 1]")
    _require_int("booth.mask_threshold", booth.mask_threshold, min_v=0, max_v=255)
    if _require_float("booth.no_subject_distance_m", booth.no_subject_distance_m) <= 0:
        raise ConfigError("booth.no_subject_distance_m must be > 0")
    _require_distance_table("booth.distance_table", booth.distance_table)
    if _require_float("booth.stillness_ms", booth.stillness_ms) <= 0:
        raise ConfigError("booth.stillness_ms must be > 0")
    motion_thr = _require_float("booth.motion_threshold", booth.motion_threshold, max_v=1.0)
    if motion_thr <= 0:
        raise ConfigError("booth.motion_threshold must be in (0, 1]")
    _require_int(
        "booth.motion_pixel_delta", booth.motion_pixel_delta, min_v=0, max_v=255
    )
    _require_int("booth.countdown_length", booth.countdown_length, min_v=1)
    if _require_float("booth.countdown_interval_ms", booth.countdown_interval_ms) <= 0:
        raise ConfigError("booth.countdown_interval_ms must be > 0")
    _require_float("booth.cooldown_ms", booth.cooldown_ms, min_v=0.0)
    _require_choice(
        "booth.manual_capture_mode", booth.manual_capture_mode, _MANUAL_CAPTURE_MODES
    )

    # canvas / viewport
    canvas_w = _require_int("canvas.width", cfg.canvas.width, min_v=1)
    canvas_h = _require_int("canvas.height", cfg.canvas.height, min_v=1)
    if _require_float("canvas.blur_sigma", cfg.canvas.blur_sigma) <= 0:
        raise ConfigError("canvas.blur_sigma must be > 0")
    scale = _require_float("canvas.background_scale", cfg.canvas.background_scale, max_v=1.0)
    if scale <= 0:
        raise ConfigError("canvas.background_scale must be in (0, 1]")
    _require_float("canvas.dim_alpha", cfg.canvas.dim_alpha, min_v=0.0, max_v=1.0)
    _require_float("canvas.backdrop_alpha", cfg.canvas.backdrop_alpha, min_v=0.0, max_v=1.0)
    _require_color("canvas.letterbox_color", cfg.canvas.letterbox_color)

    vp = cfg.viewport
    vx = _require_int("viewport.x", vp.x, min_v=0)
    vy = _require_int("viewport.y", vp.y, min_v=0)
    vw = _require_int("viewport.width", vp.width, min_v=1)
    vh = _require_int("viewport.height", vp.height, min_v=1)
    if vx + vw > canvas_w or vy + vh > canvas_h:
        raise ConfigError(
            f"viewport ({vx},{vy},{vw}x{vh}) must lie inside canvas {canvas_w}x{canvas_h}"
        )

    # backgrounds
    _require_backgrounds(cfg)

    # trigger
    _require_float("trigger.debounce_ms", cfg.trigger.debounce_ms, min_v=0.0)
    _require_str_list("trigger.ip_whitelist", cfg.trigger.ip_whitelist)
    if cfg.trigger.tcp.enabled and not str(cfg.trigger.tcp.word or "").strip():
        raise ConfigError("trigger.tcp.word must not be empty")

    # comm
    _require_port("comm.http.port", cfg.comm.http.port)
    _require_port("comm.tcp.port", cfg.comm.tcp.port)


def _require_int(
    name: str, value: Any, *, min_v: int | None = None, max_v: int | None = None
) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer")
    try:
        iv = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer") from None
    if min_v is not None and iv < min_v:
        op = ">=" if min_v != 1 else ">"
        threshold = min_v if min_v != 1 else 0
        raise ConfigError(f"{name} must be {op} {threshold}")
    if max_v is not None and iv > max_v:
        raise ConfigError(f"{name} must be <= {max_v}")
    return iv


def _require_float(
    name: str, value: Any, *, min_v: float | None = None, max_v: float | None = None
) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number")
    try:
        fv = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number") from None
    if min_v is not None and fv < min_v:
        raise ConfigError(f"{name} must be >= {min_v:g}")
    if max_v is not None and fv > max_v:
        raise ConfigError(f"{name} must be <= {max_v:g}")
    return fv


def _require_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{name} must be true or false")
    return value


def _require_port(name: str, value: Any) -> int:
    return _require_int(name, value, min_v=1, max_v=65535)


def _require_choice(name: str, value: Any, choices: set[str]) -> str:
    sv = str(value or "").strip().lower()
    if sv not in choices:
        raise ConfigError(f"{name} must be one of {sorted(choices)}, got {value!r}")
    return sv


def _require_str_list(name: str, value: Any) -> list[str]:
    if not isinstance(value, list):
        raise ConfigError(f"{name} must be a list of strings")
    for i, item in enumerate(value):
        if not isinstance(item, str):
            raise ConfigError(f"{name}[{i}] must be a string")
    return value


def _require_color(name: str, value: Any) -> tuple[int, int, int]:
    if not isinstance(value, (list, tuple)) or len(value) != 3:
        raise ConfigError(f"{name} must be a [b, g, r] list")
    return tuple(
        _require_int(f"{name}[{i}]", c, min_v=0, max_v=255) for i, c in enumerate(value)
    )


def _require_distance_table(name: str, value: Any) -> list[tuple[float, float]]:
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{name} must be a non-empty list of [ratio, distance_m]")
    table = []
    last_ratio = None
    for i, row in enumerate(value):
        if not isinstance(row, (list, tuple)) or len(row) != 2:
            raise ConfigError(f"{name}[{i}] must be [ratio, distance_m]")
        ratio = _require_float(f"{name}[{i}][0]", row[0], min_v=0.0, max_v=1.0)
        dist = _require_float(f"{name}[{i}][1]", row[1])
        if dist <= 0:
            raise ConfigError(f"{name}[{i}][1] must be > 0")
        if last_ratio is not None and ratio >= last_ratio:
            raise ConfigError(f"{name} ratios must be strictly decreasing")
        last_ratio = ratio
        table.append((ratio, dist))
    return table


def _require_backgrounds(cfg: LoadedConfig) -> None:
    items = cfg.backgrounds.items
    if not isinstance(items, list):
        raise ConfigError("backgrounds.items must be a list")
    seen: set[str] = set()
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ConfigError(f"backgrounds.items[{i}] must be a mapping")
        unknown = set(item) - {"id", "path", "name"}
        if unknown:
            raise ConfigError(
                f"Unknown field backgrounds.items[{i}].{sorted(unknown)[0]}"
            )
        bg_id = str(item.get("id") or "").strip()
        if not bg_id:
            raise ConfigError(f"backgrounds.items[{i}].id is required")
        if bg_id in _RESERVED_BACKGROUND_IDS:
            raise ConfigError(f"backgrounds.items[{i}].id '{bg_id}' is reserved")
        if bg_id in seen:
            raise ConfigError(f"backgrounds.items[{i}].id '{bg_id}' is duplicated")
        if not str(item.get("path") or "").strip():
            raise ConfigError(f"backgrounds.items[{i}].path is required")
        seen.add(bg_id)
    initial = str(cfg.backgrounds.initial or "none").strip()
    known = seen | {"none"} | ({"blur"} if cfg.backgrounds.include_blur else set())
    if initial not in known:
        raise ConfigError(f"backgrounds.initial '{initial}' is not a known background")


__all__ = ["validate_config"]
