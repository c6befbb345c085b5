"""YAML loader: one ``main_*.yaml`` per config dir, unknown keys are errors."""

from __future__ import annotations

import glob
import importlib
import os
from typing import Any

import yaml

from .schema import (
    BackgroundsConfigBlock,
    BoothConfigBlock,
    CameraConfigBlock,
    CanvasConfigBlock,
    CommConfigBlock,
    CommHttpConfigBlock,
    CommTcpConfigBlock,
    ConfigError,
    LoadedConfig,
    OutputConfigBlock,
    OutputExportConfigBlock,
    OutputHmiConfigBlock,
    OutputWindowConfigBlock,
    RuntimeConfig,
    SegmentConfigBlock,
    TriggerConfigBlock,
    TriggerTcpConfigBlock,
    ViewportConfigBlock,
)

# Flat sections: every key maps straight onto a dataclass field.
_FLAT_SECTIONS = {
    "runtime": RuntimeConfig,
    "booth": BoothConfigBlock,
    "canvas": CanvasConfigBlock,
    "viewport": ViewportConfigBlock,
    "backgrounds": BackgroundsConfigBlock,
}

# Nested sections: (class, scalar keys, {sub-block key: class}).
_NESTED_SECTIONS = {
    "trigger": (
        TriggerConfigBlock,
        ("debounce_ms", "ip_whitelist"),
        {"tcp": TriggerTcpConfigBlock},
    ),
    "comm": (
        CommConfigBlock,
        (),
        {"tcp": CommTcpConfigBlock, "http": CommHttpConfigBlock},
    ),
    "output": (
        OutputConfigBlock,
        ("write_csv",),
        {
            "hmi": OutputHmiConfigBlock,
            "export": OutputExportConfigBlock,
            "window": OutputWindowConfigBlock,
        },
    ),
}

_ROOT_KEYS = {"imports", "camera", "segment"} | set(_FLAT_SECTIONS) | set(_NESTED_SECTIONS)


def load_config(config_dir: str = "config") -> LoadedConfig:
    main_path = _find_main_config(config_dir)
    data = _read_yaml(main_path)
    _reject_unknown(data, _ROOT_KEYS, "<root>", main_path)

    imports = data.get("imports") or []
    _import_modules(imports, main_path)

    sections: dict[str, Any] = {
        name: _build_dataclass(cls, data.get(name), main_path, section=name)
        for name, cls in _FLAT_SECTIONS.items()
    }
    for name, (cls, scalars, blocks) in _NESTED_SECTIONS.items():
        sections[name] = _build_nested(
            cls, data.get(name), main_path, section=name, scalars=scalars, blocks=blocks
        )
    sections["camera"] = _build_camera_config(data.get("camera"), main_path)
    sections["segment"] = _build_segment_config(data.get("segment"), main_path)
    return LoadedConfig(imports=imports, paths={"main": main_path}, **sections)


def _find_main_config(config_dir: str) -> str:
    candidates = sorted(
        glob.glob(os.path.join(config_dir, "main_*.yaml"))
        + glob.glob(os.path.join(config_dir, "main_*.yml"))
    )
    if not candidates:
        raise ConfigError(f"No main_*.yaml found under {config_dir}")
    if len(candidates) > 1:
        raise ConfigError(
            f"Expected exactly one main_*.yaml, found: {', '.join(candidates)}"
        )
    return candidates[0]


def _read_yaml(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"YAML root must be a mapping: {path}")
    return data


def _require_mapping(data: Any, section: str, main_path: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"'{section}' must be a mapping in {main_path}")
    return data


def _reject_unknown(
    data: dict[str, Any], allowed: Any, section: str, main_path: str
) -> None:
    for key in data:
        if key not in allowed:
            raise ConfigError(f"Unknown field {section}.{key} in {main_path}")


def _build_dataclass(cls, data: Any, main_path: str, section: str):
    data = _require_mapping(data, section, main_path)
    fields = cls.__dataclass_fields__
    _reject_unknown(data, fields, section, main_path)
    obj = cls()
    for k, v in data.items():
        setattr(obj, k, v)
    return obj


def _build_nested(
    cls,
    data: Any,
    main_path: str,
    *,
    section: str,
    scalars: tuple[str, ...],
    blocks: dict[str, Any],
):
    data = _require_mapping(data, section, main_path)
    _reject_unknown(data, set(scalars) | set(blocks), section, main_path)
    obj = cls()
    for key in scalars:
        if key in data:
            setattr(obj, key, data[key])
    for key, block_cls in blocks.items():
        if key in data:
            sub = f"{section}.{key}"
            setattr(obj, key, _build_dataclass(block_cls, data[key], main_path, section=sub))
    return obj


def _build_segment_config(data: Any, main_path: str) -> SegmentConfigBlock:
    cfg = _build_dataclass(SegmentConfigBlock, data, main_path, section="segment")
    if cfg.params is None:
        cfg.params = {}
    if not isinstance(cfg.params, dict):
        raise ConfigError(f"'segment.params' must be a mapping in {main_path}")
    return cfg


def _build_camera_config(data: Any, main_path: str) -> CameraConfigBlock:
    """Camera scalars live under ``common`` or the block named by ``type``.

    Blocks for other camera types may stay in the file and are ignored, so
    switching sources is a one-word edit.
    """
    data = _require_mapping(data, "camera", main_path)
    cfg = CameraConfigBlock()
    if "type" in data:
        cfg.type = str(data.get("type") or cfg.type)
    selected = str(cfg.type or "").strip()

    for key, value in data.items():
        if key == "type" or isinstance(value, dict):
            continue
        raise ConfigError(
            f"camera.{key} must be nested under camera.common or camera.{selected} in {main_path}"
        )

    fields = set(CameraConfigBlock.__dataclass_fields__) - {"type"}
    for block_key in ("common", selected):
        section = f"camera.{block_key}"
        block = _require_mapping(data.get(block_key), section, main_path)
        _reject_unknown(block, fields, section, main_path)
        for k, v in block.items():
            setattr(cfg, k, v)
    return cfg


def _import_modules(imports: Any, main_path: str):
    """Import plugin modules so their @register_* decorators run before lookup."""
    if not isinstance(imports, list):
        raise ConfigError(f"'imports' must be a list in {main_path}")
    for path in imports:
        if not isinstance(path, str) or not path:
            raise ConfigError(f"Invalid import path {path!r} in {main_path}")
        importlib.import_module(path)


__all__ = ["load_config"]
