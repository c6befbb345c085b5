"""Background catalogue: built-in `none` / `blur` plus configured image assets."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Iterable

import cv2
import numpy as np

from core.compositor import (
    BACKGROUND_BLUR,
    BACKGROUND_IMAGE,
    BACKGROUND_NONE,
    ResolvedBackground,
    to_bgr,
)
from utils.image import imread_any

L = logging.getLogger("snapbooth.backgrounds")


@dataclass(frozen=True)
class BackgroundAsset:
    id: str
    path: str
    name: str = ""


class BackgroundCatalog:
    def __init__(
        self,
        assets: Iterable[BackgroundAsset] = (),
        *,
        root_dir: str = "",
        include_blur: bool = True,
    ):
        self.root_dir = root_dir
        self.include_blur = bool(include_blur)
        self._assets: dict[str, BackgroundAsset] = {}
        for asset in assets:
            if asset.id in (BACKGROUND_NONE, BACKGROUND_BLUR):
                raise ValueError(f"background id '{asset.id}' is reserved")
            if asset.id in self._assets:
                raise ValueError(f"duplicate background id '{asset.id}'")
            self._assets[asset.id] = asset
        self._cache: dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    @property
    def ids(self) -> list[str]:
        builtin = [BACKGROUND_NONE] + ([BACKGROUND_BLUR] if self.include_blur else [])
        return builtin + list(self._assets)

    def describe(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = [{"id": BACKGROUND_NONE, "name": "None"}]
        if self.include_blur:
            out.append({"id": BACKGROUND_BLUR, "name": "Blur"})
        out.extend({"id": a.id, "name": a.name or a.id} for a in self._assets.values())
        return out

    def next_id(self, current_id: str) -> str:
        ids = self.ids
        try:
            idx = ids.index(current_id)
        except ValueError:
            return ids[0]
        return ids[(idx + 1) % len(ids)]

    def resolve(self, background_id: str) -> ResolvedBackground:
        bg_id = str(background_id or BACKGROUND_NONE)
        if bg_id == BACKGROUND_NONE:
            return ResolvedBackground()
        if bg_id == BACKGROUND_BLUR and self.include_blur:
            return ResolvedBackground(kind=BACKGROUND_BLUR, background_id=bg_id)
        asset = self._assets.get(bg_id)
        if asset is None:
            L.warning("Background '%s' not found in catalogue; using none", bg_id)
            return ResolvedBackground()
        image = self._load(asset)
        if image is None:
            return ResolvedBackground()
        return ResolvedBackground(kind=BACKGROUND_IMAGE, image=image, background_id=bg_id)

    def asset_path(self, asset: BackgroundAsset) -> str:
        if os.path.isabs(asset.path) or not self.root_dir:
            return asset.path
        return os.path.join(self.root_dir, asset.path)

    def _load(self, asset: BackgroundAsset) -> np.ndarray | None:
        with self._lock:
            cached = self._cache.get(asset.id)
        if cached is not None:
            return cached
        path = self.asset_path(asset)
        img = imread_any(path, cv2.IMREAD_COLOR)
        if img is None or img.size == 0:
            L.warning("Failed to load background '%s' from %s; using none", asset.id, path)
            return None
        img = np.ascontiguousarray(to_bgr(img.astype(np.uint8, copy=False)))
        L.info("Background '%s' loaded %dx%d", asset.id, img.shape[1], img.shape[0])
        with self._lock:
            self._cache[asset.id] = img
        return img


def build_background_catalog_from_loaded_config(cfg) -> BackgroundCatalog:
    block = cfg.backgrounds
    assets = [
        BackgroundAsset(
            id=str(item["id"]).strip(),
            path=str(item["path"]),
            name=str(item.get("name") or ""),
        )
        for item in block.items or []
    ]
    return BackgroundCatalog(
        assets, root_dir=str(block.root_dir or ""), include_blur=bool(block.include_blur)
    )


__all__ = [
    "BackgroundAsset",
    "BackgroundCatalog",
    "build_background_catalog_from_loaded_config",
]
