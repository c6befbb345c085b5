"""Layered frame compositing: background plane, masked subject, countdown overlay."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np

from core.capture import CaptureState, CountingDown
from core.distance import DEFAULT_MASK_THRESHOLD, MaskReadError, to_mask_u8

L = logging.getLogger("snapbooth.compositor")

BACKGROUND_NONE = "none"
BACKGROUND_BLUR = "blur"
BACKGROUND_IMAGE = "image"


@dataclass(frozen=True, slots=True)
class Viewport:
    x: int
    y: int
    width: int
    height: int

    def fits(self, canvas_w: int, canvas_h: int) -> bool:
        return (
            self.width > 0
            and self.height > 0
            and self.x >= 0
            and self.y >= 0
            and self.x + self.width <= canvas_w
            and self.y + self.height <= canvas_h
        )


@dataclass(slots=True)
class ResolvedBackground:
    kind: str = BACKGROUND_NONE
    image: np.ndarray | None = None
    background_id: str = BACKGROUND_NONE


NO_BACKGROUND = ResolvedBackground()


@dataclass(slots=True)
class CompositeFrame:
    image: np.ndarray
    original: np.ndarray
    background_kind: str = BACKGROUND_NONE
    subject_drawn: bool = False
    overlay_drawn: bool = False
    countdown: int | None = None


def to_bgr(frame: np.ndarray) -> np.ndarray:
    if frame.ndim == 2:
        return cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
    if frame.ndim == 3 and frame.shape[2] == 1:
        return cv2.cvtColor(frame[:, :, 0], cv2.COLOR_GRAY2BGR)
    if frame.ndim == 3 and frame.shape[2] == 4:
        return frame[:, :, :3]
    return frame


def letterbox_rect(
    image_size: Tuple[int, int], canvas_size: Tuple[int, int], scale: float
) -> Tuple[int, int, int, int]:
    """Centered (x, y, w, h) fitting `image_size` into `scale` of the canvas."""
    img_w, img_h = image_size
    canvas_w, canvas_h = canvas_size
    img_aspect = img_w / float(img_h)
    canvas_aspect = canvas_w / float(canvas_h)
    if img_aspect > canvas_aspect:
        draw_w = canvas_w * scale
        draw_h = draw_w / img_aspect
    else:
        draw_h = canvas_h * scale
        draw_w = draw_h * img_aspect
    w = max(1, min(canvas_w, int(round(draw_w))))
    h = max(1, min(canvas_h, int(round(draw_h))))
    return (canvas_w - w) // 2, (canvas_h - h) // 2, w, h


class FrameCompositor:
    def __init__(
        self,
        canvas_size: Tuple[int, int],
        viewport: Viewport,
        *,
        mask_threshold: int = DEFAULT_MASK_THRESHOLD,
        background_scale: float = 0.8,
        letterbox_color: Tuple[int, int, int] = (0, 0, 0),
        blur_sigma: float = 8.0,
        dim_alpha: float = 0.5,
        backdrop_alpha: float = 0.6,
        digit_scale: float = 0.18,
    ):
        self.canvas_w, self.canvas_h = int(canvas_size[0]), int(canvas_size[1])
        self.viewport = viewport
        self.mask_threshold = int(mask_threshold)
        self.background_scale = float(background_scale)
        self.letterbox_color = tuple(int(c) for c in letterbox_color)
        self.blur_sigma = float(blur_sigma)
        self.dim_alpha = float(dim_alpha)
        self.backdrop_alpha = float(backdrop_alpha)
        self.digit_scale = float(digit_scale)
        self._validate()
        self._letterbox_key: tuple | None = None
        self._letterbox_plane: np.ndarray | None = None

    @property
    def canvas_size(self) -> Tuple[int, int]:
        return self.canvas_w, self.canvas_h

    def prepare_frame(self, frame: np.ndarray) -> np.ndarray:
        """Return the frame as canvas-sized BGR uint8 (the base layer)."""
        bgr = to_bgr(np.asarray(frame)).astype(np.uint8, copy=False)
        if bgr.shape[1] != self.canvas_w or bgr.shape[0] != self.canvas_h:
            bgr = cv2.resize(
                bgr, (self.canvas_w, self.canvas_h), interpolation=cv2.INTER_LINEAR
            )
        return bgr

    def prepare_mask(self, mask) -> np.ndarray | None:
        try:
            mask_u8 = to_mask_u8(mask)
        except MaskReadError as e:
            L.debug("Mask unusable for compositing: %s", e)
            return None
        if mask_u8.shape != (self.canvas_h, self.canvas_w):
            mask_u8 = cv2.resize(
                mask_u8, (self.canvas_w, self.canvas_h), interpolation=cv2.INTER_LINEAR
            )
        return mask_u8

    def compose(
        self,
        frame: np.ndarray,
        mask,
        background: ResolvedBackground | None,
        *,
        in_range: bool,
        state: CaptureState,
    ) -> CompositeFrame:
        # 1. base layer, so later failures never leave a blank frame
        base = self.prepare_frame(frame)
        canvas = base.copy()
        # 2. untouched copy for still export
        original = base.copy()
        mask_u8 = self.prepare_mask(mask)

        bg = background or NO_BACKGROUND
        kind = bg.kind
        subject_drawn = False
        try:
            if kind == BACKGROUND_BLUR:
                canvas = self._blurred(base)
                # Blur keeps the subject sharp whether or not it is in range.
                if mask_u8 is not None:
                    self._draw_subject(canvas, base, mask_u8)
                    subject_drawn = True
            elif kind == BACKGROUND_IMAGE:
                if bg.image is None:
                    kind = BACKGROUND_NONE
                else:
                    canvas[:] = self._letterboxed(bg.image)
        except cv2.error as e:
            L.warning("Background '%s' failed, drawing without it: %s", bg.background_id, e)
            canvas = base.copy()
            kind = BACKGROUND_NONE
            subject_drawn = False

        if in_range and mask_u8 is not None and not subject_drawn:
            self._draw_subject(canvas, base, mask_u8)
            subject_drawn = True

        countdown = None
        if isinstance(state, CountingDown):
            countdown = int(state.remaining)
            self._draw_countdown(canvas, countdown)

        return CompositeFrame(
            image=canvas,
            original=original,
            background_kind=kind,
            subject_drawn=subject_drawn,
            overlay_drawn=countdown is not None,
            countdown=countdown,
        )

    # ---- layers ----

    def _blurred(self, base: np.ndarray) -> np.ndarray:
        return cv2.GaussianBlur(base, (0, 0), sigmaX=self.blur_sigma, sigmaY=self.blur_sigma)

    def _letterboxed(self, image: np.ndarray) -> np.ndarray:
        key = (id(image), image.shape)
        if self._letterbox_key == key and self._letterbox_plane is not None:
            return self._letterbox_plane
        bgr = to_bgr(image).astype(np.uint8, copy=False)
        x, y, w, h = letterbox_rect(
            (bgr.shape[1], bgr.shape[0]), (self.canvas_w, self.canvas_h), self.background_scale
        )
        plane = np.empty((self.canvas_h, self.canvas_w, 3), dtype=np.uint8)
        plane[:] = self.letterbox_color
        plane[y : y + h, x : x + w] = cv2.resize(bgr, (w, h), interpolation=cv2.INTER_AREA)
        self._letterbox_key = key
        self._letterbox_plane = plane
        return plane

    def _draw_subject(self, canvas: np.ndarray, base: np.ndarray, mask_u8: np.ndarray):
        vp = self.viewport
        subject = cv2.resize(base, (vp.width, vp.height), interpolation=cv2.INTER_AREA)
        keep = (
            cv2.resize(mask_u8, (vp.width, vp.height), interpolation=cv2.INTER_NEAREST)
            > self.mask_threshold
        )
        roi = canvas[vp.y : vp.y + vp.height, vp.x : vp.x + vp.width]
        roi[keep] = subject[keep]

    def _draw_countdown(self, canvas: np.ndarray, remaining: int):
        h, w = canvas.shape[:2]
        # Dim with integer math (keep/256) to avoid a float copy of the canvas.
        keep = int(round((1.0 - self.dim_alpha) * 256))
        canvas[:] = ((canvas.astype(np.uint16) * keep) >> 8).astype(np.uint8)

        cx, cy = w // 2, h // 2
        short_edge = min(w, h)
        radius = max(1, int(short_edge * self.digit_scale))
        backdrop = canvas.copy()
        cv2.circle(backdrop, (cx, cy), radius, (0, 0, 0), -1, cv2.LINE_AA)
        cv2.addWeighted(
            backdrop, self.backdrop_alpha, canvas, 1.0 - self.backdrop_alpha, 0, dst=canvas
        )

        text = str(remaining)
        font = cv2.FONT_HERSHEY_DUPLEX
        thickness = max(2, short_edge // 90)
        (_, unit_h), _ = cv2.getTextSize(text, font, 1.0, thickness)
        target_h = max(8, int(short_edge * self.digit_scale))
        font_scale = target_h / float(max(unit_h, 1))
        (text_w, text_h), _ = cv2.getTextSize(text, font, font_scale, thickness)
        org = (cx - text_w // 2, cy + text_h // 2)
        outline = thickness + 10

        shadow = np.zeros((h, w), dtype=np.uint8)
        cv2.putText(shadow, text, org, font, font_scale, 255, outline, cv2.LINE_AA)
        shadow = cv2.GaussianBlur(shadow, (0, 0), sigmaX=6.0)
        shade = 256 - ((shadow.astype(np.uint16) * 205) >> 8)  # up to ~80% darkening
        canvas[:] = ((canvas.astype(np.uint16) * shade[:, :, None]) >> 8).astype(np.uint8)

        cv2.putText(canvas, text, org, font, font_scale, (0, 0, 0), outline, cv2.LINE_AA)
        cv2.putText(canvas, text, org, font, font_scale, (255, 255, 255), thickness, cv2.LINE_AA)

    def _validate(self):
        if self.canvas_w <= 0 or self.canvas_h <= 0:
            raise ValueError("canvas size must be positive")
        if not self.viewport.fits(self.canvas_w, self.canvas_h):
            raise ValueError(
                f"viewport {self.viewport} must lie inside canvas "
                f"{self.canvas_w}x{self.canvas_h}"
            )
        if not (0 < self.background_scale <= 1.0):
            raise ValueError("background_scale must be in (0, 1]")
        if not (0 <= self.dim_alpha <= 1.0):
            raise ValueError("dim_alpha must be in [0, 1]")
        if not (0 <= self.backdrop_alpha <= 1.0):
            raise ValueError("backdrop_alpha must be in [0, 1]")
        if self.blur_sigma <= 0:
            raise ValueError("blur_sigma must be > 0")


__all__ = [
    "BACKGROUND_BLUR",
    "BACKGROUND_IMAGE",
    "BACKGROUND_NONE",
    "CompositeFrame",
    "FrameCompositor",
    "NO_BACKGROUND",
    "ResolvedBackground",
    "Viewport",
    "letterbox_rect",
    "to_bgr",
]
