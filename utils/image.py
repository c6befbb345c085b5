"""OpenCV image encode/decode helpers shared by camera, output, and HMI code."""

from __future__ import annotations

import os
from typing import Tuple

import cv2
import numpy as np


def encode_image_jpeg(
    img: np.ndarray, quality: int = 50, subsampling: int = 2
) -> Tuple[bytes, str]:
    """
    Encode image to JPEG bytes with speed-friendly params.
    Returns (bytes, content_type).
    """
    bgr = img.astype(np.uint8, copy=False)
    params = [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)]
    # Optional subsampling control if supported by OpenCV build.
    if hasattr(cv2, "IMWRITE_JPEG_SAMPLING_FACTOR"):
        factor_map = {
            0: "IMWRITE_JPEG_SAMPLING_FACTOR_444",
            1: "IMWRITE_JPEG_SAMPLING_FACTOR_422",
            2: "IMWRITE_JPEG_SAMPLING_FACTOR_420",
        }
        factor_name = factor_map.get(int(subsampling))
        factor = getattr(cv2, factor_name, None) if factor_name else None
        if factor is not None:
            params += [int(cv2.IMWRITE_JPEG_SAMPLING_FACTOR), int(factor)]
    ok, buf = cv2.imencode(".jpg", bgr, params)
    if not ok:
        raise RuntimeError("opencv_imencode_failed")
    return buf.tobytes(), "image/jpeg"


def encode_image(img: np.ndarray, ext: str = ".png") -> bytes:
    ext = ext if ext.startswith(".") else f".{ext}"
    ok, buf = cv2.imencode(ext, img.astype(np.uint8, copy=False))
    if not ok:
        raise RuntimeError(f"opencv_imencode_failed ext={ext}")
    return buf.tobytes()


def write_image(path: str, img: np.ndarray) -> int:
    """Write via imencode so non-ASCII paths work where cv2.imwrite does not."""
    data = encode_image(img, os.path.splitext(path)[1] or ".png")
    with open(path, "wb") as f:
        f.write(data)
    return len(data)


def imread_any(path: str, flags: int = cv2.IMREAD_COLOR) -> np.ndarray | None:
    arr = cv2.imread(path, flags)
    if arr is not None:
        return arr
    try:
        data = np.fromfile(path, dtype=np.uint8)
    except OSError:
        return None
    if data.size == 0:
        return None
    return cv2.imdecode(data, flags)


__all__ = ["encode_image", "encode_image_jpeg", "imread_any", "write_image"]
