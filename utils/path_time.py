from __future__ import annotations

import os
from datetime import datetime, timezone


def coerce_utc_datetime(value: datetime | None) -> datetime:
    ref = value or datetime.now(timezone.utc)
    if ref.tzinfo is None:
        ref = ref.replace(tzinfo=timezone.utc)
    return ref.astimezone(timezone.utc)


def epoch_ms(value: datetime | None) -> int:
    return int(round(coerce_utc_datetime(value).timestamp() * 1000))


def format_photo_filename(seq: int, ext: str, ts_utc: datetime | None = None) -> str:
    """``photo_<epoch ms>_<seq>.<ext>``; the sequence keeps names unique within a run."""
    return f"photo_{epoch_ms(ts_utc)}_{int(seq):05d}{ext}"


class DailyPhotoDirCache:
    """Remember the current UTC date folder so each export skips the mkdir."""

    def __init__(self):
        self._key: tuple[str, str] | None = None
        self._dir_path: str | None = None

    def get_or_create(self, root_dir: str, ts_utc: datetime) -> str:
        date_key = coerce_utc_datetime(ts_utc).date().isoformat()
        key = (os.path.abspath(root_dir), date_key)
        if self._key != key or not self._dir_path or not os.path.isdir(self._dir_path):
            target_dir = os.path.join(root_dir, date_key)
            os.makedirs(target_dir, exist_ok=True)
            self._key = key
            self._dir_path = target_dir
        return self._dir_path


def build_photo_path(
    root_dir: str,
    seq: int,
    ext: str,
    *,
    ts_utc: datetime | None,
    cache: DailyPhotoDirCache,
) -> tuple[str, datetime]:
    ref = coerce_utc_datetime(ts_utc)
    target_dir = cache.get_or_create(root_dir, ref)
    return os.path.join(target_dir, format_photo_filename(seq, ext, ts_utc=ref)), ref


__all__ = [
    "DailyPhotoDirCache",
    "build_photo_path",
    "coerce_utc_datetime",
    "epoch_ms",
    "format_photo_filename",
]
