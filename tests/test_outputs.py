import os
import tempfile
import unittest
from datetime import datetime, timezone

import cv2
import numpy as np

from core.compositor import BACKGROUND_BLUR, BACKGROUND_IMAGE, BACKGROUND_NONE
from core.contracts import CaptureRecord
from output.backgrounds import BackgroundAsset, BackgroundCatalog
from output.export import ExportError, ImageExportSink
from output.manager import ResultStore
from utils.path_time import DailyPhotoDirCache, build_photo_path, format_photo_filename

TS = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def _tempdir(test):
    tmp = tempfile.TemporaryDirectory()
    test.addCleanup(tmp.cleanup)
    return tmp.name


class TestBackgroundCatalog(unittest.TestCase):
    def test_ids_describe_and_cycle(self):
        cat = BackgroundCatalog(
            [BackgroundAsset("beach", "beach.jpg", "Beach"), BackgroundAsset("city", "city.jpg")]
        )
        self.assertEqual(cat.ids, ["none", "blur", "beach", "city"])
        self.assertEqual(
            [d["name"] for d in cat.describe()], ["None", "Blur", "Beach", "city"]
        )
        self.assertEqual(cat.next_id("beach"), "city")
        self.assertEqual(cat.next_id("city"), "none")
        self.assertEqual(cat.next_id("gone"), "none")

    def test_blur_can_be_excluded(self):
        cat = BackgroundCatalog(include_blur=False)
        self.assertEqual(cat.ids, ["none"])
        self.assertEqual(cat.resolve(BACKGROUND_BLUR).kind, BACKGROUND_NONE)

    def test_reserved_and_duplicate_ids_rejected(self):
        with self.assertRaises(ValueError):
            BackgroundCatalog([BackgroundAsset("none", "x.jpg")])
        with self.assertRaises(ValueError):
            BackgroundCatalog([BackgroundAsset("a", "x.jpg"), BackgroundAsset("a", "y.jpg")])

    def test_resolve_builtin_and_unknown(self):
        cat = BackgroundCatalog()
        self.assertEqual(cat.resolve(BACKGROUND_NONE).kind, BACKGROUND_NONE)
        self.assertEqual(cat.resolve(BACKGROUND_BLUR).kind, BACKGROUND_BLUR)
        self.assertEqual(cat.resolve("nope").kind, BACKGROUND_NONE)

    def test_missing_file_degrades_to_none(self):
        root = _tempdir(self)
        cat = BackgroundCatalog([BackgroundAsset("beach", "missing.jpg")], root_dir=root)
        resolved = cat.resolve("beach")
        self.assertEqual(resolved.kind, BACKGROUND_NONE)
        self.assertIsNone(resolved.image)

    def test_image_asset_loaded_and_cached(self):
        root = _tempdir(self)
        img = np.full((20, 30, 3), 90, dtype=np.uint8)
        cv2.imwrite(os.path.join(root, "wall.png"), img)
        cat = BackgroundCatalog([BackgroundAsset("wall", "wall.png")], root_dir=root)
        first = cat.resolve("wall")
        self.assertEqual(first.kind, BACKGROUND_IMAGE)
        self.assertEqual(first.background_id, "wall")
        self.assertEqual(first.image.shape, (20, 30, 3))
        self.assertIs(cat.resolve("wall").image, first.image)


class TestImageExportSink(unittest.TestCase):
    def test_writes_dated_photo(self):
        root = _tempdir(self)
        sink = ImageExportSink(root, ext="png")
        img = np.full((12, 16, 3), 33, dtype=np.uint8)
        path = sink.export(img, 7, source="WEB", ts=TS)
        self.assertEqual(os.path.dirname(path), os.path.join(root, "2026-01-02"))
        self.assertEqual(os.path.basename(path), format_photo_filename(7, ".png", TS))
        saved = cv2.imread(path)
        np.testing.assert_array_equal(saved, img)

    def test_rejects_bad_input(self):
        with self.assertRaises(ValueError):
            ImageExportSink(_tempdir(self), ext=".gif")
        sink = ImageExportSink(_tempdir(self))
        with self.assertRaises(ExportError):
            sink.export(np.zeros((0, 0, 3), dtype=np.uint8), 1)
        with self.assertRaises(ExportError):
            sink.export(None, 1)


class TestPhotoPath(unittest.TestCase):
    def test_filename_uses_epoch_ms_and_seq(self):
        name = format_photo_filename(42, ".jpg", TS)
        self.assertEqual(name, f"photo_{int(TS.timestamp() * 1000)}_00042.jpg")

    def test_naive_timestamps_are_utc(self):
        naive = TS.replace(tzinfo=None)
        self.assertEqual(format_photo_filename(1, ".png", naive), format_photo_filename(1, ".png", TS))

    def test_dir_recreated_after_removal(self):
        root = _tempdir(self)
        cache = DailyPhotoDirCache()
        path, _ = build_photo_path(root, 1, ".png", ts_utc=TS, cache=cache)
        day_dir = os.path.dirname(path)
        os.rmdir(day_dir)
        build_photo_path(root, 2, ".png", ts_utc=TS, cache=cache)
        self.assertTrue(os.path.isdir(day_dir))


class TestResultStore(unittest.TestCase):
    def _record(self, seq, result="OK", **kwargs):
        return CaptureRecord(
            capture_seq=seq,
            source="WEB",
            mode="manual",
            result=result,
            path=f"/photos/p{seq}.png" if result == "OK" else None,
            triggered_at=TS,
            exported_at=TS,
            **kwargs,
        )

    def test_history_and_stats(self):
        store = ResultStore(_tempdir(self), max_records=2, write_csv=False)
        store.submit(self._record(1))
        store.submit(self._record(2, result="ERROR", message="disk full"))
        store.submit(self._record(3))
        self.assertEqual([r.capture_seq for r in store.latest_records], [3, 2])
        stats = store.stats()
        self.assertEqual((stats["total"], stats["ok"], stats["error"]), (3, 2, 1))
        self.assertAlmostEqual(stats["success_rate"], 2 / 3)
        store.reset()
        self.assertEqual(store.latest_records, [])
        self.assertEqual(store.stats()["success_rate"], 0.0)

    def test_csv_rows(self):
        base = _tempdir(self)
        store = ResultStore(base, write_csv=True)
        store.submit(self._record(7, duration_ms=12.5, remark="a,b"))
        store.submit(self._record(8, result="ERROR"))
        store.stop()
        with open(os.path.join(base, "2026-01-02", "records.csv"), encoding="utf-8") as f:
            lines = f.read().splitlines()
        self.assertEqual(len(lines), 3)
        self.assertTrue(lines[0].startswith("id,trigger_date,trigger_time"))
        self.assertEqual(
            lines[1],
            "7,2026-01-02,03:04:05.000Z,03:04:05.000Z,WEB,manual,OK,p7.png,12.500,a;b",
        )
        self.assertTrue(lines[2].startswith("8,2026-01-02,"))
        self.assertIn(",ERROR,,0.000,", lines[2])

    def test_latest_frame_and_preview_cache(self):
        store = ResultStore(_tempdir(self), write_csv=False)
        self.assertIsNone(store.latest_frame())
        self.assertIsNone(store.latest_preview())
        img = np.full((8, 8, 3), 128, dtype=np.uint8)
        store.set_latest_frame(5, img)
        seq, frame = store.latest_frame()
        self.assertEqual(seq, 5)
        self.assertIs(frame, img)
        data, mime = store.latest_preview()
        self.assertEqual(mime, "image/jpeg")
        self.assertTrue(data.startswith(b"\xff\xd8"))
        self.assertIs(store.latest_preview()[0], data)
        store.set_latest_frame(6, img)
        self.assertIsNot(store.latest_preview()[0], data)


if __name__ == "__main__":
    unittest.main()
