import unittest

import numpy as np

from core.capture import COOLDOWN, IDLE, READY_TO_CAPTURE, CountingDown
from core.compositor import BACKGROUND_BLUR, BACKGROUND_NONE, FrameCompositor, Viewport
from core.pipeline import BoothPipeline
from core.timers import ManualScheduler

W, H = 160, 120


class _FakeExportSink:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def export(self, image, seq, *, source="", ts=None):
        if self.fail:
            raise OSError("read-only file system")
        self.calls.append((image.copy(), seq, source))
        return f"/tmp/photos/{seq:05d}.png"


def _frame(value=120):
    return np.full((H, W, 3), value, dtype=np.uint8)


def _subject_mask(ratio=0.05):
    # 5% foreground maps to 1.8 m, inside the default 1.5..2.0 m window.
    mask = np.zeros((H, W), dtype=np.uint8)
    n = int(round(ratio * mask.size))
    mask.reshape(-1)[:n] = 255
    return mask


def _empty_mask():
    return np.zeros((H, W), dtype=np.uint8)


def _build(export_fail=False, **kwargs):
    sched = ManualScheduler(start_ms=1000)
    sink = _FakeExportSink(fail=export_fail)
    records = []
    pipeline = BoothPipeline(
        FrameCompositor((W, H), Viewport(40, 30, 40, 60)),
        export_sink=sink,
        record_sink=records.append,
        scheduler=sched,
        **kwargs,
    )
    return pipeline, sched, sink, records


class TestBoothPipeline(unittest.TestCase):
    def test_stillness_runs_full_auto_capture_sequence(self):
        p, sched, sink, records = _build()
        r1 = p.process_frame(_frame(), _subject_mask())
        self.assertTrue(r1.distance.in_range)
        self.assertFalse(r1.motion.has_history)
        sched.advance(1000)
        r2 = p.process_frame(_frame(), _subject_mask())
        self.assertAlmostEqual(r2.stillness.progress, 0.5)
        self.assertFalse(r2.countdown_started)
        sched.advance(1000)
        r3 = p.process_frame(_frame(), _subject_mask())
        self.assertTrue(r3.countdown_started)
        self.assertEqual(r3.state, CountingDown(3, auto=True))
        self.assertTrue(r3.composite.overlay_drawn)

        sched.advance(3000)
        self.assertEqual(p.machine.state, COOLDOWN)
        self.assertEqual(len(sink.calls), 1)
        image, seq, source = sink.calls[0]
        self.assertEqual(seq, 1)
        self.assertEqual(source, "STILLNESS")
        np.testing.assert_array_equal(image, _frame())
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].result, "OK")
        self.assertEqual(records[0].mode, "auto")
        self.assertEqual(records[0].path, "/tmp/photos/00001.png")

        sched.advance(3000)
        self.assertEqual(p.machine.state, IDLE)
        # Still the same episode: no second countdown until the subject moves.
        r4 = p.process_frame(_frame(), _subject_mask())
        self.assertFalse(r4.countdown_started)

    def test_motion_restarts_stillness(self):
        p, sched, _, _ = _build()
        p.process_frame(_frame(100), _subject_mask())
        sched.advance(1500)
        p.process_frame(_frame(100), _subject_mask())
        sched.advance(100)
        r = p.process_frame(_frame(200), _subject_mask())
        self.assertTrue(r.motion.motion)
        self.assertEqual(r.stillness.progress, 0.0)
        sched.advance(1900)
        r = p.process_frame(_frame(200), _subject_mask())
        self.assertFalse(r.countdown_started)

    def test_out_of_range_resets_and_hides_subject(self):
        p, sched, _, _ = _build()
        p.process_frame(_frame(), _subject_mask())
        sched.advance(1500)
        p.process_frame(_frame(), _subject_mask())
        sched.advance(100)
        r = p.process_frame(_frame(), _empty_mask())
        self.assertFalse(r.distance.in_range)
        self.assertEqual(r.stillness.progress, 0.0)
        self.assertFalse(r.composite.subject_drawn)
        self.assertFalse(r.motion.has_history)

    def test_unreadable_mask_counts_as_out_of_range(self):
        p, _, _, _ = _build()
        r = p.process_frame(_frame(), None)
        self.assertFalse(r.distance.ok)
        self.assertFalse(r.distance.in_range)
        self.assertEqual(r.composite.image.shape, (H, W, 3))

    def test_hotkey_requires_subject_in_range(self):
        p, _, _, _ = _build()
        self.assertFalse(p.trigger_auto("HOTKEY"))
        p.process_frame(_frame(), _subject_mask())
        self.assertTrue(p.trigger_auto("HOTKEY"))
        self.assertEqual(p.machine.state, CountingDown(3, auto=True))

    def test_hotkey_countdown_uses_up_the_still_period(self):
        p, sched, sink, _ = _build()
        p.process_frame(_frame(), _subject_mask())
        self.assertTrue(p.trigger_auto("HOTKEY"))
        for _ in range(60):
            sched.advance(200)
            r = p.process_frame(_frame(), _subject_mask())
            self.assertFalse(r.countdown_started)
        self.assertEqual([call[2] for call in sink.calls], ["HOTKEY"])
        self.assertEqual(p.machine.state, IDLE)
        self.assertTrue(p.stillness.is_still)

        # Moving starts a new still period, which may count down again.
        p.process_frame(_frame(200), _subject_mask())
        started = []
        for _ in range(11):
            sched.advance(200)
            started.append(p.process_frame(_frame(200), _subject_mask()).countdown_started)
        self.assertEqual(started.count(True), 1)
        self.assertTrue(started[-1])

    def test_still_subject_entering_range_gets_one_auto_capture(self):
        p, sched, sink, records = _build()
        for _ in range(3):
            self.assertFalse(p.process_frame(_frame(), _empty_mask()).distance.in_range)
            sched.advance(200)

        subject_arrived = sched.now_ms()
        first_in_range = fired_at = None
        for _ in range(60):
            r = p.process_frame(_frame(), _subject_mask())
            if r.distance.in_range and first_in_range is None:
                first_in_range = sched.now_ms()
            if r.countdown_started:
                self.assertIsNone(fired_at)
                fired_at = sched.now_ms()
            sched.advance(200)
            if sink.calls:
                break

        # Smoothing from the far reading delays the first in-range frame.
        self.assertGreater(first_in_range, subject_arrived)
        self.assertGreaterEqual(fired_at - first_in_range, 2000)
        self.assertEqual(len(sink.calls), 1)
        self.assertEqual(sink.calls[0][2], "STILLNESS")
        self.assertEqual(records[0].mode, "auto")
        self.assertEqual(p.machine.state, COOLDOWN)

        # Holding the pose through cooldown and after it takes no second photo.
        for _ in range(40):
            self.assertFalse(p.process_frame(_frame(), _subject_mask()).countdown_started)
            sched.advance(200)
        self.assertEqual(len(sink.calls), 1)
        self.assertEqual(p.machine.state, IDLE)

    def test_manual_countdown_then_capture(self):
        p, sched, sink, records = _build()
        p.process_frame(_frame(), _empty_mask())
        self.assertTrue(p.trigger_manual("WEB"))
        sched.advance(3000)
        self.assertEqual(p.machine.state, READY_TO_CAPTURE)
        self.assertTrue(p.capture("WEB"))
        self.assertEqual(p.machine.state, IDLE)
        self.assertEqual(records[0].mode, "manual")

    def test_direct_capture_exports_latest_original(self):
        p, _, sink, records = _build()
        p.set_background(BACKGROUND_BLUR)
        p.process_frame(_frame(77), _subject_mask())
        self.assertTrue(p.capture("BUTTON"))
        np.testing.assert_array_equal(sink.calls[0][0], _frame(77))
        self.assertEqual(p.status().last_capture["result"], "OK")

    def test_capture_without_frame_reports_error(self):
        p, _, sink, records = _build()
        self.assertTrue(p.capture("BUTTON"))
        self.assertEqual(sink.calls, [])
        self.assertEqual(records[0].result, "ERROR")
        self.assertEqual(records[0].message, "no frame available")

    def test_export_failure_is_recorded_and_sequence_continues(self):
        p, sched, _, records = _build(export_fail=True)
        p.process_frame(_frame(), _subject_mask())
        p.trigger_auto()
        sched.advance(3000)
        self.assertEqual(p.machine.state, COOLDOWN)
        self.assertEqual(records[0].result, "ERROR")
        self.assertIn("read-only", records[0].message)
        sched.advance(3000)
        self.assertEqual(p.machine.state, IDLE)

    def test_background_change_cancels_countdown_and_applies_next_frame(self):
        p, sched, sink, _ = _build()
        p.process_frame(_frame(), _subject_mask())
        p.trigger_auto()
        self.assertEqual(p.set_background(BACKGROUND_BLUR), BACKGROUND_BLUR)
        self.assertEqual(p.machine.state, IDLE)
        sched.advance(5000)
        self.assertEqual(sink.calls, [])
        r = p.process_frame(_frame(), _subject_mask())
        self.assertEqual(r.background_id, BACKGROUND_BLUR)
        self.assertEqual(r.composite.background_kind, BACKGROUND_BLUR)
        self.assertEqual(r.stillness.progress, 0.0)

    def test_background_cycle_and_history(self):
        p, _, _, _ = _build()
        self.assertEqual(p.next_background(), BACKGROUND_BLUR)
        self.assertEqual(p.next_background(), BACKGROUND_NONE)
        self.assertEqual(p.background_history, [BACKGROUND_NONE, BACKGROUND_BLUR])
        self.assertEqual(p.previous_background(), BACKGROUND_BLUR)
        self.assertEqual(p.previous_background(), BACKGROUND_NONE)
        self.assertIsNone(p.previous_background())
        self.assertEqual(p.background_id, BACKGROUND_NONE)

    def test_status_read_model(self):
        p, _, _, _ = _build()
        p.process_frame(_frame(), _subject_mask())
        st = p.status().as_dict()
        self.assertEqual(st["frame_seq"], 1)
        self.assertEqual(st["distance_m"], 1.8)
        self.assertTrue(st["in_range"])
        self.assertEqual(st["state"], "idle")
        self.assertIsNone(st["countdown"])
        self.assertEqual(st["background"], BACKGROUND_NONE)

    def test_shutdown_stops_timers(self):
        p, sched, sink, _ = _build()
        p.process_frame(_frame(), _subject_mask())
        p.trigger_auto()
        p.shutdown()
        sched.advance(10_000)
        self.assertEqual(sink.calls, [])
        self.assertFalse(p.trigger_auto())


if __name__ == "__main__":
    unittest.main()
