"""Local OpenCV preview window with keyboard shortcuts.

HighGUI must be driven from the thread that owns the window, so the runtime
calls `poll()` from its supervision loop instead of running a worker thread.
"""

from __future__ import annotations

import logging
from typing import Callable

import cv2
import numpy as np

from trigger.gateway import CMD_AUTO, CMD_CAPTURE, CMD_NEXT_BG, CMD_PREV_BG

L = logging.getLogger("snapbooth.output.window")

KEY_COMMANDS = {
    ord(" "): CMD_AUTO,
    ord("c"): CMD_CAPTURE,
    ord("m"): CMD_NEXT_BG,
    ord("n"): CMD_PREV_BG,
}
QUIT_KEYS = {ord("q"), 27}


class PreviewWindow:
    def __init__(
        self,
        title: str,
        frame_source: Callable[[], tuple[int, np.ndarray] | None],
        on_command: Callable[[str], bool],
        on_quit: Callable[[], None],
        *,
        wait_ms: int = 10,
    ):
        self.title = title
        self.frame_source = frame_source
        self.on_command = on_command
        self.on_quit = on_quit
        self.wait_ms = max(1, int(wait_ms))
        self._last_seq = -1
        self._opened = False

    def open(self):
        if self._opened:
            return
        cv2.namedWindow(self.title, cv2.WINDOW_AUTOSIZE)
        self._opened = True
        L.info("Preview window '%s' opened (space=auto, c=capture, m/n=background, q=quit)", self.title)

    def poll(self) -> int | None:
        """Show the newest composite if it changed, then service one key press."""
        if not self._opened:
            self.open()
        item = self.frame_source()
        if item is not None:
            seq, image = item
            if seq != self._last_seq:
                cv2.imshow(self.title, image)
                self._last_seq = seq
        key = cv2.waitKey(self.wait_ms)
        if key < 0:
            return None
        key &= 0xFF
        self.handle_key(key)
        return key

    def handle_key(self, key: int) -> bool:
        if key in QUIT_KEYS:
            L.info("Quit requested from preview window")
            self.on_quit()
            return True
        cmd = KEY_COMMANDS.get(key)
        if cmd is None:
            return False
        self.on_command(cmd)
        return True

    def close(self):
        if not self._opened:
            return
        self._opened = False
        try:
            cv2.destroyWindow(self.title)
            cv2.waitKey(1)
        except cv2.error:
            L.debug("Preview window already gone", exc_info=True)


__all__ = ["KEY_COMMANDS", "QUIT_KEYS", "PreviewWindow"]
