# -- coding: utf-8 --

import asyncio
import contextlib
from concurrent.futures import CancelledError as FutureCancelledError
import logging
import threading

from trigger.base import BaseTrigger, TriggerConfig, register_trigger
from trigger.gateway import CMD_AUTO, CMD_SET_BG, COMMANDS
from utils.lifecycle import AsyncTaskOwner, LoopRunner, run_async_cleanup

L = logging.getLogger("snapbooth.trigger.tcp")

_MAX_LINE = 128


def parse_command(data: bytes, word: bytes) -> tuple[str, str | None] | None:
    """Map one client line to (command, payload); the trigger word means AUTO."""
    line = data.strip()
    if not line:
        return None
    if line == word:
        return CMD_AUTO, None
    try:
        text = line.decode("utf-8")
    except UnicodeDecodeError:
        return None
    head, _, rest = text.partition(" ")
    cmd = head.strip().upper()
    if cmd not in COMMANDS:
        return None
    payload = rest.strip() or None
    if cmd == CMD_SET_BG and payload is None:
        return None
    return cmd, payload


@register_trigger("tcp")
class TcpTrigger(BaseTrigger):
    source = "TCP"

    def __init__(
        self,
        cfg: TriggerConfig,
        on_trigger,
        *,
        loop_runner: LoopRunner,
    ):
        super().__init__(cfg, on_trigger)
        self._server = None
        self._serve_task = None
        self._started = False
        self._state_lock = threading.Lock()
        self._tasks = AsyncTaskOwner(owner_name="tcp_trigger", loop_runner=loop_runner)

    def start(self):
        with self._state_lock:
            if self._started:
                return
            self._started = True
        try:
            self._tasks.loop_runner.run_async(self._start_server(), timeout=1.0)
        except Exception:
            self.stop()
            raise

    def stop(self):
        with self._state_lock:
            self._started = False
        self._serve_task = None
        self._tasks.cancel_all()

        async def _cleanup():
            if self._server:
                self._server.close()
                await self._server.wait_closed()
            self._server = None

        run_async_cleanup(
            _cleanup(),
            timeout=0.5,
            loop_runner=self._tasks.loop_runner,
        )
        L.info("TCP trigger socket stopped")

    def raise_if_failed(self):
        task = self._serve_task
        if task is None or not hasattr(task, "done") or not task.done():
            return
        try:
            err = task.exception()
        except (asyncio.CancelledError, FutureCancelledError):
            return
        if err is None:
            return
        raise RuntimeError(
            f"TcpTrigger stopped unexpectedly ({type(err).__name__})"
        ) from err

    async def _start_server(self):
        self._server = await asyncio.start_server(
            self._handle_client, self.cfg.host, self.cfg.port, reuse_address=True
        )
        L.info(
            "TCP trigger socket listening on %s:%d word=%r",
            self.cfg.host,
            self.cfg.port,
            self.cfg.word,
        )
        self._serve_task = self._tasks.register(
            asyncio.create_task(
                self._serve_forever(),
                name="tcp_trigger.serve_forever",
            )
        )

    async def _serve_forever(self):
        if self._server is None:
            return
        async with self._server:
            await self._server.serve_forever()

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        try:
            data = await reader.read(_MAX_LINE)
            parsed = parse_command(data, self.cfg.word)
            if parsed is None:
                L.debug("Ignoring TCP payload %r", data[:32])
                writer.write(b"NG\n")
            else:
                cmd, payload = parsed
                ok = self.report(cmd, payload, writer.get_extra_info("peername"))
                writer.write(b"OK\n" if ok else b"BUSY\n")
            await writer.drain()
        except ConnectionError as e:
            L.debug("TCP client dropped: %s", e)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()


__all__ = ["TcpTrigger", "parse_command"]
