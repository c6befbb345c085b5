# -- coding: utf-8 --
"""HMI web channel: status JSON, JPEG preview and operator commands over aiohttp.

Handlers never touch the booth directly. Commands go through the trigger
gateway so web presses get the same debounce and allowlist as TCP and keys.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Protocol

from aiohttp import web

from core.contracts import CaptureRecord
from trigger.gateway import (
    CMD_AUTO,
    CMD_CAPTURE,
    CMD_MANUAL,
    CMD_NEXT_BG,
    CMD_PREV_BG,
    CMD_SET_BG,
)
from utils.lifecycle import LoopRunner, run_async_cleanup
from utils.path_time import epoch_ms

L = logging.getLogger("snapbooth.output.hmi")

# POST route -> gateway command for the body-less buttons.
_COMMAND_ROUTES = {
    "/trigger/auto": CMD_AUTO,
    "/trigger/manual": CMD_MANUAL,
    "/capture": CMD_CAPTURE,
    "/background/next": CMD_NEXT_BG,
    "/background/previous": CMD_PREV_BG,
}


class AppContextLike(Protocol):
    @property
    def trigger_gateway(self) -> Any: ...

    @property
    def results(self) -> Any: ...

    @property
    def booth(self) -> Any: ...

    @property
    def backgrounds(self) -> Any: ...


def _record_json(rec: CaptureRecord) -> dict[str, Any]:
    return {
        "capture_seq": int(rec.capture_seq or 0),
        "source": str(rec.source or ""),
        "mode": str(rec.mode or ""),
        "result": str(rec.result or ""),
        "file": os.path.basename(rec.path) if rec.path else None,
        "message": str(rec.message or ""),
        "duration_ms": float(rec.duration_ms or 0.0),
        "triggered_at_ms": epoch_ms(rec.triggered_at) if rec.triggered_at else None,
    }


def _parse_since_seq(raw: str | None) -> int | None:
    if not raw:
        return None
    try:
        val = int(raw)
    except ValueError:
        return None
    return val if val >= 0 else None


def _records_since(records: list[CaptureRecord], since_seq: int | None):
    """Newest-first records after `since_seq`, and whether that is a full snapshot."""
    if since_seq is None:
        return records, True
    latest = int(records[0].capture_seq or 0) if records else None
    if latest is not None and latest < since_seq:
        # Counter went backwards (restart); make the client resync.
        return records, True
    return [r for r in records if int(r.capture_seq or 0) > since_seq], False


class _ApiServer:
    def __init__(
        self,
        host: str,
        port: int,
        context: AppContextLike,
        index_path: str,
        *,
        loop_runner: LoopRunner,
    ):
        self.host = host
        self.port = port
        self.context = context
        self.index_path = index_path
        self._loop_runner = loop_runner
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._started = False
        self.app = web.Application()
        self._setup_routes()

    def _setup_routes(self):
        router = self.app.router
        router.add_get("/", self._index)
        router.add_get("/index.html", self._index)
        router.add_static("/static/", os.path.dirname(self.index_path))
        router.add_get("/status", self._status)
        router.add_get("/preview/latest", self._preview)
        router.add_post("/background", self._set_background)
        for path, command in _COMMAND_ROUTES.items():
            router.add_post(path, self._command_handler(command))

    def _report(self, request: web.Request, command: str, payload: Any = None) -> bool:
        gateway = self.context.trigger_gateway
        return bool(gateway.report_command(command, "WEB", payload, remote_ip=request.remote))

    async def _index(self, _request):
        return web.FileResponse(self.index_path)

    async def _status(self, request: web.Request):
        ctx = self.context
        store = ctx.results
        records = store.latest_records
        since_seq = _parse_since_seq(request.query.get("since_seq"))
        selected, full_snapshot = _records_since(records, since_seq)
        return web.json_response(
            {
                "booth": ctx.booth.status().as_dict(),
                "backgrounds": ctx.backgrounds.describe(),
                "records": [_record_json(r) for r in selected],
                "stats": store.stats(),
                "max_records": store.max_records,
                "heartbeat_seq": store.heartbeat_seq(),
                "latest_seq": int(records[0].capture_seq or 0) if records else None,
                "full_snapshot": full_snapshot,
            }
        )

    async def _preview(self, _request):
        item = self.context.results.latest_preview()
        if item is None:
            return web.Response(status=404)
        data, ctype = item
        return web.Response(body=data, content_type=ctype)

    def _command_handler(self, command: str):
        async def handler(request: web.Request):
            return web.json_response({"accepted": self._report(request, command)})

        return handler

    async def _set_background(self, request: web.Request):
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid json"}, status=400)
        bg_id = body.get("id") if isinstance(body, dict) else None
        if not isinstance(bg_id, str) or not bg_id.strip():
            return web.json_response({"error": "missing background id"}, status=400)
        bg_id = bg_id.strip()
        if bg_id not in self.context.backgrounds.ids:
            return web.json_response({"error": f"unknown background '{bg_id}'"}, status=404)
        return web.json_response({"accepted": self._report(request, CMD_SET_BG, bg_id)})

    def start(self):
        if self._started:
            return
        try:
            self._loop_runner.run_async(self._serve(), timeout=1.0)
        except Exception:
            self.stop()
            raise
        self._started = True

    async def _serve(self):
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        L.info("HMI web service running @ http://%s:%d", self.host, self.port)

    def stop(self):
        async def _cleanup():
            if self._runner:
                await self._runner.cleanup()
            self._runner = None
            self._site = None

        run_async_cleanup(
            _cleanup(),
            timeout=0.5,
            loop_runner=self._loop_runner,
        )
        self._started = False
        L.info("HMI web service stopped")

    def raise_if_failed(self):
        if not self._started:
            return
        runner = self._runner
        site = self._site
        if runner is None or site is None:
            raise RuntimeError("HMI web service stopped unexpectedly")
        server = getattr(site, "_server", None)
        if server is None:
            raise RuntimeError("HMI web service server missing")
        is_serving = getattr(server, "is_serving", None)
        if callable(is_serving) and not bool(is_serving()):
            raise RuntimeError("HMI web service is not serving")


class HmiOutput:
    def __init__(
        self,
        host: str,
        port: int,
        context: AppContextLike,
        index_path: str,
        *,
        loop_runner: LoopRunner,
    ):
        self.server = _ApiServer(
            host,
            port,
            context,
            index_path=index_path,
            loop_runner=loop_runner,
        )

    @property
    def app(self) -> web.Application:
        return self.server.app

    def start(self):
        self.server.start()

    def stop(self):
        self.server.stop()

    def publish(self, rec: CaptureRecord):
        # HMI pulls data via HTTP; no push needed.
        _ = rec
        return None

    def publish_heartbeat(self, ts: float | None = None):
        _ = ts
        return None

    def raise_if_failed(self):
        self.server.raise_if_failed()


__all__ = ["HmiOutput", "AppContextLike"]
