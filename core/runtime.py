"""Core runtime: SystemRuntime orchestration and runtime assembly."""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any, Optional, Protocol, TYPE_CHECKING

from core.contracts import CaptureRecord, TriggerEvent
from trigger import TriggerConfig, TriggerGateway
from utils.lifecycle import LoopRunner, drain_queue_nowait

if TYPE_CHECKING:  # pragma: no cover
    from core.pipeline import BoothPipeline
    from output.manager import OutputManager
    from output.window import PreviewWindow
    from .worker import CameraWorker, CommandWorker, FrameQueue, FrameWorker

L = logging.getLogger("snapbooth.runtime")

DEFAULT_TRIGGER_QUEUE_CAPACITY = 8
HEALTH_LOG_INTERVAL_S = 10.0


@dataclass
class RuntimeBuildConfig:
    save_dir: str
    history_size: int = 10
    debounce_ms: float = 200.0
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    enable_http: bool = True
    enable_tcp_trigger: bool = False
    frame_queue_capacity: int = 2
    write_csv: bool = True
    preview_quality: int = 80
    enable_window: bool = False
    window_title: str = "SnapBooth"
    window_poll_ms: int = 10


def build_runtime_config_from_loaded_config(cfg) -> RuntimeBuildConfig:
    return RuntimeBuildConfig(
        save_dir=cfg.runtime.save_dir,
        history_size=cfg.output.hmi.history_size,
        debounce_ms=cfg.trigger.debounce_ms,
        http_host=cfg.comm.http.host,
        http_port=cfg.comm.http.port,
        enable_http=cfg.output.hmi.enabled,
        enable_tcp_trigger=bool(cfg.trigger.tcp.enabled),
        frame_queue_capacity=cfg.runtime.frame_queue_capacity,
        write_csv=cfg.output.write_csv,
        preview_quality=cfg.output.hmi.preview_quality,
        enable_window=bool(cfg.output.window.enabled),
        window_title=cfg.output.window.title,
        window_poll_ms=cfg.output.window.poll_ms,
    )


class TriggerHandle(Protocol):
    def start(self) -> None: ...
    def stop(self) -> None: ...
    def raise_if_failed(self) -> None: ...


class ResultReadApi(Protocol):
    @property
    def latest_records(self) -> list[CaptureRecord]: ...

    @property
    def max_records(self) -> int: ...

    def latest_preview(self) -> Optional[tuple[bytes, str]]: ...

    def stats(self) -> dict[str, Any]: ...

    def heartbeat_seq(self) -> int | None: ...


@dataclass
class AppContext:
    trigger_gateway: TriggerGateway
    results: ResultReadApi
    booth: "BoothPipeline"
    backgrounds: Any


class SystemRuntime:
    """Coordinates worker lifecycles, outputs, triggers, and health monitoring."""

    def __init__(
        self,
        app_context: AppContext,
        camera_worker: CameraWorker,
        frame_worker: FrameWorker,
        command_worker: CommandWorker,
        output_mgr: OutputManager,
        loop_runner: LoopRunner,
        *,
        frames: FrameQueue,
        segmenter: Any = None,
        window: PreviewWindow | None = None,
    ):
        self.app_context = app_context
        self.camera_worker = camera_worker
        self.frame_worker = frame_worker
        self.command_worker = command_worker
        self.output_mgr = output_mgr
        self.loop_runner = loop_runner
        self.frames = frames
        self.segmenter = segmenter
        self.window = window
        self.triggers: list[TriggerHandle] = []
        self.build_cfg: RuntimeBuildConfig | None = None
        self.trigger_cfg: TriggerConfig | None = None

        self._stop_evt = threading.Event()
        self._camera_session_stack: ExitStack | None = None
        self._started = False
        self._stopped = False

    @property
    def workers(self):
        return (self.camera_worker, self.frame_worker, self.command_worker)

    def start(
        self,
        triggers: Optional[list[TriggerHandle]] = None,
    ):
        if self._started:
            raise RuntimeError(
                "SystemRuntime is single-use; start() may only be called once"
            )
        if self._stopped:
            raise RuntimeError("SystemRuntime is stopped and cannot be started again")
        self._started = True
        self.triggers = list(triggers or [])
        try:
            self._enter_camera_session()

            self.command_worker.start()
            self.frame_worker.start()
            self.camera_worker.start()

            self.output_mgr.start()

            for t in list(self.triggers):
                t.start()
            if self.window is not None:
                self.window.open()
        except Exception:
            L.exception("Runtime start failed; rolling back partial startup")
            try:
                self.stop()
            except Exception:
                L.exception("Runtime rollback stop failed")
            raise

    def request_stop(self):
        self._stop_evt.set()

    def run(self, runtime_limit_s: float | None = None):
        if not self._started:
            raise RuntimeError("SystemRuntime.run() requires start() first")
        start_ts = time.perf_counter()
        next_heartbeat_ts = start_ts + 1.0
        next_health_ts = start_ts + HEALTH_LOG_INTERVAL_S
        health_mark = (start_ts, self.frame_worker.processed)
        # The preview window needs a fast main-thread poll; otherwise 100ms is plenty.
        wait_s = 0.001 if self.window is not None else 0.1
        try:
            while not self._stop_evt.wait(wait_s):
                if self.window is not None:
                    self.window.poll()
                now_ts = time.perf_counter()
                if now_ts >= next_heartbeat_ts:
                    self.output_mgr.tick()
                    next_heartbeat_ts = now_ts + 1.0
                if now_ts >= next_health_ts:
                    health_mark = self._log_health(now_ts, health_mark)
                    next_health_ts = now_ts + HEALTH_LOG_INTERVAL_S
                self._raise_if_worker_stopped()
                self._raise_if_trigger_stopped()
                self._raise_if_output_stopped()
                if (
                    runtime_limit_s is not None
                    and (now_ts - start_ts) >= runtime_limit_s
                ):
                    L.info(
                        "Runtime limit reached (%ss); shutting down service",
                        runtime_limit_s,
                    )
                    self.request_stop()
        finally:
            self.stop()

    def _log_health(self, now_ts: float, mark: tuple[float, int]) -> tuple[float, int]:
        last_ts, last_count = mark
        processed = self.frame_worker.processed
        elapsed = max(now_ts - last_ts, 1e-6)
        status = self.app_context.booth.status()
        L.info(
            "Health fps=%.1f frames=%d dropped=%d state=%s dist=%.2fm in_range=%s bg=%s captures=%d",
            (processed - last_count) / elapsed,
            processed,
            self.frames.dropped,
            status.state,
            status.distance_m,
            status.in_range,
            status.background_id,
            status.capture_count,
        )
        return now_ts, processed

    def _raise_if_worker_stopped(self):
        for worker in self.workers:
            if worker.has_started and not worker.is_alive:
                err = worker.last_error
                if err is not None:
                    raise RuntimeError(
                        f"{worker.name} stopped unexpectedly ({type(err).__name__})"
                    ) from err
                raise RuntimeError(f"{worker.name} stopped unexpectedly")

    def _raise_if_trigger_stopped(self):
        for trig in self.triggers:
            trig.raise_if_failed()

    def _raise_if_output_stopped(self):
        self.output_mgr.raise_if_failed()

    def stop(self):
        if self._stopped:
            return
        self._stopped = True
        stop_t0 = time.perf_counter()
        stage_t0 = stop_t0

        def _log_stage(name: str):
            nonlocal stage_t0
            now = time.perf_counter()
            L.debug("Shutdown stage=%s elapsed=%.1fms", name, (now - stage_t0) * 1000)
            stage_t0 = now

        def _run_stage(name: str, fn):
            try:
                fn()
            except Exception:
                L.exception("Shutdown stage failed: %s", name)
            finally:
                _log_stage(name)

        def _stop_triggers():
            for t in list(self.triggers):
                try:
                    t.stop()
                except Exception:
                    L.exception("Trigger stop failed: %r", t)

        def _stop_workers():
            for worker in self.workers:
                if worker.has_started:
                    worker.stop()
            dropped = self.frames.clear()
            pending = self._drain_trigger_queue()
            if dropped or pending:
                L.debug(
                    "Discarded %d pending frame(s) and %d command(s)", dropped, pending
                )

        def _close_window():
            if self.window is not None:
                self.window.close()

        def _close_segmenter():
            close = getattr(self.segmenter, "close", None)
            if callable(close):
                close()

        _run_stage("triggers", _stop_triggers)
        _run_stage("window", _close_window)
        _run_stage("workers", _stop_workers)
        # Cancels countdown/cooldown timers and returns the booth to Idle.
        _run_stage("booth", self.app_context.booth.shutdown)
        _run_stage("output_manager", self.output_mgr.stop)
        _run_stage("async_loop", self.loop_runner.shutdown_loop)
        _run_stage("segmenter", _close_segmenter)
        _run_stage("camera_session", self._exit_camera_session)
        L.debug(
            "Shutdown stage=total elapsed=%.1fms",
            (time.perf_counter() - stop_t0) * 1000,
        )

    def _drain_trigger_queue(self) -> int:
        return drain_queue_nowait(self.app_context.trigger_gateway.trigger_queue)

    def _enter_camera_session(self):
        if self._camera_session_stack is not None:
            return
        stack = ExitStack()
        stack.enter_context(self.camera_worker.camera.session())
        self._camera_session_stack = stack

    def _exit_camera_session(self):
        stack = self._camera_session_stack
        if stack is None:
            return
        self._camera_session_stack = None
        stack.close()


def _build_trigger_queue() -> queue.Queue:
    return queue.Queue(maxsize=DEFAULT_TRIGGER_QUEUE_CAPACITY)


def _build_output_manager(cfg: RuntimeBuildConfig):
    from output.manager import OutputManager, ResultStore

    result_store = ResultStore(
        base_dir=cfg.save_dir,
        max_records=cfg.history_size,
        write_csv=cfg.write_csv,
        preview_quality=cfg.preview_quality,
    )
    return OutputManager(result_store)


def _build_app_context(
    cfg: RuntimeBuildConfig,
    *,
    trigger_cfg: TriggerConfig,
    trigger_queue: queue.Queue,
    output_mgr,
    pipeline,
    backgrounds,
) -> AppContext:
    ip_whitelist = set(trigger_cfg.ip_whitelist) if trigger_cfg.ip_whitelist else None

    def on_trigger_overflow(dropped_event: TriggerEvent):
        L.warning(
            "[%5s] command %s from %s dropped before it was applied",
            dropped_event.trigger_seq,
            dropped_event.command,
            dropped_event.source,
        )

    return AppContext(
        trigger_gateway=TriggerGateway(
            trigger_queue,
            debounce_ms=cfg.debounce_ms,
            ip_whitelist=ip_whitelist,
            on_overflow=on_trigger_overflow,
        ),
        results=output_mgr,
        booth=pipeline,
        backgrounds=backgrounds,
    )


def _wire_output_channels(
    cfg: RuntimeBuildConfig,
    *,
    app_context: AppContext,
    output_mgr,
    loop_runner: LoopRunner,
):
    if cfg.enable_http:
        from output.hmi import HmiOutput

        project_root = os.path.dirname(os.path.dirname(__file__))
        index_path = os.path.join(project_root, "output", "web", "index.html")
        output_mgr.add_channel(
            HmiOutput(
                cfg.http_host,
                cfg.http_port,
                app_context,
                index_path=index_path,
                loop_runner=loop_runner,
            )
        )


def _build_window(cfg: RuntimeBuildConfig, *, app_context: AppContext, output_mgr, on_quit):
    if not cfg.enable_window:
        return None
    from output.window import PreviewWindow

    gateway = app_context.trigger_gateway
    return PreviewWindow(
        cfg.window_title,
        frame_source=output_mgr.latest_frame,
        on_command=lambda cmd: gateway.report_command(cmd, "KEYBOARD"),
        on_quit=on_quit,
        wait_ms=cfg.window_poll_ms,
    )


def build_triggers(
    cfg: RuntimeBuildConfig,
    *,
    trigger_cfg: TriggerConfig,
    gateway: TriggerGateway,
    loop_runner: LoopRunner,
) -> list[TriggerHandle]:
    if not cfg.enable_tcp_trigger:
        return []
    from trigger.base import create_trigger

    def on_tcp_command(cmd: str, payload: object, remote_ip: object) -> bool:
        return gateway.report_command(cmd, "TCP", payload, remote_ip=remote_ip)

    return [create_trigger("tcp", trigger_cfg, on_tcp_command, loop_runner=loop_runner)]


def build_runtime(
    camera,
    *,
    config: RuntimeBuildConfig,
    segmenter,
    pipeline: "BoothPipeline",
    backgrounds: Any = None,
    trigger_cfg: TriggerConfig | None = None,
    loop_runner: LoopRunner | None = None,
):
    from .worker import CameraWorker, CommandWorker, FrameQueue, FrameWorker

    loop_runner = loop_runner or LoopRunner()
    cfg = config
    if segmenter is None:
        raise ValueError("segmenter is required")
    if pipeline is None:
        raise ValueError("pipeline is required")
    trigger_cfg = trigger_cfg or TriggerConfig()
    trigger_queue = _build_trigger_queue()
    output_mgr = _build_output_manager(cfg)
    if pipeline.record_sink is None:
        pipeline.record_sink = output_mgr.publish
    app_context = _build_app_context(
        cfg,
        trigger_cfg=trigger_cfg,
        trigger_queue=trigger_queue,
        output_mgr=output_mgr,
        pipeline=pipeline,
        backgrounds=backgrounds or pipeline.backgrounds,
    )
    _wire_output_channels(
        cfg,
        app_context=app_context,
        output_mgr=output_mgr,
        loop_runner=loop_runner,
    )
    frames = FrameQueue(maxsize=max(1, int(cfg.frame_queue_capacity)))
    runtime = SystemRuntime(
        app_context,
        CameraWorker(camera, frames),
        FrameWorker(frames, segmenter, pipeline, frame_sink=output_mgr.publish_frame),
        CommandWorker(trigger_queue, pipeline),
        output_mgr,
        loop_runner=loop_runner,
        frames=frames,
        segmenter=segmenter,
    )
    runtime.window = _build_window(
        cfg, app_context=app_context, output_mgr=output_mgr, on_quit=runtime.request_stop
    )
    runtime.build_cfg = cfg
    runtime.trigger_cfg = trigger_cfg
    return runtime


def build_runtime_from_loaded_config(
    camera,
    cfg,
    *,
    segmenter,
    loop_runner: LoopRunner | None = None,
):
    from core.pipeline import build_pipeline_from_loaded_config
    from output.backgrounds import build_background_catalog_from_loaded_config
    from output.export import build_export_sink_from_loaded_config
    from trigger import build_trigger_config_from_loaded_config

    runtime_cfg = build_runtime_config_from_loaded_config(cfg)
    catalog = build_background_catalog_from_loaded_config(cfg)
    pipeline = build_pipeline_from_loaded_config(
        cfg,
        backgrounds=catalog,
        export_sink=build_export_sink_from_loaded_config(cfg),
    )
    return build_runtime(
        camera,
        config=runtime_cfg,
        segmenter=segmenter,
        pipeline=pipeline,
        backgrounds=catalog,
        trigger_cfg=build_trigger_config_from_loaded_config(cfg),
        loop_runner=loop_runner,
    )


__all__ = [
    "AppContext",
    "ResultReadApi",
    "RuntimeBuildConfig",
    "SystemRuntime",
    "build_runtime",
    "build_runtime_config_from_loaded_config",
    "build_runtime_from_loaded_config",
    "build_triggers",
]
