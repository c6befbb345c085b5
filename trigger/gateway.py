import contextlib
import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Set

from core.contracts import TriggerEvent

L = logging.getLogger("snapbooth.gateway")

CMD_AUTO = "AUTO"
CMD_MANUAL = "MANUAL"
CMD_CAPTURE = "CAPTURE"
CMD_NEXT_BG = "NEXT_BG"
CMD_PREV_BG = "PREV_BG"
CMD_SET_BG = "SET_BG"
COMMANDS = (CMD_AUTO, CMD_MANUAL, CMD_CAPTURE, CMD_NEXT_BG, CMD_PREV_BG, CMD_SET_BG)


class TriggerGateway:
	"""Admission control for operator commands (debounce, IP allowlist, sequencing).

	Accepted commands are queued as TriggerEvents; a single consumer applies them
	to the booth so request handlers never block on an export.
	"""

	def __init__(
		self,
		trigger_queue: queue.Queue,
		debounce_ms: float = 200.0,
		ip_whitelist: Optional[Set[str]] = None,
		on_overflow: Optional[Callable[[TriggerEvent], None]] = None,
	):
		self.trigger_queue = trigger_queue
		self.debounce_ms = max(debounce_ms, 0.0)
		# Empty whitelist means disabled; non-empty set enforces allowlist.
		self.ip_whitelist = set(ip_whitelist) if ip_whitelist else None
		# Debounce is per command so a background flip never eats a capture press.
		self._last_accept_ts: dict[str, float] = {}
		self._lock = threading.Lock()
		self.on_overflow = on_overflow
		self._seq = 0

	def report_command(
		self,
		command: str,
		source: str,
		payload: object | None = None,
		remote_ip: object | None = None,
	) -> bool:
		cmd = str(command or "").strip().upper()
		if cmd not in COMMANDS:
			L.warning("Unknown command %r from %s", command, source)
			return False
		if cmd == CMD_SET_BG and not str(payload or "").strip():
			L.debug("SET_BG without background id from %s", source)
			return False
		now = time.perf_counter()
		with self._lock:
			if self.ip_whitelist is not None:
				remote_ip_str = self._normalize_ip(remote_ip)
				if remote_ip_str not in self.ip_whitelist:
					L.debug("Reject %s from disallowed IP %s", cmd, remote_ip)
					return False

			last = self._last_accept_ts.get(cmd, 0.0)
			if self.debounce_ms and last and (now - last) * 1000 < self.debounce_ms:
				L.debug("Debounce drop %s from %s", cmd, source)
				return False

			self._last_accept_ts[cmd] = now
			self._seq += 1
			event = TriggerEvent(
				trigger_seq=self._seq,
				source=source,
				command=cmd,
				triggered_at=datetime.now(timezone.utc),
				monotonic_ms=int(now * 1000),
				payload=payload,
			)
		try:
			self.trigger_queue.put_nowait(event)
			return True
		except queue.Full:
			dropped = None
			with contextlib.suppress(queue.Empty):
				dropped = self.trigger_queue.get_nowait()
				with contextlib.suppress(ValueError):
					self.trigger_queue.task_done()
			L.warning("Trigger queue full, dropping oldest and accepting %s from %s", cmd, source)
			if dropped and self.on_overflow:
				try:
					self.on_overflow(dropped)
				except Exception:
					L.exception("on_overflow callback failed")
			try:
				self.trigger_queue.put_nowait(event)
				return True
			except queue.Full:
				L.warning("Trigger queue still full, drop %s from %s", cmd, source)
			return False

	def reset(self):
		with self._lock:
			self._last_accept_ts.clear()
			self._seq = 0

	@staticmethod
	def _normalize_ip(remote_ip: object) -> str:
		if isinstance(remote_ip, tuple) and remote_ip:
			return str(remote_ip[0])
		return str(remote_ip) if remote_ip is not None else ""


__all__ = [
	"CMD_AUTO",
	"CMD_CAPTURE",
	"CMD_MANUAL",
	"CMD_NEXT_BG",
	"CMD_PREV_BG",
	"CMD_SET_BG",
	"COMMANDS",
	"TriggerGateway",
]
