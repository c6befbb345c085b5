# -- coding: utf-8 --
"""Remote command sources (TCP today) and their registry.

A trigger only parses its transport; admission (debounce, allowlist,
queueing) is the gateway's job, reached through the `on_trigger` callback.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Type

from core.registry import register_named, resolve_registered

L = logging.getLogger("snapbooth.trigger")

_registry: Dict[str, Type["BaseTrigger"]] = {}

# on_trigger(command, payload, remote_ip) -> accepted
CommandCallback = Callable[[str, object, object], bool]


@dataclass
class TriggerConfig:
    host: str = "0.0.0.0"
    port: int = 9000
    # Bare word that means AUTO, for buttons/PLCs that can only send one token.
    word: bytes = b"TRIG"
    debounce_ms: float = 200.0
    ip_whitelist: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.word, bytes):
            self.word = str(self.word).encode("utf-8")


class BaseTrigger(ABC):
    source = "REMOTE"

    def __init__(self, cfg: TriggerConfig, on_trigger: CommandCallback):
        self.cfg = cfg
        self.on_trigger = on_trigger
        self.accepted = 0
        self.rejected = 0

    def report(self, command: str, payload: object = None, remote: object = None) -> bool:
        try:
            ok = bool(self.on_trigger(command, payload, remote))
        except Exception:
            L.exception("%s command handler failed for %s", self.source, command)
            ok = False
        if ok:
            self.accepted += 1
        else:
            self.rejected += 1
            L.debug("%s %s from %s not accepted", self.source, command, remote)
        return ok

    @abstractmethod
    def start(self):
        pass

    @abstractmethod
    def stop(self):
        pass

    def raise_if_failed(self):
        return None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()


def register_trigger(name: str):
    return register_named(_registry, name)


def create_trigger(
    name: str, cfg: TriggerConfig, on_trigger: CommandCallback, **kwargs
) -> BaseTrigger:
    cls = resolve_registered(
        _registry,
        name,
        package=__package__ or "trigger",
        unknown_label="trigger type",
    )
    return cls(cfg, on_trigger, **kwargs)


def build_trigger_config_from_loaded_config(cfg) -> TriggerConfig:
    return TriggerConfig(
        host=cfg.comm.tcp.host,
        port=cfg.comm.tcp.port,
        word=cfg.trigger.tcp.word,
        debounce_ms=cfg.trigger.debounce_ms,
        ip_whitelist=list(cfg.trigger.ip_whitelist or []),
    )


__all__ = [
    "CommandCallback",
    "TriggerConfig",
    "BaseTrigger",
    "register_trigger",
    "create_trigger",
    "build_trigger_config_from_loaded_config",
]
