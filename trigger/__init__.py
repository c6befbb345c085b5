from .base import (
    TriggerConfig,
    BaseTrigger,
    register_trigger,
    create_trigger,
    build_trigger_config_from_loaded_config,
)
from .gateway import COMMANDS, TriggerGateway

__all__ = [
    "COMMANDS",
    "TriggerConfig",
    "BaseTrigger",
    "register_trigger",
    "create_trigger",
    "build_trigger_config_from_loaded_config",
    "TriggerGateway",
]
