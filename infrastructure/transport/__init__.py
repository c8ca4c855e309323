"""Transport engine adapters."""
from .aiortc_engine import AiortcTransportEngine, transport_config_from_settings


__all__ = [
    "AiortcTransportEngine",
    "transport_config_from_settings",
]
