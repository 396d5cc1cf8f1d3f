"""WebSocket poller service for Backpack stream channels."""

from .clients.backpack_ws import BackpackWSClient, SubscribeRequest
from .config.settings import PollerSettings, load_settings

__all__ = ["BackpackWSClient", "SubscribeRequest", "PollerSettings", "load_settings"]
