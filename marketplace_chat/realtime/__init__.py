from marketplace_chat.realtime.connection_manager import ConnectionManager
from marketplace_chat.realtime.dispatcher import RealtimeDispatcher
from marketplace_chat.realtime.publisher import RealtimePublisher

__all__ = [
    "ConnectionManager",
    "RealtimeDispatcher",
    "RealtimePublisher",
]
