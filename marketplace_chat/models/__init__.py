from marketplace_chat.models.conversation import Conversation, ConversationCounter
from marketplace_chat.models.message import Message
from marketplace_chat.models.profile import Profile
from marketplace_chat.models.realtime_outbox_event import RealtimeOutboxEvent

__all__ = [
    "Conversation",
    "ConversationCounter",
    "Message",
    "Profile",
    "RealtimeOutboxEvent",
]
