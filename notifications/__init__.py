"""Room broadcast for operator dashboards."""
from notifications.notifier import InMemoryNotifier, Notifier, RedisNotifier, create_notifier
from notifications.rooms import ConversationNotifier, chat_room, conversation_rooms

__all__ = [
    "Notifier", "InMemoryNotifier", "RedisNotifier", "create_notifier",
    "ConversationNotifier", "chat_room", "conversation_rooms",
]
