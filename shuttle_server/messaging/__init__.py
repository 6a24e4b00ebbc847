"""Real-time presence and messaging for the shuttle app.

This module provides:
- Conversations keyed by type and participant set (student/driver/support/admin)
- A message pipeline with delivery and read receipts
- Typing indicators with a read-time TTL
- A presence registry with multi-device support
"""

from shuttle_server.messaging.models import (
    Message, Conversation, Participant, UserPresence, TypingIndicator, ConversationSummary, UserSummary,
    MessageType, MessageState, ConversationType, ConversationStatus, Priority, UserRole
)
from shuttle_server.messaging.presence import PresenceRegistry, InMemoryPresenceRegistry
from shuttle_server.messaging.service import (
    MessagingService, get_messaging_service, configure_messaging_service
)

__all__ = [
    # Models
    'Message', 'Conversation', 'Participant', 'UserPresence', 'TypingIndicator',
    'ConversationSummary', 'UserSummary',
    'MessageType', 'MessageState', 'ConversationType', 'ConversationStatus', 'Priority', 'UserRole',
    # Presence
    'PresenceRegistry', 'InMemoryPresenceRegistry',
    # Service
    'MessagingService', 'get_messaging_service', 'configure_messaging_service'
]
