"""Messaging service layer.

Wires the conversation manager, message pipeline, typing service and
presence registry over one ChatStore, and exposes the operations the REST
routes and the socket gateway call. Every operation takes the caller's
verified identity from the auth layer.
"""
import logging
from typing import Optional, Dict, Any, List, Callable, Tuple

from shuttle_server.exception import MessagingError
from shuttle_server.messaging.conversations import ConversationManager
from shuttle_server.messaging.models import Conversation, ConversationSummary, Message, User, UserSummary
from shuttle_server.messaging.pipeline import MessagePipeline
from shuttle_server.messaging.presence import PresenceRegistry, InMemoryPresenceRegistry
from shuttle_server.messaging.typing_indicators import TypingService
from shuttle_server.security.authentication import Identity
from shuttle_server.utils.retry import retry_on_unavailable
from shuttle_server.utils.time_utils import now_utc
from shuttle_server.websocket.event_emitter import EventEmitter

logger = logging.getLogger(__name__)


class MessagingService:
    """High-level messaging service."""

    def __init__(self, store, registry: Optional[PresenceRegistry] = None, emitter: Optional[EventEmitter] = None,
                 clock: Callable = now_utc, max_message_length: int = 1000, typing_ttl_seconds: int = 300,
                 retry_attempts: int = 3, retry_backoff: float = 0.1, page_size: int = 50, page_max: int = 200):
        self.store = store
        self.registry = registry or InMemoryPresenceRegistry(store, clock=clock)
        self.emitter = emitter or EventEmitter()
        self.clock = clock
        self.page_size = page_size
        self.page_max = page_max
        self.conversations = ConversationManager(store, clock=clock, retry_attempts=retry_attempts,
                                                 retry_backoff=retry_backoff)
        self.pipeline = MessagePipeline(store, self.conversations, self.registry, self.emitter, clock=clock,
                                        max_message_length=max_message_length, retry_attempts=retry_attempts,
                                        retry_backoff=retry_backoff)
        self.typing = TypingService(store, self.conversations, self.emitter, clock=clock,
                                    ttl_seconds=typing_ttl_seconds)
        self._conversation_listeners: List[Callable[[Conversation, List[int]], None]] = []

    @classmethod
    def from_config(cls, store, registry=None, emitter=None, settings=None):
        if settings is None:
            from config import config as settings
        return cls(
            store, registry=registry, emitter=emitter,
            max_message_length=settings.MAX_MESSAGE_LENGTH,
            typing_ttl_seconds=settings.TYPING_TTL_SECONDS,
            retry_attempts=settings.STORAGE_RETRY_ATTEMPTS,
            retry_backoff=settings.STORAGE_RETRY_BACKOFF_SECONDS,
            page_size=settings.MESSAGE_PAGE_SIZE,
            page_max=settings.MESSAGE_PAGE_MAX
        )

    def add_conversation_listener(self, listener: Callable[[Conversation, List[int]], None]):
        """Called with (conversation, participant_ids) whenever a conversation is created."""
        self._conversation_listeners.append(listener)

    # =========================================================================
    # Users
    # =========================================================================

    @retry_on_unavailable()
    def remember_user(self, identity: Identity) -> User:
        """Mirror the authenticated identity into the users collection."""
        existing = self.store.get_user(identity.user_id)
        user = User(
            identity.user_id,
            name=identity.name or (existing.name if existing else None),
            email=existing.email if existing else None,
            role=identity.role or (existing.role if existing else None),
            is_online=self.registry.is_online(identity.user_id),
            last_seen=self.clock()
        )
        return self.store.save_user(user)

    def list_online_users(self, role: Optional[str] = None) -> List[UserSummary]:
        return self.registry.list_online(role)

    # =========================================================================
    # Conversation Operations
    # =========================================================================

    def create_or_find_conversation(self, identity: Identity, participant_ids, conversation_type,
                                    title: Optional[str] = None, trip_id=None,
                                    priority=None) -> Tuple[ConversationSummary, bool]:
        """Return (summary, created) for the exact participant set and type."""
        conversation, created = self.conversations.find_or_create(
            participant_ids, conversation_type,
            requester_id=identity.user_id, requester_is_admin=identity.is_admin,
            title=title, trip_id=trip_id, priority=priority
        )
        participants = self.conversations.participant_ids(conversation.conversation_id)
        if created:
            for listener in list(self._conversation_listeners):
                try:
                    listener(conversation, participants)
                except Exception:
                    logger.exception("Conversation listener failed for %s", conversation.conversation_id)
        summary = self.conversations.get_summary(conversation.conversation_id, identity.user_id,
                                                 is_admin=identity.is_admin)
        return summary, created

    def list_conversations(self, user_id: int, include_archived: bool = False) -> List[ConversationSummary]:
        return self.conversations.list_for_user(user_id, include_archived=include_archived)

    def get_conversation(self, identity: Identity, conversation_id: int) -> ConversationSummary:
        return self.conversations.get_summary(conversation_id, identity.user_id, is_admin=identity.is_admin)

    def archive_conversation(self, identity: Identity, conversation_id: int) -> Conversation:
        return self.conversations.archive(conversation_id, identity.user_id, is_admin=identity.is_admin)

    # =========================================================================
    # Message Operations
    # =========================================================================

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.page_size
        return max(1, min(int(limit), self.page_max))

    def list_messages(self, identity: Identity, conversation_id: int, limit: Optional[int] = None,
                      before: Optional[int] = None, after: Optional[int] = None) -> List[Message]:
        return self.pipeline.list_messages(conversation_id, identity.user_id, is_admin=identity.is_admin,
                                           limit=self.clamp_limit(limit), before=before, after=after)

    def send_message(self, conversation_id: int, sender_id: int, content, message_type=None,
                     reply_to: Optional[int] = None, client_message_id: Optional[str] = None) -> Message:
        return self.pipeline.send(conversation_id, sender_id, content, message_type,
                                  reply_to=reply_to, client_message_id=client_message_id)

    def mark_delivered(self, message_id: int, user_id: int) -> Message:
        return self.pipeline.mark_delivered(message_id, user_id)

    def mark_read(self, message_id: int, user_id: int) -> Message:
        return self.pipeline.mark_read(message_id, user_id)

    def mark_conversation_read(self, conversation_id: int, user_id: int) -> List[Message]:
        return self.pipeline.mark_conversation_read(conversation_id, user_id)

    def delete_message(self, message_id: int, user_id: int) -> Message:
        return self.pipeline.delete_message(message_id, user_id)

    def deliver_pending(self, user_id: int, conversation_ids: Optional[List[int]] = None) -> int:
        return self.pipeline.deliver_pending(user_id, conversation_ids)

    # =========================================================================
    # Typing
    # =========================================================================

    def start_typing(self, conversation_id: int, user_id: int, sid: Optional[str] = None):
        return self.typing.start(conversation_id, user_id, sid=sid)

    def stop_typing(self, conversation_id: int, user_id: int, sid: Optional[str] = None):
        return self.typing.stop(conversation_id, user_id, sid=sid)

    def list_typing(self, identity: Identity, conversation_id: int):
        return self.typing.list_active(conversation_id, identity.user_id, is_admin=identity.is_admin)

    # =========================================================================
    # Health
    # =========================================================================

    def health(self) -> Dict[str, Any]:
        try:
            storage_ok = self.store.ping()
        except MessagingError as e:
            logger.warning("Storage ping failed: %s", e.message)
            storage_ok = False
        return {
            'storage': 'ok' if storage_ok else 'unavailable',
            'connections': self.registry.connection_count(),
            'online_users': len(self.registry.list_online())
        }


# Singleton instance
_messaging_service: Optional[MessagingService] = None


def configure_messaging_service(service: Optional[MessagingService]) -> Optional[MessagingService]:
    global _messaging_service
    _messaging_service = service
    return service


def get_messaging_service() -> MessagingService:
    """Get the configured messaging service."""
    if _messaging_service is None:
        raise RuntimeError('Messaging service is not configured; call create_app() first')
    return _messaging_service
