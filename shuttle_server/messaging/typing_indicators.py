"""Typing indicators.

A ``typing:start`` stays in effect until a stop, or until TTL seconds pass
without a new start; readers apply the TTL when they list indicators. The
presence sweeper also deletes rows older than the TTL so they do not
accumulate.
"""
import logging
from datetime import timedelta
from typing import List, Optional, Callable, Iterable

from shuttle_server.exception import ForbiddenError
from shuttle_server.messaging.models import TypingIndicator
from shuttle_server.utils.time_utils import now_utc, to_iso
from shuttle_server.websocket.event_emitter import EventEmitter

logger = logging.getLogger(__name__)


class TypingService:

    def __init__(self, store, conversations, emitter: EventEmitter, clock: Callable = now_utc, ttl_seconds: int = 300):
        self.store = store
        self.conversations = conversations
        self.emitter = emitter
        self.clock = clock
        self.ttl_seconds = ttl_seconds

    def _cutoff(self):
        return self.clock() - timedelta(seconds=self.ttl_seconds)

    def _payload(self, indicator: TypingIndicator):
        return {
            'conversationId': indicator.conversation_id,
            'userId': indicator.user_id,
            'isTyping': indicator.is_typing,
            'at': to_iso(indicator.updated_at)
        }

    def start(self, conversation_id: int, user_id: int, sid: Optional[str] = None) -> TypingIndicator:
        conversation, _ = self.conversations.require_participant(conversation_id, user_id)
        if not conversation.is_active:
            raise ForbiddenError('Conversation is archived', conversation_id=conversation_id)
        indicator = self.store.set_typing(TypingIndicator(conversation_id, user_id, True, self.clock()))
        self.emitter.emit_to_conversation(conversation_id, EventEmitter.TYPING_STARTED,
                                          self._payload(indicator), skip_sid=sid)
        logger.debug("User %s typing in conversation %s", user_id, conversation_id)
        return indicator

    def stop(self, conversation_id: int, user_id: int, sid: Optional[str] = None) -> TypingIndicator:
        self.conversations.require_participant(conversation_id, user_id)
        indicator = self.store.set_typing(TypingIndicator(conversation_id, user_id, False, self.clock()))
        self.emitter.emit_to_conversation(conversation_id, EventEmitter.TYPING_STOPPED,
                                          self._payload(indicator), skip_sid=sid)
        return indicator

    def list_active(self, conversation_id: int, user_id: int, is_admin: bool = False) -> List[TypingIndicator]:
        """Participants currently typing, excluding the caller."""
        self.conversations.require_read_access(conversation_id, user_id, is_admin)
        return [t for t in self.store.list_typing(conversation_id, self._cutoff()) if t.user_id != user_id]

    def clear_user(self, user_id: int, conversation_ids: Iterable[int]) -> int:
        """Drop a user's typing rows (on going offline), announcing a stop where one was active."""
        cutoff = self._cutoff()
        for conversation_id in conversation_ids:
            active = self.store.list_typing(conversation_id, cutoff)
            if any(t.user_id == user_id for t in active):
                self.emitter.emit_to_conversation(conversation_id, EventEmitter.TYPING_STOPPED, {
                    'conversationId': conversation_id,
                    'userId': user_id,
                    'isTyping': False,
                    'at': to_iso(self.clock())
                })
        return self.store.clear_typing(user_id)

    def clear_stale(self) -> int:
        removed = self.store.clear_stale_typing(self._cutoff())
        if removed:
            logger.debug("Cleared %s stale typing indicator(s)", removed)
        return removed
