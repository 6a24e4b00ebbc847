"""Centralized Event Emitter for real-time WebSocket communication.

Every connection joins a per-user room (``user:<id>``) on authentication
and a per-conversation room (``conv:<id>``) for each conversation it is
subscribed to, so emitting never needs to know individual socket ids.

Usage:
    emitter = EventEmitter(socketio)

    # Emit to every connected device of a user
    emitter.emit_to_user(user_id, EventEmitter.MESSAGE_NEW, data)

    # Emit to everyone subscribed to a conversation
    emitter.emit_to_conversation(conversation_id, EventEmitter.TYPING_STARTED, data)
"""
import logging
from typing import Any, Dict, Optional

from shuttle_server.utils.time_utils import now_utc, to_iso

logger = logging.getLogger(__name__)


def user_room(user_id) -> str:
    return f'user:{user_id}'


def conversation_room(conversation_id) -> str:
    return f'conv:{conversation_id}'


class EventEmitter:
    """Emits messaging events through a Flask-SocketIO server."""

    # =========================================================================
    # Event Type Constants
    # =========================================================================

    # Connection Events
    AUTHENTICATED = 'authenticated'

    # Chat Events
    MESSAGE_NEW = 'message:new'
    MESSAGE_SENT = 'message:sent'
    MESSAGE_ERROR = 'message:error'
    MESSAGE_DELIVERED = 'message:delivered'
    MESSAGE_READ = 'message:read'
    MESSAGE_DELETED = 'message:deleted'
    TYPING_STARTED = 'typing:started'
    TYPING_STOPPED = 'typing:stopped'
    CONVERSATION_JOINED = 'conversation:joined'
    CONVERSATION_LEFT = 'conversation:left'

    # Presence Events
    PRESENCE_UPDATE = 'presence:update'
    DRIVERS_ONLINE = 'drivers:online'
    SUPPORT_AGENTS = 'support:agents'
    USERS_ONLINE = 'users:online'

    def __init__(self, socketio=None, namespace: str = '/'):
        self.socketio = socketio
        self.namespace = namespace

    # =========================================================================
    # Emit Methods
    # =========================================================================

    def _emit(self, event: str, payload: Dict[str, Any], room: str, skip_sid: Optional[str] = None) -> bool:
        if self.socketio is None:
            logger.error("EVENT_EMITTER: Socket.IO not initialized, cannot emit %s to %s", event, room)
            return False
        self.socketio.emit(event, payload, to=room, skip_sid=skip_sid, namespace=self.namespace)
        logger.debug("EVENT_EMITTER: emitted '%s' to %s", event, room)
        return True

    @staticmethod
    def _with_meta(event: str, data: Dict[str, Any], target: str, target_id: Any) -> Dict[str, Any]:
        return {
            **data,
            '_event': event,
            '_timestamp': to_iso(now_utc()),
            '_target': target,
            '_target_id': target_id
        }

    def emit_to_user(self, user_id, event: str, data: Dict[str, Any]) -> bool:
        """Emit event to all connected devices of a specific user."""
        return self._emit(event, self._with_meta(event, data, 'user', user_id), user_room(user_id))

    def emit_to_conversation(self, conversation_id, event: str, data: Dict[str, Any],
                             skip_sid: Optional[str] = None) -> bool:
        """Emit event to every connection subscribed to a conversation."""
        payload = self._with_meta(event, data, 'conversation', conversation_id)
        return self._emit(event, payload, conversation_room(conversation_id), skip_sid=skip_sid)
