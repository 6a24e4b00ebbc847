"""WebSocket Chat Handler.

This module handles all real-time chat operations via WebSocket.
REST is used for history loading and conversation listing; everything
live goes through here:
- Sending messages (acknowledged with the stored message or an error)
- Delivery and read receipts
- Typing indicators
- Joining and leaving conversation channels
- Heartbeats and online-user discovery

Every handler returns an ack dict ``{'success': bool, ...}``. A failed
send additionally emits ``message:error`` to the sending connection,
carrying the client's tempId, so a client never mistakes a rejected
message for one that is merely waiting to be delivered.
"""
import functools
import logging
from typing import Any, Dict, Optional

from flask import request
from flask_socketio import emit, join_room, leave_room

from shuttle_server.exception import MessagingError, ValidationError, AuthenticationError
from shuttle_server.messaging.models import UserRole
from shuttle_server.utils.helpers import parse_int
from shuttle_server.websocket.event_emitter import EventEmitter, conversation_room

logger = logging.getLogger(__name__)


def _payload(data) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Event payload must be an object')
    return data


def _first(data: Dict[str, Any], *names):
    for name in names:
        if data.get(name) is not None:
            return data.get(name)
    return None


def _error_ack(e: MessagingError, temp_id=None) -> Dict[str, Any]:
    ack = {'success': False, **e.to_dict()}
    if temp_id is not None:
        ack['tempId'] = temp_id
    return ack


class ChatHandler:
    """Handler for WebSocket chat events."""

    def __init__(self, socketio, hub, service):
        """Initialize chat handler.

        Args:
            socketio: Flask-SocketIO instance
            hub: WebSocketHub owning connection state
            service: MessagingService
        """
        self.socketio = socketio
        self.hub = hub
        self.service = service

    def _guarded(self, event_name):
        """Resolve the caller's connection and turn errors into ack dicts."""
        def decorator(fn):
            @functools.wraps(fn)
            def wrapper(data=None):
                info = self.hub.get_connection(request.sid)
                if info is None:
                    return _error_ack(AuthenticationError('Not authenticated'))
                try:
                    return fn(info, _payload(data))
                except MessagingError as e:
                    logger.warning("%s failed for user %s: %s %s", event_name, info.user_id, e.code, e.message)
                    return _error_ack(e)
                except Exception:
                    logger.exception("%s crashed for user %s", event_name, info.user_id)
                    return {'success': False, 'code': 'SERVER_ERROR', 'error': 'Server error'}
            return wrapper
        return decorator

    def register_handlers(self):
        """Register all chat WebSocket event handlers."""

        # =====================================================================
        # Message Events
        # =====================================================================

        @self.socketio.on('message:send')
        def handle_send_message(data=None):
            """Handle sending a new message.

            Data:
                conversationId: int - Target conversation
                content: str - Message content
                type: str - Message type (text, image, location, file, system)
                replyTo: int - Optional message ID being replied to
                tempId: str - Client-side temporary ID, also the idempotency key

            Response Events:
                - message:sent (to sender devices) - Confirmation with server messageId
                - message:new (to other online participants)
                - message:error (to this connection, on failure)
            """
            info = self.hub.get_connection(request.sid)
            if info is None:
                return _error_ack(AuthenticationError('Not authenticated'))
            temp_id = None
            try:
                data = _payload(data)
                temp_id = _first(data, 'tempId', 'temp_id', 'clientMessageId')
                conversation_id = parse_int(_first(data, 'conversationId', 'conversation_id'), 'conversationId')
                reply_to = _first(data, 'replyTo', 'reply_to')
                message = self.service.send_message(
                    conversation_id,
                    info.user_id,
                    _first(data, 'content', 'message'),
                    message_type=_first(data, 'type', 'messageType'),
                    reply_to=parse_int(reply_to, 'replyTo') if reply_to is not None else None,
                    client_message_id=temp_id
                )
            except MessagingError as e:
                logger.warning("message:send rejected for user %s: %s %s", info.user_id, e.code, e.message)
                ack = _error_ack(e, temp_id)
                emit(EventEmitter.MESSAGE_ERROR, ack)
                return ack
            except Exception:
                logger.exception("message:send crashed for user %s", info.user_id)
                ack = {'success': False, 'code': 'SERVER_ERROR', 'error': 'Server error', 'tempId': temp_id}
                emit(EventEmitter.MESSAGE_ERROR, ack)
                return ack
            return {'success': True, 'message': message.to_dict(), 'tempId': temp_id}

        @self.socketio.on('message:delivered')
        @self._guarded('message:delivered')
        def handle_message_delivered(info, data):
            message_id = parse_int(_first(data, 'messageId', 'message_id'), 'messageId')
            message = self.service.mark_delivered(message_id, info.user_id)
            return {'success': True, 'message': message.to_dict()}

        @self.socketio.on('message:read')
        @self._guarded('message:read')
        def handle_message_read(info, data):
            message_id = parse_int(_first(data, 'messageId', 'message_id'), 'messageId')
            message = self.service.mark_read(message_id, info.user_id)
            return {'success': True, 'message': message.to_dict()}

        @self.socketio.on('conversation:read')
        @self._guarded('conversation:read')
        def handle_conversation_read(info, data):
            conversation_id = parse_int(_first(data, 'conversationId', 'conversation_id'), 'conversationId')
            changed = self.service.mark_conversation_read(conversation_id, info.user_id)
            return {'success': True, 'conversationId': conversation_id, 'count': len(changed)}

        # =====================================================================
        # Conversation Channels
        # =====================================================================

        @self.socketio.on('conversation:join')
        @self._guarded('conversation:join')
        def handle_join(info, data):
            conversation_id = parse_int(_first(data, 'conversationId', 'conversation_id'), 'conversationId')
            self.service.conversations.require_read_access(conversation_id, info.user_id,
                                                           is_admin=info.identity.is_admin)
            join_room(conversation_room(conversation_id))
            info.subscribe(conversation_id)
            emit(EventEmitter.CONVERSATION_JOINED, {'conversationId': conversation_id})
            return {'success': True, 'conversationId': conversation_id, 'state': info.state.value}

        @self.socketio.on('conversation:leave')
        @self._guarded('conversation:leave')
        def handle_leave(info, data):
            conversation_id = parse_int(_first(data, 'conversationId', 'conversation_id'), 'conversationId')
            leave_room(conversation_room(conversation_id))
            info.unsubscribe(conversation_id)
            emit(EventEmitter.CONVERSATION_LEFT, {'conversationId': conversation_id})
            return {'success': True, 'conversationId': conversation_id, 'state': info.state.value}

        # =====================================================================
        # Typing Events
        # =====================================================================

        @self.socketio.on('typing:start')
        @self._guarded('typing:start')
        def handle_typing_start(info, data):
            conversation_id = parse_int(_first(data, 'conversationId', 'conversation_id'), 'conversationId')
            self.service.start_typing(conversation_id, info.user_id, sid=info.sid)
            return {'success': True}

        @self.socketio.on('typing:stop')
        @self._guarded('typing:stop')
        def handle_typing_stop(info, data):
            conversation_id = parse_int(_first(data, 'conversationId', 'conversation_id'), 'conversationId')
            self.service.stop_typing(conversation_id, info.user_id, sid=info.sid)
            return {'success': True}

        # =====================================================================
        # Presence Events
        # =====================================================================

        @self.socketio.on('presence:ping')
        @self._guarded('presence:ping')
        def handle_ping(info, data):
            return {'success': self.service.registry.touch(info.sid)}

        @self.socketio.on('drivers:online')
        @self._guarded('drivers:online')
        def handle_drivers_online(info, data):
            return self._online_reply(EventEmitter.DRIVERS_ONLINE, 'drivers', UserRole.DRIVER.value)

        @self.socketio.on('support:agents')
        @self._guarded('support:agents')
        def handle_support_agents(info, data):
            return self._online_reply(EventEmitter.SUPPORT_AGENTS, 'agents', UserRole.SUPPORT.value)

        @self.socketio.on('users:online')
        @self._guarded('users:online')
        def handle_users_online(info, data):
            return self._online_reply(EventEmitter.USERS_ONLINE, 'users', data.get('role'))

    def _online_reply(self, event: str, key: str, role: Optional[str]) -> Dict[str, Any]:
        users = [u.to_dict() for u in self.service.list_online_users(role)]
        emit(event, {key: users})
        return {'success': True, key: users}
