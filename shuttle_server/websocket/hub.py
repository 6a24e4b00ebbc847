"""Realtime gateway hub.

Owns the connection lifecycle on top of Flask-SocketIO:

    connecting -> authenticated -> subscribed -> closed

- connect: verify the token (auth dict, Authorization header or ``token``
  query arg). A bad token refuses the connection before anything is
  registered. Otherwise the connection is registered in the presence
  registry, joins ``user:<id>`` and ``conv:<id>`` for each active
  conversation, receives ``authenticated`` and then every message that
  was waiting for it.
- disconnect: unregister; when it was the user's last connection the
  presence listener tells the user's contacts and clears typing rows.
"""
import logging
import threading
from enum import Enum
from typing import Dict, Optional, Set

from flask import Flask, request
from flask_socketio import SocketIO, emit, join_room, ConnectionRefusedError

from shuttle_server.exception import AuthenticationError, MessagingError
from shuttle_server.messaging.presence import PresenceEvent
from shuttle_server.security.authentication import AuthSecurity, Identity, get_bearer_token
from shuttle_server.utils.time_utils import now_utc, to_iso
from shuttle_server.websocket.event_emitter import EventEmitter, user_room, conversation_room

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = 'connecting'
    AUTHENTICATED = 'authenticated'
    SUBSCRIBED = 'subscribed'
    CLOSED = 'closed'


class ConnectionInfo:
    def __init__(self, sid: str, identity: Identity):
        self.sid = sid
        self.identity = identity
        self.state = ConnectionState.AUTHENTICATED
        self.conversations: Set[int] = set()
        self.connected_at = now_utc()

    @property
    def user_id(self) -> int:
        return self.identity.user_id

    def subscribe(self, conversation_id: int):
        self.conversations.add(conversation_id)
        self.state = ConnectionState.SUBSCRIBED

    def unsubscribe(self, conversation_id: int):
        self.conversations.discard(conversation_id)
        if not self.conversations:
            self.state = ConnectionState.AUTHENTICATED


def extract_token(auth=None) -> Optional[str]:
    """Token from the Socket.IO auth payload, the Authorization header or the query string."""
    if isinstance(auth, dict) and auth.get('token'):
        return str(auth['token'])
    token = get_bearer_token(request.headers)
    if token:
        return token
    return request.args.get('token') or None


class WebSocketHub:
    """Centralized WebSocket Hub for real-time messaging."""

    def __init__(self, service, socketio: SocketIO = None):
        self.service = service
        self.socketio = socketio
        self.connections: Dict[str, ConnectionInfo] = {}
        self._lock = threading.RLock()
        self._chat_handler = None
        self._initialized = False

    def init_app(self, app: Flask, socketio: SocketIO):
        """Initialize the WebSocket hub."""
        logger.debug("WS_HUB: init app=%s, mode=%s", app.name, getattr(socketio, 'async_mode', '?'))
        self.socketio = socketio
        self.app = app
        self.service.emitter.socketio = socketio

        self._register_handlers()
        self._init_chat_handler()
        self.service.registry.add_listener(self.on_presence_change)
        self.service.add_conversation_listener(self.on_conversation_created)

        self._initialized = True
        logger.debug("WS_HUB: initialized")

    def _init_chat_handler(self):
        from shuttle_server.websocket.handlers.chat_handler import ChatHandler
        self._chat_handler = ChatHandler(self.socketio, self, self.service)
        self._chat_handler.register_handlers()

    # =========================================================================
    # Connection bookkeeping
    # =========================================================================

    def get_connection(self, sid: Optional[str] = None) -> Optional[ConnectionInfo]:
        if sid is None:
            sid = getattr(request, 'sid', None)
        with self._lock:
            return self.connections.get(sid)

    def subscribe(self, sid: str, conversation_id: int):
        self.socketio.server.enter_room(sid, conversation_room(conversation_id), namespace='/')
        with self._lock:
            info = self.connections.get(sid)
            if info is not None:
                info.subscribe(conversation_id)

    def unsubscribe(self, sid: str, conversation_id: int):
        self.socketio.server.leave_room(sid, conversation_room(conversation_id), namespace='/')
        with self._lock:
            info = self.connections.get(sid)
            if info is not None:
                info.unsubscribe(conversation_id)

    def disconnect_connection(self, sid: str):
        """Close a connection from the server side (used for stale connections)."""
        logger.info("WS closing stale connection sid=%s", sid)
        self.socketio.server.disconnect(sid, namespace='/')

    # =========================================================================
    # Listeners
    # =========================================================================

    def on_presence_change(self, event: PresenceEvent):
        """Tell every contact of the user, once, and drop typing rows on going offline."""
        conversation_ids = self.service.conversations.conversation_ids_for_user(event.user_id)
        contacts: Dict[int, list] = {}
        for conversation_id in conversation_ids:
            for user_id in self.service.conversations.participant_ids(conversation_id):
                if user_id != event.user_id:
                    contacts.setdefault(user_id, []).append(conversation_id)
        for user_id, shared in contacts.items():
            if not self.service.registry.is_online(user_id):
                continue
            self.service.emitter.emit_to_user(user_id, EventEmitter.PRESENCE_UPDATE, {
                'userId': event.user_id,
                'status': 'online' if event.is_online else 'offline',
                'isOnline': event.is_online,
                'role': event.role.value if event.role else None,
                'conversationIds': shared,
                'at': to_iso(event.at)
            })
        if not event.is_online:
            self.service.typing.clear_user(event.user_id, conversation_ids)

    def on_conversation_created(self, conversation, participant_ids):
        """Subscribe the online participants' connections to a new conversation."""
        for user_id in participant_ids:
            for sid in self.service.registry.connections_for(user_id):
                self.subscribe(sid, conversation.conversation_id)

    # =========================================================================
    # Connection Events
    # =========================================================================

    def _register_handlers(self):

        @self.socketio.on_error_default
        def default_error_handler(e):
            logger.error("WS error: %s", e)

        @self.socketio.on('connect')
        def handle_connect(auth=None):
            """Authenticate, register and subscribe a new connection."""
            sid = request.sid
            logger.debug("WS connect: sid=%s, ip=%s", sid, request.remote_addr)
            try:
                identity = AuthSecurity.verify(extract_token(auth))
            except AuthenticationError as e:
                logger.warning("WS auth failed: sid=%s (%s)", sid, e.message)
                raise ConnectionRefusedError(e.to_dict())

            info = ConnectionInfo(sid, identity)
            with self._lock:
                self.connections[sid] = info
            try:
                self.service.remember_user(identity)
                self.service.registry.register_connection(identity.user_id, sid, role=identity.role,
                                                          name=identity.name)
                join_room(user_room(identity.user_id))
                conversation_ids = self.service.conversations.conversation_ids_for_user(identity.user_id)
                for conversation_id in conversation_ids:
                    join_room(conversation_room(conversation_id))
                    info.subscribe(conversation_id)
            except MessagingError as e:
                logger.error("WS connect failed for user %s: %s", identity.user_id, e.message)
                with self._lock:
                    self.connections.pop(sid, None)
                self.service.registry.unregister_connection(sid)
                info.state = ConnectionState.CLOSED
                raise ConnectionRefusedError(e.to_dict())

            logger.info("WS connected: user=%s, sid=%s", identity.user_id, sid)
            emit(EventEmitter.AUTHENTICATED, {
                'userId': identity.user_id,
                'role': identity.role,
                'socketId': sid,
                'conversationIds': sorted(info.conversations),
                'state': info.state.value
            })
            try:
                self.service.deliver_pending(identity.user_id, sorted(info.conversations))
            except MessagingError as e:
                # undelivered messages stay pending for the next connection
                logger.warning("Delivery sweep failed for user %s: %s", identity.user_id, e.message)
            return True

        @self.socketio.on('disconnect')
        def handle_disconnect(*args):
            """Unregister the connection; presence listeners handle the rest."""
            sid = request.sid
            with self._lock:
                info = self.connections.pop(sid, None)
            if info is None:
                return
            info.state = ConnectionState.CLOSED
            change = self.service.registry.unregister_connection(sid)
            logger.info("WS disconnected: user=%s, sid=%s, offline=%s",
                        info.user_id, sid, bool(change and change.went_offline))
