"""WebSocket module for real-time communication.

This module provides:
- Event Emitter for chat, typing and presence events
- Room naming shared by the hub, the handlers and the emitter

The hub (websocket.hub) and the chat handler (websocket.handlers) are
imported where the application is assembled.
"""

from shuttle_server.websocket.event_emitter import EventEmitter, user_room, conversation_room

__all__ = ['EventEmitter', 'user_room', 'conversation_room']
