"""Messaging data models for shuttle chat (student, driver, support, admin).

Collections:
- users: identities mirrored from the auth service (id, name, role)
- conversations: chat threads keyed by type + participant set
- conversation_participants: one row per (conversation, user)
- chat_messages: individual messages with delivery/read stamps
- user_presence: online/offline status, one row per user
- typing_indicators: ephemeral typing rows, one per (conversation, user)
"""
from typing import Optional, Dict, Any, List, Iterable
from datetime import datetime
from enum import Enum

from shuttle_server.utils.time_utils import now_utc, ensure_aware, to_iso


class ConversationType(str, Enum):
    STUDENT_DRIVER = "student_driver"
    STUDENT_SUPPORT = "student_support"
    DRIVER_SUPPORT = "driver_support"
    ADMIN_MONITOR = "admin_monitor"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    LOCATION = "location"
    FILE = "file"
    SYSTEM = "system"


class MessageState(str, Enum):
    CREATED = "created"      # Persisted, not yet pushed to a recipient
    DELIVERED = "delivered"  # Pushed to an online recipient connection
    READ = "read"            # Explicitly acknowledged by a recipient


class UserRole(str, Enum):
    STUDENT = "student"
    DRIVER = "driver"
    ADMIN = "admin"
    SUPPORT = "support"


def _enum_value(enum_cls, value, default=None):
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    return enum_cls(value)


def coerce_role(value) -> Optional[UserRole]:
    """Map a role claim to UserRole; roles this service does not know become None."""
    if value is None or isinstance(value, UserRole):
        return value
    try:
        return UserRole(str(value).lower())
    except ValueError:
        return None


def participant_key(conversation_type, participant_ids: Iterable[int]) -> str:
    """Canonical key for a (type, participant set) pair, e.g. 'student_driver:3,7'."""
    ctype = _enum_value(ConversationType, conversation_type)
    ids = sorted(set(int(p) for p in participant_ids))
    return f"{ctype.value}:{','.join(str(i) for i in ids)}"


class User:
    """User document structure (owned by the auth service)."""

    def __init__(
        self,
        user_id: int,
        name: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[UserRole] = None,
        is_online: bool = False,
        last_seen: Optional[datetime] = None
    ):
        self.user_id = int(user_id)
        self.name = name
        self.email = email
        self.role = coerce_role(role)
        self.is_online = is_online
        self.last_seen = ensure_aware(last_seen)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'name': self.name,
            'email': self.email,
            'role': self.role.value if self.role else None,
            'isOnline': self.is_online,
            'lastSeen': to_iso(self.last_seen)
        }

    def to_db_doc(self) -> Dict[str, Any]:
        return {
            '_id': self.user_id,
            'user_id': self.user_id,
            'name': self.name,
            'email': self.email,
            'role': self.role.value if self.role else None,
            'is_online': self.is_online,
            'last_seen': self.last_seen
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'User':
        return cls(
            user_id=doc.get('user_id', doc.get('_id')),
            name=doc.get('name'),
            email=doc.get('email'),
            role=doc.get('role'),
            is_online=bool(doc.get('is_online', False)),
            last_seen=doc.get('last_seen')
        )


class Conversation:
    """Conversation document structure."""

    def __init__(
        self,
        conversation_id: Optional[int],
        conversation_type: ConversationType,
        participant_key: str,
        status: ConversationStatus = ConversationStatus.ACTIVE,
        title: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
        trip_id: Optional[str] = None,
        created_by: Optional[int] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None
    ):
        self.conversation_id = conversation_id
        self.conversation_type = _enum_value(ConversationType, conversation_type)
        self.participant_key = participant_key
        self.status = _enum_value(ConversationStatus, status, ConversationStatus.ACTIVE)
        self.title = title
        self.priority = _enum_value(Priority, priority, Priority.MEDIUM)
        self.trip_id = trip_id
        self.created_by = created_by
        self.created_at = ensure_aware(created_at) or now_utc()
        self.updated_at = ensure_aware(updated_at) or self.created_at

    @property
    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'conversationId': self.conversation_id,
            'type': self.conversation_type.value,
            'status': self.status.value,
            'title': self.title,
            'priority': self.priority.value,
            'tripId': self.trip_id,
            'createdBy': self.created_by,
            'createdAt': to_iso(self.created_at),
            'updatedAt': to_iso(self.updated_at)
        }

    def to_db_doc(self) -> Dict[str, Any]:
        return {
            '_id': self.conversation_id,
            'conversation_id': self.conversation_id,
            'conversation_type': self.conversation_type.value,
            'participant_key': self.participant_key,
            'status': self.status.value,
            'title': self.title,
            'priority': self.priority.value,
            'trip_id': self.trip_id,
            'created_by': self.created_by,
            'created_at': self.created_at,
            'updated_at': self.updated_at
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'Conversation':
        return cls(
            conversation_id=doc.get('conversation_id', doc.get('_id')),
            conversation_type=doc.get('conversation_type'),
            participant_key=doc.get('participant_key'),
            status=doc.get('status', ConversationStatus.ACTIVE),
            title=doc.get('title'),
            priority=doc.get('priority', Priority.MEDIUM),
            trip_id=doc.get('trip_id'),
            created_by=doc.get('created_by'),
            created_at=doc.get('created_at'),
            updated_at=doc.get('updated_at')
        )


class Participant:
    """A user bound to a conversation, with join/leave lifecycle and read marker.

    ``last_delivered_id`` is the highest message id pushed to this user; the
    reconnect sweep resumes after it.
    """

    def __init__(
        self,
        conversation_id: int,
        user_id: int,
        joined_at: Optional[datetime] = None,
        left_at: Optional[datetime] = None,
        is_active: bool = True,
        last_read_at: Optional[datetime] = None,
        last_delivered_id: Optional[int] = None
    ):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.joined_at = ensure_aware(joined_at) or now_utc()
        self.left_at = ensure_aware(left_at)
        self.is_active = is_active
        self.last_read_at = ensure_aware(last_read_at)
        self.last_delivered_id = last_delivered_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'conversationId': self.conversation_id,
            'userId': self.user_id,
            'joinedAt': to_iso(self.joined_at),
            'leftAt': to_iso(self.left_at),
            'isActive': self.is_active,
            'lastReadAt': to_iso(self.last_read_at),
            'lastDeliveredId': self.last_delivered_id
        }

    def to_db_doc(self) -> Dict[str, Any]:
        return {
            'conversation_id': self.conversation_id,
            'user_id': self.user_id,
            'joined_at': self.joined_at,
            'left_at': self.left_at,
            'is_active': self.is_active,
            'last_read_at': self.last_read_at,
            'last_delivered_id': self.last_delivered_id
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'Participant':
        return cls(
            conversation_id=doc.get('conversation_id'),
            user_id=doc.get('user_id'),
            joined_at=doc.get('joined_at'),
            left_at=doc.get('left_at'),
            is_active=bool(doc.get('is_active', True)),
            last_read_at=doc.get('last_read_at'),
            last_delivered_id=doc.get('last_delivered_id')
        )


class Message:
    """Message document structure."""

    def __init__(
        self,
        message_id: Optional[int],
        conversation_id: int,
        sender_id: int,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        created_at: Optional[datetime] = None,
        delivered_at: Optional[datetime] = None,
        read_at: Optional[datetime] = None,
        reply_to: Optional[int] = None,
        deleted_at: Optional[datetime] = None,
        client_message_id: Optional[str] = None
    ):
        self.message_id = message_id
        self.conversation_id = conversation_id
        self.sender_id = sender_id
        self.content = content
        self.message_type = _enum_value(MessageType, message_type, MessageType.TEXT)
        self.created_at = ensure_aware(created_at) or now_utc()
        self.delivered_at = ensure_aware(delivered_at)
        self.read_at = ensure_aware(read_at)
        self.reply_to = reply_to
        self.deleted_at = ensure_aware(deleted_at)
        self.client_message_id = client_message_id

    @property
    def state(self) -> MessageState:
        if self.read_at is not None:
            return MessageState.READ
        if self.delivered_at is not None:
            return MessageState.DELIVERED
        return MessageState.CREATED

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'messageId': self.message_id,
            'conversationId': self.conversation_id,
            'senderId': self.sender_id,
            'content': self.content if not self.deleted_at else None,
            'type': self.message_type.value,
            'state': self.state.value,
            'createdAt': to_iso(self.created_at),
            'deliveredAt': to_iso(self.delivered_at),
            'readAt': to_iso(self.read_at),
            'replyTo': self.reply_to,
            'isDeleted': self.is_deleted,
            'clientMessageId': self.client_message_id
        }

    def to_db_doc(self) -> Dict[str, Any]:
        doc = {
            '_id': self.message_id,
            'message_id': self.message_id,
            'conversation_id': self.conversation_id,
            'sender_id': self.sender_id,
            'content': self.content,
            'message_type': self.message_type.value,
            'created_at': self.created_at,
            'delivered_at': self.delivered_at,
            'read_at': self.read_at,
            'reply_to': self.reply_to,
            'deleted_at': self.deleted_at
        }
        # Left out when absent so the partial unique index ignores the row
        if self.client_message_id:
            doc['client_message_id'] = self.client_message_id
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'Message':
        return cls(
            message_id=doc.get('message_id', doc.get('_id')),
            conversation_id=doc.get('conversation_id'),
            sender_id=doc.get('sender_id'),
            content=doc.get('content'),
            message_type=doc.get('message_type', MessageType.TEXT),
            created_at=doc.get('created_at'),
            delivered_at=doc.get('delivered_at'),
            read_at=doc.get('read_at'),
            reply_to=doc.get('reply_to'),
            deleted_at=doc.get('deleted_at'),
            client_message_id=doc.get('client_message_id')
        )


class UserPresence:
    """User online/offline status, one row per user."""

    def __init__(
        self,
        user_id: int,
        is_online: bool,
        connection_id: Optional[str] = None,
        last_ping: Optional[datetime] = None,
        last_seen: Optional[datetime] = None,
        role: Optional[UserRole] = None,
        name: Optional[str] = None,
        connection_count: int = 0
    ):
        self.user_id = user_id
        self.is_online = is_online
        self.connection_id = connection_id
        self.last_ping = ensure_aware(last_ping)
        self.last_seen = ensure_aware(last_seen) or now_utc()
        self.role = coerce_role(role)
        self.name = name
        self.connection_count = connection_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'status': 'online' if self.is_online else 'offline',
            'isOnline': self.is_online,
            'role': self.role.value if self.role else None,
            'lastPing': to_iso(self.last_ping),
            'lastSeen': to_iso(self.last_seen)
        }

    def to_db_doc(self) -> Dict[str, Any]:
        return {
            '_id': self.user_id,
            'user_id': self.user_id,
            'is_online': self.is_online,
            'connection_id': self.connection_id,
            'last_ping': self.last_ping,
            'last_seen': self.last_seen,
            'role': self.role.value if self.role else None,
            'name': self.name,
            'connection_count': self.connection_count
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'UserPresence':
        return cls(
            user_id=doc.get('user_id', doc.get('_id')),
            is_online=bool(doc.get('is_online', False)),
            connection_id=doc.get('connection_id'),
            last_ping=doc.get('last_ping'),
            last_seen=doc.get('last_seen'),
            role=doc.get('role'),
            name=doc.get('name'),
            connection_count=int(doc.get('connection_count') or 0)
        )


class TypingIndicator:
    def __init__(self, conversation_id: int, user_id: int, is_typing: bool, updated_at: Optional[datetime] = None):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.is_typing = is_typing
        self.updated_at = ensure_aware(updated_at) or now_utc()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'conversationId': self.conversation_id,
            'userId': self.user_id,
            'isTyping': self.is_typing,
            'updatedAt': to_iso(self.updated_at)
        }

    def to_db_doc(self) -> Dict[str, Any]:
        return {
            'conversation_id': self.conversation_id,
            'user_id': self.user_id,
            'is_typing': self.is_typing,
            'updated_at': self.updated_at
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'TypingIndicator':
        return cls(
            conversation_id=doc.get('conversation_id'),
            user_id=doc.get('user_id'),
            is_typing=bool(doc.get('is_typing', False)),
            updated_at=doc.get('updated_at')
        )


class ConversationSummary:
    """A conversation as seen by one user: participants, last activity and unread count."""

    def __init__(
        self,
        conversation: Conversation,
        participant_ids: List[int],
        unread_count: int = 0,
        last_message: Optional[Message] = None
    ):
        self.conversation = conversation
        self.participant_ids = participant_ids
        self.unread_count = unread_count
        self.last_message = last_message

    @property
    def conversation_id(self) -> int:
        return self.conversation.conversation_id

    @property
    def last_message_at(self) -> Optional[datetime]:
        if self.last_message is not None:
            return self.last_message.created_at
        return None

    def to_dict(self) -> Dict[str, Any]:
        body = self.conversation.to_dict()
        body.update({
            'participants': self.participant_ids,
            'unreadCount': self.unread_count,
            'lastMessageAt': to_iso(self.last_message_at),
            'lastMessage': self.last_message.to_dict() if self.last_message else None
        })
        return body


class UserSummary:
    def __init__(self, user_id: int, name: Optional[str] = None, role: Optional[UserRole] = None,
                 is_online: bool = False, last_seen: Optional[datetime] = None):
        self.user_id = user_id
        self.name = name
        self.role = coerce_role(role)
        self.is_online = is_online
        self.last_seen = ensure_aware(last_seen)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'name': self.name,
            'role': self.role.value if self.role else None,
            'isOnline': self.is_online,
            'lastSeen': to_iso(self.last_seen)
        }
