"""In-process ChatStore.

Holds every row in dictionaries behind one re-entrant lock, so each
operation is atomic with respect to the others. Rows are stored as model
copies and copied again on the way out; callers never share mutable state
with the store.
"""
import copy
import itertools
import logging
import threading
from datetime import datetime
from typing import Optional, List, Dict, Iterable, Tuple

from shuttle_server.exception import ConflictError, NotFoundError
from shuttle_server.messaging.models import (
    User, Conversation, ConversationStatus, Participant, Message, UserPresence, TypingIndicator, coerce_role
)
from shuttle_server.repository.chat_store import ChatStore

logger = logging.getLogger(__name__)


def _copy(obj):
    return copy.copy(obj) if obj is not None else None


class InMemoryChatStore(ChatStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._conversation_ids = itertools.count(1)
        self._message_ids = itertools.count(1)
        self._users: Dict[int, User] = {}
        self._conversations: Dict[int, Conversation] = {}
        self._participants: Dict[Tuple[int, int], Participant] = {}
        self._messages: Dict[int, Message] = {}
        self._presence: Dict[int, UserPresence] = {}
        self._typing: Dict[Tuple[int, int], TypingIndicator] = {}

    def ping(self) -> bool:
        return True

    # Users

    def save_user(self, user: User) -> User:
        with self._lock:
            self._users[user.user_id] = _copy(user)
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            return _copy(self._users.get(user_id))

    def get_users(self, user_ids: Iterable[int]) -> Dict[int, User]:
        with self._lock:
            return {uid: _copy(self._users[uid]) for uid in user_ids if uid in self._users}

    # Conversations

    def _active_by_key(self, participant_key: str) -> Optional[Conversation]:
        for conv in self._conversations.values():
            if conv.participant_key == participant_key and conv.is_active:
                return conv
        return None

    def find_active_conversation(self, participant_key: str) -> Optional[Conversation]:
        with self._lock:
            return _copy(self._active_by_key(participant_key))

    def create_conversation(self, conversation: Conversation, participant_ids: List[int]) -> Conversation:
        with self._lock:
            if self._active_by_key(conversation.participant_key) is not None:
                raise ConflictError('Active conversation already exists',
                                    participant_key=conversation.participant_key)
            conversation.conversation_id = next(self._conversation_ids)
            self._conversations[conversation.conversation_id] = _copy(conversation)
            for uid in participant_ids:
                self._participants[(conversation.conversation_id, uid)] = Participant(
                    conversation.conversation_id, uid, joined_at=conversation.created_at
                )
        return conversation

    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        with self._lock:
            return _copy(self._conversations.get(conversation_id))

    def set_conversation_status(self, conversation_id: int, status: ConversationStatus) -> Optional[Conversation]:
        status = ConversationStatus(status)
        with self._lock:
            conv = self._conversations.get(conversation_id)
            if conv is None:
                return None
            if status == ConversationStatus.ACTIVE and not conv.is_active:
                other = self._active_by_key(conv.participant_key)
                if other is not None:
                    raise ConflictError('Active conversation already exists',
                                        participant_key=conv.participant_key)
            conv.status = status
            return _copy(conv)

    def delete_conversation(self, conversation_id: int) -> bool:
        with self._lock:
            if self._conversations.pop(conversation_id, None) is None:
                return False
            for mid in [m.message_id for m in self._messages.values() if m.conversation_id == conversation_id]:
                self._remove_message(mid)
            for key in [k for k in self._participants if k[0] == conversation_id]:
                del self._participants[key]
            for key in [k for k in self._typing if k[0] == conversation_id]:
                del self._typing[key]
            return True

    def list_conversations_for_user(self, user_id: int, include_archived: bool = False) -> List[Conversation]:
        with self._lock:
            ids = {cid for (cid, uid), p in self._participants.items() if uid == user_id and p.is_active}
            convs = [c for cid, c in self._conversations.items() if cid in ids]
            if not include_archived:
                convs = [c for c in convs if c.is_active]
            convs.sort(key=lambda c: (c.updated_at, c.conversation_id), reverse=True)
            return [_copy(c) for c in convs]

    def list_participants(self, conversation_id: int, active_only: bool = True) -> List[Participant]:
        with self._lock:
            rows = [p for (cid, _), p in self._participants.items() if cid == conversation_id]
            if active_only:
                rows = [p for p in rows if p.is_active]
            return [_copy(p) for p in sorted(rows, key=lambda p: p.user_id)]

    def get_participant(self, conversation_id: int, user_id: int) -> Optional[Participant]:
        with self._lock:
            return _copy(self._participants.get((conversation_id, user_id)))

    def advance_read_marker(self, conversation_id: int, user_id: int, read_at: datetime) -> Optional[Participant]:
        with self._lock:
            row = self._participants.get((conversation_id, user_id))
            if row is None:
                return None
            if row.last_read_at is None or read_at > row.last_read_at:
                row.last_read_at = read_at
            return _copy(row)

    def advance_delivery_marker(self, conversation_id: int, user_id: int, message_id: int) -> Optional[Participant]:
        with self._lock:
            row = self._participants.get((conversation_id, user_id))
            if row is None:
                return None
            if row.last_delivered_id is None or message_id > row.last_delivered_id:
                row.last_delivered_id = message_id
            return _copy(row)

    # Messages

    def insert_message(self, message: Message) -> Message:
        with self._lock:
            conv = self._conversations.get(message.conversation_id)
            if conv is None:
                raise NotFoundError('Conversation not found', conversation_id=message.conversation_id)
            if message.client_message_id and self._by_client_id(
                    message.conversation_id, message.sender_id, message.client_message_id) is not None:
                raise ConflictError('Duplicate client message id', client_message_id=message.client_message_id)
            message.message_id = next(self._message_ids)
            self._messages[message.message_id] = _copy(message)
            if message.created_at > conv.updated_at:
                conv.updated_at = message.created_at
        return message

    def get_message(self, message_id: int) -> Optional[Message]:
        with self._lock:
            return _copy(self._messages.get(message_id))

    def _by_client_id(self, conversation_id, sender_id, client_message_id):
        for m in self._messages.values():
            if (m.conversation_id == conversation_id and m.sender_id == sender_id
                    and m.client_message_id == client_message_id):
                return m
        return None

    def find_message_by_client_id(self, conversation_id: int, sender_id: int,
                                  client_message_id: str) -> Optional[Message]:
        with self._lock:
            return _copy(self._by_client_id(conversation_id, sender_id, client_message_id))

    def _conversation_messages(self, conversation_id: int) -> List[Message]:
        return sorted((m for m in self._messages.values() if m.conversation_id == conversation_id),
                      key=lambda m: m.message_id)

    def list_messages(self, conversation_id: int, limit: int, before: Optional[int] = None,
                      after: Optional[int] = None) -> List[Message]:
        with self._lock:
            rows = self._conversation_messages(conversation_id)
            if after is not None:
                rows = [m for m in rows if m.message_id > after][:limit]
            else:
                if before is not None:
                    rows = [m for m in rows if m.message_id < before]
                rows = rows[-limit:] if limit else []
            return [_copy(m) for m in rows]

    def last_message(self, conversation_id: int) -> Optional[Message]:
        with self._lock:
            rows = self._conversation_messages(conversation_id)
            return _copy(rows[-1]) if rows else None

    def count_unread(self, conversation_id: int, user_id: int, since: Optional[datetime]) -> int:
        with self._lock:
            return sum(
                1 for m in self._messages.values()
                if m.conversation_id == conversation_id and m.sender_id != user_id
                and not m.is_deleted and (since is None or m.created_at > since)
            )

    def list_undelivered(self, conversation_id: int, recipient_id: int,
                         after_id: Optional[int] = None) -> List[Message]:
        with self._lock:
            return [_copy(m) for m in self._conversation_messages(conversation_id)
                    if m.sender_id != recipient_id and not m.is_deleted
                    and (after_id is None or m.message_id > after_id)]

    def list_unread(self, conversation_id: int, user_id: int) -> List[Message]:
        with self._lock:
            return [_copy(m) for m in self._conversation_messages(conversation_id)
                    if m.sender_id != user_id and m.read_at is None and not m.is_deleted]

    def mark_delivered(self, message_id: int, at: datetime) -> Optional[Message]:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None or message.delivered_at is not None:
                return None
            message.delivered_at = self._delivery_stamp(message, at)
            return _copy(message)

    def mark_read(self, message_id: int, at: datetime) -> Optional[Message]:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None or message.read_at is not None:
                return None
            if message.delivered_at is None:
                message.delivered_at = self._delivery_stamp(message, at)
            message.read_at = self._read_stamp(message, at)
            return _copy(message)

    def soft_delete_message(self, message_id: int, at: datetime) -> Optional[Message]:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None or message.deleted_at is not None:
                return None
            message.deleted_at = at
            return _copy(message)

    def _remove_message(self, message_id: int) -> bool:
        if self._messages.pop(message_id, None) is None:
            return False
        for m in self._messages.values():
            if m.reply_to == message_id:
                m.reply_to = None
        return True

    def delete_message(self, message_id: int) -> bool:
        with self._lock:
            return self._remove_message(message_id)

    # Presence

    def upsert_presence(self, presence: UserPresence) -> UserPresence:
        with self._lock:
            self._presence[presence.user_id] = _copy(presence)
        return presence

    def get_presence(self, user_id: int) -> Optional[UserPresence]:
        with self._lock:
            return _copy(self._presence.get(user_id))

    def list_presence(self, online_only: bool = True, role: Optional[str] = None) -> List[UserPresence]:
        role = coerce_role(role)
        with self._lock:
            rows = list(self._presence.values())
            if online_only:
                rows = [p for p in rows if p.is_online]
            if role is not None:
                rows = [p for p in rows if p.role == role]
            return [_copy(p) for p in sorted(rows, key=lambda p: p.user_id)]

    # Typing

    def set_typing(self, indicator: TypingIndicator) -> TypingIndicator:
        with self._lock:
            self._typing[(indicator.conversation_id, indicator.user_id)] = _copy(indicator)
        return indicator

    def list_typing(self, conversation_id: int, since: datetime) -> List[TypingIndicator]:
        with self._lock:
            rows = [t for (cid, _), t in self._typing.items()
                    if cid == conversation_id and t.is_typing and t.updated_at >= since]
            return [_copy(t) for t in sorted(rows, key=lambda t: t.user_id)]

    def clear_typing(self, user_id: int, conversation_id: Optional[int] = None) -> int:
        with self._lock:
            keys = [k for k in self._typing
                    if k[1] == user_id and (conversation_id is None or k[0] == conversation_id)]
            for k in keys:
                del self._typing[k]
            return len(keys)

    def clear_stale_typing(self, before: datetime) -> int:
        with self._lock:
            keys = [k for k, t in self._typing.items() if t.updated_at < before]
            for k in keys:
                del self._typing[k]
            return len(keys)
