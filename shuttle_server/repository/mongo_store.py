"""MongoDB implementation of the ChatStore contract."""
import logging
from datetime import datetime
from typing import Optional, List, Dict, Iterable

from pymongo.errors import PyMongoError

from shuttle_server.exception import NotFoundError, MessagingError
from shuttle_server.messaging.models import (
    User, Conversation, ConversationStatus, Participant, Message, UserPresence, TypingIndicator, coerce_role
)
from shuttle_server.repository.base_repository import CounterRepository
from shuttle_server.repository.chat_store import ChatStore
from shuttle_server.repository.chat import (
    UserRepository, ConversationRepository, ParticipantRepository,
    ChatMessageRepository, UserPresenceRepository, TypingRepository
)
from shuttle_server.repository.mongo_helper import ensure_indexes, mongo_errors

logger = logging.getLogger(__name__)


def _or_none(factory, doc):
    return factory(doc) if doc else None


class MongoChatStore(ChatStore):
    """ChatStore over the chat database.

    Multi-document writes (conversation + participants, message + bump) are
    not wrapped in transactions; a failed second step is compensated by
    removing the first write before the error propagates.
    """

    def __init__(self, db, create_indexes=True):
        self.db = db
        self.counters = CounterRepository(db)
        self.users = UserRepository(db)
        self.conversations = ConversationRepository(db)
        self.participants = ParticipantRepository(db)
        self.messages = ChatMessageRepository(db)
        self.presence = UserPresenceRepository(db)
        self.typing = TypingRepository(db)
        if create_indexes:
            ensure_indexes(db)

    def ping(self) -> bool:
        try:
            self.db.client.admin.command('ping')
            return True
        except PyMongoError as e:
            logger.warning("MongoDB ping failed: %s", e)
            return False

    # Users

    def save_user(self, user: User) -> User:
        self.users.save(user.to_db_doc())
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        return _or_none(User.from_doc, self.users.get(user_id))

    def get_users(self, user_ids: Iterable[int]) -> Dict[int, User]:
        return {u.user_id: u for u in (User.from_doc(d) for d in self.users.get_many(user_ids))}

    # Conversations

    def find_active_conversation(self, participant_key: str) -> Optional[Conversation]:
        return _or_none(Conversation.from_doc, self.conversations.find_active_by_key(participant_key))

    def create_conversation(self, conversation: Conversation, participant_ids: List[int]) -> Conversation:
        conversation.conversation_id = self.counters.next_value('conversations')
        # ConflictError here means another writer created the same active key first
        self.conversations.create(conversation.to_db_doc())
        rows = [
            Participant(conversation.conversation_id, uid, joined_at=conversation.created_at).to_db_doc()
            for uid in participant_ids
        ]
        try:
            self.participants.add_many(rows)
        except MessagingError:
            logger.warning("Participant insert failed for conversation %s, removing it",
                           conversation.conversation_id)
            self.participants.remove_for_conversation(conversation.conversation_id)
            self.conversations.remove(conversation.conversation_id)
            raise
        return conversation

    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        return _or_none(Conversation.from_doc, self.conversations.get(conversation_id))

    def set_conversation_status(self, conversation_id: int, status: ConversationStatus) -> Optional[Conversation]:
        doc = self.conversations.set_status(conversation_id, ConversationStatus(status).value)
        return _or_none(Conversation.from_doc, doc)

    def delete_conversation(self, conversation_id: int) -> bool:
        if not self.conversations.get(conversation_id):
            return False
        self.messages.remove_for_conversation(conversation_id)
        self.participants.remove_for_conversation(conversation_id)
        self.typing.remove_for_conversation(conversation_id)
        return self.conversations.remove(conversation_id)

    def list_conversations_for_user(self, user_id: int, include_archived: bool = False) -> List[Conversation]:
        ids = self.participants.conversation_ids_for_user(user_id)
        docs = self.conversations.list_by_ids(ids, include_archived=include_archived)
        return [Conversation.from_doc(d) for d in docs]

    def list_participants(self, conversation_id: int, active_only: bool = True) -> List[Participant]:
        return [Participant.from_doc(d) for d in self.participants.list_for_conversation(conversation_id, active_only)]

    def get_participant(self, conversation_id: int, user_id: int) -> Optional[Participant]:
        return _or_none(Participant.from_doc, self.participants.get(conversation_id, user_id))

    def advance_read_marker(self, conversation_id: int, user_id: int, read_at: datetime) -> Optional[Participant]:
        return _or_none(Participant.from_doc, self.participants.advance_read_marker(conversation_id, user_id, read_at))

    def advance_delivery_marker(self, conversation_id: int, user_id: int, message_id: int) -> Optional[Participant]:
        doc = self.participants.advance_delivery_marker(conversation_id, user_id, message_id)
        return _or_none(Participant.from_doc, doc)

    # Messages

    def insert_message(self, message: Message) -> Message:
        if not self.conversations.get(message.conversation_id):
            raise NotFoundError('Conversation not found', conversation_id=message.conversation_id)
        message.message_id = self.counters.next_value('chat_messages')
        self.messages.create(message.to_db_doc())
        try:
            self.conversations.bump_updated_at(message.conversation_id, message.created_at)
        except MessagingError:
            logger.warning("Conversation bump failed, removing message %s", message.message_id)
            with mongo_errors('insert_message.compensate'):
                self.messages.collection.delete_one({'_id': message.message_id})
            raise
        return message

    def get_message(self, message_id: int) -> Optional[Message]:
        return _or_none(Message.from_doc, self.messages.get(message_id))

    def find_message_by_client_id(self, conversation_id: int, sender_id: int,
                                  client_message_id: str) -> Optional[Message]:
        doc = self.messages.find_by_client_id(conversation_id, sender_id, client_message_id)
        return _or_none(Message.from_doc, doc)

    def list_messages(self, conversation_id: int, limit: int, before: Optional[int] = None,
                      after: Optional[int] = None) -> List[Message]:
        return [Message.from_doc(d) for d in self.messages.page(conversation_id, limit, before, after)]

    def last_message(self, conversation_id: int) -> Optional[Message]:
        return _or_none(Message.from_doc, self.messages.latest(conversation_id))

    def count_unread(self, conversation_id: int, user_id: int, since: Optional[datetime]) -> int:
        return self.messages.count_unread(conversation_id, user_id, since)

    def list_undelivered(self, conversation_id: int, recipient_id: int,
                         after_id: Optional[int] = None) -> List[Message]:
        docs = self.messages.undelivered_for(conversation_id, recipient_id, after_id)
        return [Message.from_doc(d) for d in docs]

    def list_unread(self, conversation_id: int, user_id: int) -> List[Message]:
        return [Message.from_doc(d) for d in self.messages.unread_for(conversation_id, user_id)]

    def mark_delivered(self, message_id: int, at: datetime) -> Optional[Message]:
        message = self.get_message(message_id)
        if message is None or message.delivered_at is not None:
            return None
        doc = self.messages.set_if_unset(message_id, 'delivered_at',
                                         {'delivered_at': self._delivery_stamp(message, at)})
        return _or_none(Message.from_doc, doc)

    def mark_read(self, message_id: int, at: datetime) -> Optional[Message]:
        message = self.get_message(message_id)
        if message is None or message.read_at is not None:
            return None
        if message.delivered_at is None:
            # a concurrent delivery may win; either way delivered_at is set afterwards
            self.mark_delivered(message_id, at)
            message = self.get_message(message_id)
        doc = self.messages.set_if_unset(message_id, 'read_at', {'read_at': self._read_stamp(message, at)})
        return _or_none(Message.from_doc, doc)

    def soft_delete_message(self, message_id: int, at: datetime) -> Optional[Message]:
        doc = self.messages.set_if_unset(message_id, 'deleted_at', {'deleted_at': at})
        return _or_none(Message.from_doc, doc)

    def delete_message(self, message_id: int) -> bool:
        return self.messages.remove(message_id)

    # Presence

    def upsert_presence(self, presence: UserPresence) -> UserPresence:
        self.presence.upsert(presence.to_db_doc())
        return presence

    def get_presence(self, user_id: int) -> Optional[UserPresence]:
        return _or_none(UserPresence.from_doc, self.presence.get(user_id))

    def list_presence(self, online_only: bool = True, role: Optional[str] = None) -> List[UserPresence]:
        role = coerce_role(role)
        rows = self.presence.list_rows(online_only, role.value if role else None)
        return [UserPresence.from_doc(d) for d in rows]

    # Typing

    def set_typing(self, indicator: TypingIndicator) -> TypingIndicator:
        self.typing.upsert(indicator.to_db_doc())
        return indicator

    def list_typing(self, conversation_id: int, since: datetime) -> List[TypingIndicator]:
        return [TypingIndicator.from_doc(d) for d in self.typing.active_since(conversation_id, since)]

    def clear_typing(self, user_id: int, conversation_id: Optional[int] = None) -> int:
        return self.typing.clear(user_id, conversation_id)

    def clear_stale_typing(self, before: datetime) -> int:
        return self.typing.clear_before(before)
