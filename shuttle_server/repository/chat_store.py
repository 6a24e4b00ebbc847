"""Persistence contract for the messaging core.

A ChatStore owns users, conversations, participants, messages, presence
rows and typing rows. Two implementations exist:
- MongoChatStore (repository/mongo_store.py): durable, pymongo backed
- InMemoryChatStore (repository/memory_store.py): single process, used in tests

Errors:
- ConflictError: uniqueness violated (active conversation for the same
  participant key, duplicate client_message_id)
- NotFoundError: a referenced row does not exist
- StorageUnavailable: transient I/O failure
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Dict, Iterable

from shuttle_server.messaging.models import (
    User, Conversation, ConversationStatus, Participant, Message, UserPresence, TypingIndicator
)


class ChatStore(ABC):

    @abstractmethod
    def ping(self) -> bool:
        """Return True when the backing storage is reachable."""

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @abstractmethod
    def save_user(self, user: User) -> User:
        """Insert or replace a user row keyed by user_id."""

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]:
        pass

    @abstractmethod
    def get_users(self, user_ids: Iterable[int]) -> Dict[int, User]:
        pass

    # ------------------------------------------------------------------
    # Conversations and participants
    # ------------------------------------------------------------------

    @abstractmethod
    def find_active_conversation(self, participant_key: str) -> Optional[Conversation]:
        """Return the active conversation for a participant key, if any."""

    @abstractmethod
    def create_conversation(self, conversation: Conversation, participant_ids: List[int]) -> Conversation:
        """Insert a conversation plus one participant row per id.

        Assigns conversation_id. Raises ConflictError when an active
        conversation with the same participant key already exists.
        """

    @abstractmethod
    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        pass

    @abstractmethod
    def set_conversation_status(self, conversation_id: int, status: ConversationStatus) -> Optional[Conversation]:
        pass

    @abstractmethod
    def delete_conversation(self, conversation_id: int) -> bool:
        """Delete a conversation with its messages, participants and typing rows."""

    @abstractmethod
    def list_conversations_for_user(self, user_id: int, include_archived: bool = False) -> List[Conversation]:
        """Conversations where the user has an active participant row, newest activity first."""

    @abstractmethod
    def list_participants(self, conversation_id: int, active_only: bool = True) -> List[Participant]:
        pass

    @abstractmethod
    def get_participant(self, conversation_id: int, user_id: int) -> Optional[Participant]:
        pass

    @abstractmethod
    def advance_read_marker(self, conversation_id: int, user_id: int, read_at: datetime) -> Optional[Participant]:
        """Move last_read_at forward to read_at. Never moves it backwards."""

    @abstractmethod
    def advance_delivery_marker(self, conversation_id: int, user_id: int, message_id: int) -> Optional[Participant]:
        """Move last_delivered_id forward to message_id. Never moves it backwards."""

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @abstractmethod
    def insert_message(self, message: Message) -> Message:
        """Persist a message and bump the conversation's updated_at as one unit.

        Assigns message_id. Raises NotFoundError for an unknown conversation
        and ConflictError for a duplicate (conversation, sender, client_message_id).
        """

    @abstractmethod
    def get_message(self, message_id: int) -> Optional[Message]:
        pass

    @abstractmethod
    def find_message_by_client_id(self, conversation_id: int, sender_id: int,
                                  client_message_id: str) -> Optional[Message]:
        pass

    @abstractmethod
    def list_messages(self, conversation_id: int, limit: int, before: Optional[int] = None,
                      after: Optional[int] = None) -> List[Message]:
        """Page of messages in ascending id order.

        With ``after`` the first ``limit`` messages with a greater id are
        returned; otherwise the latest ``limit`` messages (below ``before``
        when given).
        """

    @abstractmethod
    def last_message(self, conversation_id: int) -> Optional[Message]:
        pass

    @abstractmethod
    def count_unread(self, conversation_id: int, user_id: int, since: Optional[datetime]) -> int:
        """Messages from others created after ``since`` (all when None), excluding deleted ones."""

    @abstractmethod
    def list_undelivered(self, conversation_id: int, recipient_id: int,
                         after_id: Optional[int] = None) -> List[Message]:
        """Messages from others with an id above ``after_id`` (all when None), ascending id.

        ``after_id`` is the recipient's delivery cursor; deleted messages are skipped.
        """

    @abstractmethod
    def list_unread(self, conversation_id: int, user_id: int) -> List[Message]:
        """Messages from others with no read stamp, ascending id."""

    @abstractmethod
    def mark_delivered(self, message_id: int, at: datetime) -> Optional[Message]:
        """Stamp delivered_at if unset. Returns the updated message, or None if nothing changed."""

    @abstractmethod
    def mark_read(self, message_id: int, at: datetime) -> Optional[Message]:
        """Stamp read_at (and delivered_at when unset) if unread.

        Returns the updated message, or None if it was already read.
        """

    @abstractmethod
    def soft_delete_message(self, message_id: int, at: datetime) -> Optional[Message]:
        pass

    @abstractmethod
    def delete_message(self, message_id: int) -> bool:
        """Hard delete; replies that referenced the message get reply_to=None."""

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    @abstractmethod
    def upsert_presence(self, presence: UserPresence) -> UserPresence:
        pass

    @abstractmethod
    def get_presence(self, user_id: int) -> Optional[UserPresence]:
        pass

    @abstractmethod
    def list_presence(self, online_only: bool = True, role: Optional[str] = None) -> List[UserPresence]:
        pass

    # ------------------------------------------------------------------
    # Typing indicators
    # ------------------------------------------------------------------

    @abstractmethod
    def set_typing(self, indicator: TypingIndicator) -> TypingIndicator:
        pass

    @abstractmethod
    def list_typing(self, conversation_id: int, since: datetime) -> List[TypingIndicator]:
        """Rows with is_typing set and updated_at >= since."""

    @abstractmethod
    def clear_typing(self, user_id: int, conversation_id: Optional[int] = None) -> int:
        pass

    @abstractmethod
    def clear_stale_typing(self, before: datetime) -> int:
        """Delete typing rows last touched before ``before``; returns the count removed."""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _delivery_stamp(message: Message, at: datetime) -> datetime:
        return max(at, message.created_at)

    @staticmethod
    def _read_stamp(message: Message, at: datetime) -> datetime:
        floor = message.delivered_at or message.created_at
        return max(at, floor)
