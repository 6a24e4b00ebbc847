"""Conversation manager.

Creates or finds conversations by (type, participant set), lists a user's
conversations with unread counts and archives them. Find-or-create is
serialized per participant key with an in-process KeyedLock; across
processes the unique active-key index turns the losing insert into a
ConflictError, which is resolved by repeating the lookup.
"""
import logging
from typing import Optional, List, Iterable, Tuple, Callable

from shuttle_server.exception import ValidationError, ForbiddenError, NotFoundError, ConflictError
from shuttle_server.messaging.models import (
    Conversation, ConversationType, ConversationStatus, ConversationSummary, Participant, Priority,
    participant_key
)
from shuttle_server.utils.retry import call_with_retry
from shuttle_server.utils.threading_util.locks import KeyedLock
from shuttle_server.utils.time_utils import now_utc

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200


def parse_conversation_type(value) -> ConversationType:
    try:
        return ConversationType(value)
    except ValueError:
        allowed = ', '.join(t.value for t in ConversationType)
        raise ValidationError(f'type must be one of: {allowed}', field='type')


def parse_priority(value) -> Priority:
    if value is None:
        return Priority.MEDIUM
    try:
        return Priority(value)
    except ValueError:
        allowed = ', '.join(p.value for p in Priority)
        raise ValidationError(f'priority must be one of: {allowed}', field='priority')


def parse_participant_ids(participant_ids) -> List[int]:
    """Return the sorted distinct ids of a participant set, or raise ValidationError."""
    if participant_ids is None or isinstance(participant_ids, (str, bytes, dict)):
        raise ValidationError('participantIds must be a list of user ids', field='participantIds')
    ids = set()
    for raw in participant_ids:
        if isinstance(raw, bool):
            raise ValidationError('participantIds must contain integer user ids', field='participantIds')
        try:
            ids.add(int(raw))
        except (TypeError, ValueError):
            raise ValidationError('participantIds must contain integer user ids', field='participantIds')
    if len(ids) < 2:
        raise ValidationError('A conversation needs at least two distinct participants', field='participantIds')
    return sorted(ids)


class ConversationManager:

    def __init__(self, store, clock: Callable = now_utc, retry_attempts: int = 3, retry_backoff: float = 0.1):
        self.store = store
        self.clock = clock
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self._key_locks = KeyedLock()

    def _read(self, fn, *args, **kwargs):
        return call_with_retry(fn, *args, attempts=self.retry_attempts, backoff=self.retry_backoff, **kwargs)

    # ------------------------------------------------------------------
    # Find or create
    # ------------------------------------------------------------------

    def find_or_create(
        self,
        participant_ids: Iterable,
        conversation_type,
        requester_id: Optional[int] = None,
        requester_is_admin: bool = False,
        title: Optional[str] = None,
        trip_id: Optional[str] = None,
        priority=None
    ) -> Tuple[Conversation, bool]:
        """Return (conversation, created) for the exact participant set and type."""
        ctype = parse_conversation_type(conversation_type)
        ids = parse_participant_ids(participant_ids)
        prio = parse_priority(priority)
        if title is not None:
            title = str(title).strip() or None
            if title and len(title) > MAX_TITLE_LENGTH:
                raise ValidationError(f'title must be at most {MAX_TITLE_LENGTH} characters', field='title')
        if requester_id is not None and requester_id not in ids and not requester_is_admin:
            raise ForbiddenError('You can only start conversations you take part in')

        key = participant_key(ctype, ids)
        with self._key_locks.hold(key):
            existing = self.store.find_active_conversation(key)
            if existing is not None:
                return existing, False
            conversation = Conversation(
                conversation_id=None,
                conversation_type=ctype,
                participant_key=key,
                title=title,
                priority=prio,
                trip_id=str(trip_id) if trip_id is not None else None,
                created_by=requester_id,
                created_at=self.clock()
            )
            try:
                created = self.store.create_conversation(conversation, ids)
            except ConflictError:
                # another process won the insert; its row is the answer
                existing = self.store.find_active_conversation(key)
                if existing is None:
                    raise
                logger.info("Conversation for %s created concurrently, reusing %s", key, existing.conversation_id)
                return existing, False
        logger.info("Created conversation %s (%s) for users %s", created.conversation_id, ctype.value, ids)
        return created, True

    # ------------------------------------------------------------------
    # Access checks
    # ------------------------------------------------------------------

    def get_conversation(self, conversation_id: int) -> Conversation:
        conversation = self._read(self.store.get_conversation, conversation_id)
        if conversation is None:
            raise NotFoundError('Conversation not found', conversation_id=conversation_id)
        return conversation

    def require_participant(self, conversation_id: int, user_id: int) -> Tuple[Conversation, Participant]:
        """The conversation and the user's active participant row, or ForbiddenError."""
        conversation = self.get_conversation(conversation_id)
        participant = self.store.get_participant(conversation_id, user_id)
        if participant is None or not participant.is_active:
            raise ForbiddenError('You are not a participant of this conversation', conversation_id=conversation_id)
        return conversation, participant

    def require_read_access(self, conversation_id: int, user_id: int, is_admin: bool = False) -> Conversation:
        if is_admin:
            return self.get_conversation(conversation_id)
        conversation, _ = self.require_participant(conversation_id, user_id)
        return conversation

    def participant_ids(self, conversation_id: int) -> List[int]:
        return [p.user_id for p in self.store.list_participants(conversation_id)]

    def conversation_ids_for_user(self, user_id: int, include_archived: bool = False) -> List[int]:
        return [c.conversation_id for c in self._read(self.store.list_conversations_for_user,
                                                       user_id, include_archived)]

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def unread_count(self, conversation_id: int, user_id: int, participant: Optional[Participant] = None) -> int:
        """Messages from others after the user's read marker; 0 for non-participants."""
        if participant is None:
            participant = self.store.get_participant(conversation_id, user_id)
        if participant is None or not participant.is_active:
            return 0
        return self.store.count_unread(conversation_id, user_id, participant.last_read_at)

    def _summarize(self, conversation: Conversation, user_id: int) -> ConversationSummary:
        participants = self.store.list_participants(conversation.conversation_id)
        mine = next((p for p in participants if p.user_id == user_id), None)
        unread = self.unread_count(conversation.conversation_id, user_id, mine) if mine is not None else 0
        return ConversationSummary(
            conversation,
            participant_ids=[p.user_id for p in participants],
            unread_count=unread,
            last_message=self.store.last_message(conversation.conversation_id)
        )

    def list_for_user(self, user_id: int, include_archived: bool = False) -> List[ConversationSummary]:
        """Conversations the user actively takes part in, most recent activity first."""
        def load():
            conversations = self.store.list_conversations_for_user(user_id, include_archived)
            return [self._summarize(c, user_id) for c in conversations]
        return self._read(load)

    def get_summary(self, conversation_id: int, user_id: int, is_admin: bool = False) -> ConversationSummary:
        conversation = self.require_read_access(conversation_id, user_id, is_admin)
        return self._read(self._summarize, conversation, user_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def archive(self, conversation_id: int, user_id: int, is_admin: bool = False) -> Conversation:
        if is_admin:
            self.get_conversation(conversation_id)
        else:
            self.require_participant(conversation_id, user_id)
        conversation = self.store.set_conversation_status(conversation_id, ConversationStatus.ARCHIVED)
        if conversation is None:
            raise NotFoundError('Conversation not found', conversation_id=conversation_id)
        logger.info("Conversation %s archived by user %s", conversation_id, user_id)
        return conversation
