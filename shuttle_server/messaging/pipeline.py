"""Message pipeline: send, deliver, read and fan out.

Each message moves through ``created -> delivered -> read`` and never
back. All work on one conversation (persisting a send, the delivery sweep
run when a recipient connects, read receipts) runs under that
conversation's lock, so messages are stored and pushed to every recipient
in a single order.

Sends are not retried on StorageUnavailable unless the caller supplies a
client_message_id; with one, a retried insert resolves to the message that
was already stored instead of creating a duplicate.
"""
import logging
from typing import Optional, List, Callable

from shuttle_server.exception import ValidationError, ForbiddenError, NotFoundError, ConflictError
from shuttle_server.messaging.models import Message, MessageType
from shuttle_server.utils.retry import call_with_retry
from shuttle_server.utils.threading_util.locks import KeyedLock
from shuttle_server.utils.time_utils import now_utc, next_after, to_iso
from shuttle_server.websocket.event_emitter import EventEmitter

logger = logging.getLogger(__name__)

MAX_CLIENT_MESSAGE_ID_LENGTH = 100


def parse_message_type(value) -> MessageType:
    if value is None:
        return MessageType.TEXT
    try:
        return MessageType(value)
    except ValueError:
        allowed = ', '.join(t.value for t in MessageType)
        raise ValidationError(f'type must be one of: {allowed}', field='type')


class MessagePipeline:

    def __init__(self, store, conversations, registry, emitter: EventEmitter, clock: Callable = now_utc,
                 max_message_length: int = 1000, retry_attempts: int = 3, retry_backoff: float = 0.1):
        self.store = store
        self.conversations = conversations
        self.registry = registry
        self.emitter = emitter
        self.clock = clock
        self.max_message_length = max_message_length
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self._conversation_locks = KeyedLock()

    def _lock(self, conversation_id):
        return self._conversation_locks.hold(('conversation', conversation_id))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_content(self, content) -> str:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError('Message content cannot be empty', field='content')
        if len(content) > self.max_message_length:
            raise ValidationError(
                f'Message content exceeds {self.max_message_length} characters', field='content'
            )
        return content

    @staticmethod
    def _validate_client_id(client_message_id) -> Optional[str]:
        if client_message_id is None or client_message_id == '':
            return None
        client_message_id = str(client_message_id)
        if len(client_message_id) > MAX_CLIENT_MESSAGE_ID_LENGTH:
            raise ValidationError('clientMessageId is too long', field='clientMessageId')
        return client_message_id

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def send(self, conversation_id: int, sender_id: int, content, message_type=None,
             reply_to: Optional[int] = None, client_message_id: Optional[str] = None) -> Message:
        """Persist a message and push it to the online participants.

        Raises ValidationError, ForbiddenError or NotFoundError before anything
        is stored. Returns the stored message (the earlier one for a repeated
        client_message_id).
        """
        content = self._validate_content(content)
        mtype = parse_message_type(message_type)
        client_message_id = self._validate_client_id(client_message_id)

        with self._lock(conversation_id):
            conversation, _ = self.conversations.require_participant(conversation_id, sender_id)
            if not conversation.is_active:
                raise ForbiddenError('Conversation is archived', conversation_id=conversation_id)

            if client_message_id:
                existing = self.store.find_message_by_client_id(conversation_id, sender_id, client_message_id)
                if existing is not None:
                    logger.info("Replayed send %s in conversation %s", client_message_id, conversation_id)
                    return existing

            if reply_to is not None:
                target = self.store.get_message(reply_to)
                if target is None or target.conversation_id != conversation_id:
                    raise ValidationError('replyTo must reference a message in this conversation', field='replyTo')

            last = self.store.last_message(conversation_id)
            message = Message(
                message_id=None,
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                message_type=mtype,
                created_at=next_after(last.created_at if last else None, self.clock()),
                reply_to=reply_to,
                client_message_id=client_message_id
            )
            if client_message_id:
                message = call_with_retry(self._insert_idempotent, message,
                                          attempts=self.retry_attempts, backoff=self.retry_backoff)
            else:
                message = self.store.insert_message(message)

            logger.info("Message %s stored in conversation %s by user %s",
                        message.message_id, conversation_id, sender_id)
            self.emitter.emit_to_user(sender_id, EventEmitter.MESSAGE_SENT, {
                'message': message.to_dict(),
                'tempId': client_message_id
            })
            self._fan_out_new(message)
        return message

    def _insert_idempotent(self, message: Message) -> Message:
        try:
            return self.store.insert_message(message)
        except ConflictError:
            existing = self.store.find_message_by_client_id(
                message.conversation_id, message.sender_id, message.client_message_id
            )
            if existing is None:
                raise
            return existing

    def _fan_out_new(self, message: Message):
        """Push a new message to the online recipients. Caller holds the lock.

        Offline recipients keep their delivery cursor behind the message and
        receive it from the sweep that runs when they connect.
        """
        for user_id in self.conversations.participant_ids(message.conversation_id):
            if user_id == message.sender_id or not self.registry.is_online(user_id):
                continue
            self._push(message, user_id)

    def _push(self, message: Message, user_id: int):
        """Emit message:new to one recipient and move their cursor past it. Caller holds the lock.

        The first push also stamps the message delivered and tells the sender.
        """
        self.emitter.emit_to_user(user_id, EventEmitter.MESSAGE_NEW, {'message': message.to_dict()})
        self.store.advance_delivery_marker(message.conversation_id, user_id, message.message_id)
        logger.debug("Pushed message %s to user %s", message.message_id, user_id)
        delivered = self.store.mark_delivered(message.message_id, self.clock())
        if delivered is not None:
            self._notify_delivered(delivered, user_id)

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    def _notify_delivered(self, message: Message, recipient_id: int):
        self.emitter.emit_to_user(message.sender_id, EventEmitter.MESSAGE_DELIVERED, {
            'messageId': message.message_id,
            'conversationId': message.conversation_id,
            'deliveredAt': to_iso(message.delivered_at),
            'deliveredTo': recipient_id
        })

    def _notify_read(self, message: Message, reader_id: int):
        self.emitter.emit_to_user(message.sender_id, EventEmitter.MESSAGE_READ, {
            'messageId': message.message_id,
            'conversationId': message.conversation_id,
            'readAt': to_iso(message.read_at),
            'readBy': reader_id
        })

    def _get_message(self, message_id: int) -> Message:
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFoundError('Message not found', message_id=message_id)
        return message

    def mark_delivered(self, message_id: int, recipient_id: int) -> Message:
        """Stamp delivery for a recipient's acknowledgement. Idempotent.

        The sender and users outside the conversation are ignored.
        """
        message = self._get_message(message_id)
        if message.sender_id == recipient_id:
            return message
        participant = self.store.get_participant(message.conversation_id, recipient_id)
        if participant is None or not participant.is_active:
            logger.debug("Ignoring delivery ack for message %s from non-participant %s", message_id, recipient_id)
            return message
        with self._lock(message.conversation_id):
            updated = self.store.mark_delivered(message_id, self.clock())
            if updated is None:
                return self._get_message(message_id)
            self._notify_delivered(updated, recipient_id)
        return updated

    def mark_read(self, message_id: int, reader_id: int) -> Message:
        """Stamp read (and delivered, when missing) and tell the sender. Idempotent."""
        message = self._get_message(message_id)
        participant = self.store.get_participant(message.conversation_id, reader_id)
        if participant is None or not participant.is_active:
            raise ForbiddenError('You are not a participant of this conversation',
                                 conversation_id=message.conversation_id)
        if message.sender_id == reader_id:
            return message
        with self._lock(message.conversation_id):
            # a push may have stamped delivery since the unlocked read above
            was_delivered = self._get_message(message_id).delivered_at is not None
            updated = self.store.mark_read(message_id, self.clock())
            self.store.advance_read_marker(message.conversation_id, reader_id, message.created_at)
            if updated is None:
                return self._get_message(message_id)
            if not was_delivered:
                self._notify_delivered(updated, reader_id)
            self._notify_read(updated, reader_id)
        logger.info("Message %s read by user %s", message_id, reader_id)
        return updated

    def mark_conversation_read(self, conversation_id: int, user_id: int) -> List[Message]:
        """Mark every unread message from others as read; returns the messages that changed."""
        self.conversations.require_participant(conversation_id, user_id)
        changed = []
        with self._lock(conversation_id):
            for message in self.store.list_unread(conversation_id, user_id):
                updated = self.store.mark_read(message.message_id, self.clock())
                if updated is None:
                    continue
                if message.delivered_at is None:
                    self._notify_delivered(updated, user_id)
                self._notify_read(updated, user_id)
                changed.append(updated)
            last = self.store.last_message(conversation_id)
            if last is not None:
                self.store.advance_read_marker(conversation_id, user_id, last.created_at)
        if changed:
            logger.info("User %s read %s message(s) in conversation %s", user_id, len(changed), conversation_id)
        return changed

    # ------------------------------------------------------------------
    # Delivery sweep
    # ------------------------------------------------------------------

    def deliver_pending(self, user_id: int, conversation_ids: Optional[List[int]] = None) -> int:
        """Push every message a user who just connected has not been sent yet.

        Each conversation resumes after the user's delivery cursor and pushes
        in id order. Messages at or before the user's read marker were already
        seen through history; the cursor moves past them without a push.
        Returns the number of messages pushed.
        """
        if conversation_ids is None:
            conversation_ids = self.conversations.conversation_ids_for_user(user_id)
        pushed = 0
        for conversation_id in conversation_ids:
            with self._lock(conversation_id):
                participant = self.store.get_participant(conversation_id, user_id)
                if participant is None or not participant.is_active:
                    continue
                pending = self.store.list_undelivered(conversation_id, user_id, participant.last_delivered_id)
                for message in pending:
                    if participant.last_read_at is not None and message.created_at <= participant.last_read_at:
                        self.store.advance_delivery_marker(conversation_id, user_id, message.message_id)
                        continue
                    self._push(message, user_id)
                    pushed += 1
        if pushed:
            logger.info("Delivered %s pending message(s) to user %s", pushed, user_id)
        return pushed

    # ------------------------------------------------------------------
    # History and deletion
    # ------------------------------------------------------------------

    def list_messages(self, conversation_id: int, user_id: int, is_admin: bool = False, limit: int = 50,
                      before: Optional[int] = None, after: Optional[int] = None) -> List[Message]:
        self.conversations.require_read_access(conversation_id, user_id, is_admin)
        return call_with_retry(self.store.list_messages, conversation_id, limit, before, after,
                               attempts=self.retry_attempts, backoff=self.retry_backoff)

    def delete_message(self, message_id: int, user_id: int) -> Message:
        """Soft delete by the sender; participants get message:deleted."""
        message = self._get_message(message_id)
        if message.sender_id != user_id:
            raise ForbiddenError('Only the sender can delete a message', message_id=message_id)
        with self._lock(message.conversation_id):
            updated = self.store.soft_delete_message(message_id, self.clock())
            if updated is None:
                return self._get_message(message_id)
            for participant_id in self.conversations.participant_ids(message.conversation_id):
                self.emitter.emit_to_user(participant_id, EventEmitter.MESSAGE_DELETED, {
                    'messageId': message_id,
                    'conversationId': message.conversation_id,
                    'deletedAt': to_iso(updated.deleted_at)
                })
        logger.info("Message %s deleted by user %s", message_id, user_id)
        return updated
