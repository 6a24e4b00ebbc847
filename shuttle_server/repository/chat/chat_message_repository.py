"""Chat message repository.

Messages are keyed by an integer ``_id`` drawn from the counters
collection, so ascending ``_id`` is insertion order within a conversation.
Delivery and read stamps record the first delivery and the first read.
They are written with conditional updates that only match while the
field is still null, which keeps transitions monotonic under concurrent
acknowledgements. Per-recipient delivery is tracked on the participant
row (``last_delivered_id``).
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from shuttle_server.repository.base_repository import BaseRepository
from shuttle_server.repository.mongo_helper import translate_errors

logger = logging.getLogger(__name__)


class ChatMessageRepository(BaseRepository):
    collection_name = 'chat_messages'

    def get(self, message_id: int) -> Optional[Dict[str, Any]]:
        return self.find_one({'_id': message_id})

    def find_by_client_id(self, conversation_id: int, sender_id: int, client_message_id: str) -> Optional[Dict[str, Any]]:
        return self.find_one({
            'conversation_id': conversation_id,
            'sender_id': sender_id,
            'client_message_id': client_message_id
        })

    @translate_errors
    def page(self, conversation_id: int, limit: int, before: Optional[int] = None,
             after: Optional[int] = None) -> List[Dict[str, Any]]:
        query = {'conversation_id': conversation_id}
        if after is not None:
            query['_id'] = {'$gt': after}
            return list(self.collection.find(query).sort('_id', ASCENDING).limit(limit))
        if before is not None:
            query['_id'] = {'$lt': before}
        docs = list(self.collection.find(query).sort('_id', DESCENDING).limit(limit))
        docs.reverse()
        return docs

    @translate_errors
    def latest(self, conversation_id: int) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({'conversation_id': conversation_id}, sort=[('_id', DESCENDING)])

    def count_unread(self, conversation_id: int, user_id: int, since: Optional[datetime]) -> int:
        query = {
            'conversation_id': conversation_id,
            'sender_id': {'$ne': user_id},
            'deleted_at': None
        }
        if since is not None:
            query['created_at'] = {'$gt': since}
        return self.count(query)

    def undelivered_for(self, conversation_id: int, recipient_id: int,
                        after_id: Optional[int] = None) -> List[Dict[str, Any]]:
        query = {
            'conversation_id': conversation_id,
            'sender_id': {'$ne': recipient_id},
            'deleted_at': None
        }
        if after_id is not None:
            query['_id'] = {'$gt': after_id}
        return self.find(query, sort=[('_id', ASCENDING)])

    def unread_for(self, conversation_id: int, user_id: int) -> List[Dict[str, Any]]:
        return self.find({
            'conversation_id': conversation_id,
            'sender_id': {'$ne': user_id},
            'read_at': None,
            'deleted_at': None
        }, sort=[('_id', ASCENDING)])

    @translate_errors
    def set_if_unset(self, message_id: int, field: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply ``fields`` only while ``field`` is still null; returns the updated doc or None."""
        return self.collection.find_one_and_update(
            {'_id': message_id, field: None},
            {'$set': fields},
            return_document=ReturnDocument.AFTER
        )

    @translate_errors
    def remove(self, message_id: int) -> bool:
        deleted = self.collection.delete_one({'_id': message_id}).deleted_count > 0
        if deleted:
            self.collection.update_many({'reply_to': message_id}, {'$set': {'reply_to': None}})
        return deleted

    def remove_for_conversation(self, conversation_id: int) -> int:
        return self.delete({'conversation_id': conversation_id})
