"""Conversation participants: one row per (conversation_id, user_id)."""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from pymongo import ASCENDING, ReturnDocument

from shuttle_server.repository.base_repository import BaseRepository
from shuttle_server.repository.mongo_helper import translate_errors

logger = logging.getLogger(__name__)


class ParticipantRepository(BaseRepository):
    collection_name = 'conversation_participants'

    @translate_errors
    def add_many(self, docs: List[Dict[str, Any]]) -> int:
        if not docs:
            return 0
        return len(self.collection.insert_many(docs, ordered=True).inserted_ids)

    def list_for_conversation(self, conversation_id: int, active_only: bool = True) -> List[Dict[str, Any]]:
        query = {'conversation_id': conversation_id}
        if active_only:
            query['is_active'] = True
        return self.find(query, sort=[('user_id', ASCENDING)])

    def conversation_ids_for_user(self, user_id: int) -> List[int]:
        docs = self.find({'user_id': user_id, 'is_active': True})
        return [d['conversation_id'] for d in docs]

    def get(self, conversation_id: int, user_id: int) -> Optional[Dict[str, Any]]:
        return self.find_one({'conversation_id': conversation_id, 'user_id': user_id})

    @translate_errors
    def _advance(self, conversation_id: int, user_id: int, field: str, value) -> Optional[Dict[str, Any]]:
        """Set ``field`` to ``value`` only while the stored marker is null or behind it."""
        key = {'conversation_id': conversation_id, 'user_id': user_id}
        doc = self.collection.find_one_and_update(
            {**key, '$or': [{field: None}, {field: {'$lt': value}}]},
            {'$set': {field: value}},
            return_document=ReturnDocument.AFTER
        )
        return doc if doc is not None else self.collection.find_one(key)

    def advance_read_marker(self, conversation_id: int, user_id: int, read_at: datetime) -> Optional[Dict[str, Any]]:
        return self._advance(conversation_id, user_id, 'last_read_at', read_at)

    def advance_delivery_marker(self, conversation_id: int, user_id: int, message_id: int) -> Optional[Dict[str, Any]]:
        return self._advance(conversation_id, user_id, 'last_delivered_id', message_id)

    def remove_for_conversation(self, conversation_id: int) -> int:
        return self.delete({'conversation_id': conversation_id})
