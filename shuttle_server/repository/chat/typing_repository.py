"""Typing indicators: ephemeral rows, one per (conversation_id, user_id)."""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from pymongo import ASCENDING

from shuttle_server.repository.base_repository import BaseRepository
from shuttle_server.repository.mongo_helper import translate_errors

logger = logging.getLogger(__name__)


class TypingRepository(BaseRepository):
    collection_name = 'typing_indicators'

    @translate_errors
    def upsert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        self.collection.update_one(
            {'conversation_id': doc['conversation_id'], 'user_id': doc['user_id']},
            {'$set': doc},
            upsert=True
        )
        return doc

    def active_since(self, conversation_id: int, since: datetime) -> List[Dict[str, Any]]:
        return self.find({
            'conversation_id': conversation_id,
            'is_typing': True,
            'updated_at': {'$gte': since}
        }, sort=[('user_id', ASCENDING)])

    def clear(self, user_id: int, conversation_id: Optional[int] = None) -> int:
        query = {'user_id': user_id}
        if conversation_id is not None:
            query['conversation_id'] = conversation_id
        return self.delete(query)

    def clear_before(self, before: datetime) -> int:
        return self.delete({'updated_at': {'$lt': before}})

    def remove_for_conversation(self, conversation_id: int) -> int:
        return self.delete({'conversation_id': conversation_id})
