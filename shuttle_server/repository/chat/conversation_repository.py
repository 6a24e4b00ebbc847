"""Conversation repository for shuttle chat.

One document per conversation. ``participant_key`` holds the canonical
type + sorted participant ids and carries a unique index restricted to
active conversations, so at most one active conversation exists per key.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from pymongo import DESCENDING, ReturnDocument

from shuttle_server.repository.base_repository import BaseRepository
from shuttle_server.repository.mongo_helper import translate_errors

logger = logging.getLogger(__name__)


class ConversationRepository(BaseRepository):
    collection_name = 'conversations'

    def find_active_by_key(self, participant_key: str) -> Optional[Dict[str, Any]]:
        return self.find_one({'participant_key': participant_key, 'status': 'active'})

    def get(self, conversation_id: int) -> Optional[Dict[str, Any]]:
        return self.find_one({'_id': conversation_id})

    @translate_errors
    def set_status(self, conversation_id: int, status: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one_and_update(
            {'_id': conversation_id},
            {'$set': {'status': status}},
            return_document=ReturnDocument.AFTER
        )

    @translate_errors
    def bump_updated_at(self, conversation_id: int, at: datetime) -> bool:
        """Advance updated_at to ``at``; $max keeps it from moving backwards."""
        result = self.collection.update_one({'_id': conversation_id}, {'$max': {'updated_at': at}})
        return result.matched_count > 0

    def list_by_ids(self, conversation_ids: List[int], include_archived: bool = False) -> List[Dict[str, Any]]:
        if not conversation_ids:
            return []
        query = {'_id': {'$in': conversation_ids}}
        if not include_archived:
            query['status'] = 'active'
        return self.find(query, sort=[('updated_at', DESCENDING), ('_id', DESCENDING)])

    @translate_errors
    def remove(self, conversation_id: int) -> bool:
        return self.collection.delete_one({'_id': conversation_id}).deleted_count > 0
