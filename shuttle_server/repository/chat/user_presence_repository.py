"""User presence repository: one row per user, upserted on connect."""
import logging
from typing import Optional, Dict, Any, List

from pymongo import ASCENDING

from shuttle_server.repository.base_repository import BaseRepository
from shuttle_server.repository.mongo_helper import translate_errors

logger = logging.getLogger(__name__)


class UserPresenceRepository(BaseRepository):
    collection_name = 'user_presence'

    @translate_errors
    def upsert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        self.collection.replace_one({'_id': doc['_id']}, doc, upsert=True)
        return doc

    def get(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.find_one({'_id': user_id})

    def list_rows(self, online_only: bool = True, role: Optional[str] = None) -> List[Dict[str, Any]]:
        query = {}
        if online_only:
            query['is_online'] = True
        if role:
            query['role'] = role
        return self.find(query, sort=[('_id', ASCENDING)])
