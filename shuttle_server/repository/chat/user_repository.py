"""Users mirrored from the auth service (id, name, email, role)."""
import logging
from typing import Optional, Dict, Any, List, Iterable

from shuttle_server.repository.base_repository import BaseRepository
from shuttle_server.repository.mongo_helper import translate_errors

logger = logging.getLogger(__name__)


class UserRepository(BaseRepository):
    collection_name = 'users'

    @translate_errors
    def save(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        self.collection.replace_one({'_id': doc['_id']}, doc, upsert=True)
        return doc

    def get(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.find_one({'_id': user_id})

    def get_many(self, user_ids: Iterable[int]) -> List[Dict[str, Any]]:
        ids = list(user_ids)
        if not ids:
            return []
        return self.find({'_id': {'$in': ids}})
