import logging

from pymongo import ReturnDocument

from shuttle_server.repository.mongo_helper import MongoRepositorySingleton, translate_errors

logger = logging.getLogger(__name__)


class BaseRepository:
    """Thin wrapper around one MongoDB collection.

    Subclasses set ``collection_name`` and add domain queries on top of the
    generic helpers below. Every helper translates pymongo errors.
    """
    collection_name = None

    def __init__(self, db, collection_name=None):
        self.db = db
        self.collection_name = collection_name or self.collection_name
        self.collection = MongoRepositorySingleton.get_collection(self.collection_name, db)
        logger.debug("Initialized repository for %s", self.collection_name)

    @translate_errors
    def create(self, data):
        """Insert a new document into the collection."""
        return self.collection.insert_one(data).inserted_id

    @translate_errors
    def find(self, query=None, sort=None, limit=0):
        """Find multiple documents matching the query."""
        cursor = self.collection.find(query or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    @translate_errors
    def find_one(self, query):
        """Find a single document matching the query."""
        return self.collection.find_one(query)

    @translate_errors
    def update(self, query, update_fields):
        """Set fields on the first document matching the query; returns the updated doc or None."""
        return self.collection.find_one_and_update(
            query, {'$set': update_fields}, return_document=ReturnDocument.AFTER
        )

    @translate_errors
    def delete(self, query):
        """Delete documents matching the query."""
        return self.collection.delete_many(query).deleted_count

    @translate_errors
    def count(self, query):
        return self.collection.count_documents(query)


class CounterRepository(BaseRepository):
    """Integer id sequences, one document per sequence name."""
    collection_name = 'counters'

    @translate_errors
    def next_value(self, name):
        doc = self.collection.find_one_and_update(
            {'_id': name},
            {'$inc': {'seq': 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
        return int(doc['seq'])
