import functools
import logging
from contextlib import contextmanager

from pymongo import MongoClient, ASCENDING, DESCENDING
from pymongo.errors import (
    DuplicateKeyError, ConnectionFailure, ExecutionTimeout, WTimeoutError, PyMongoError
)

from shuttle_server.exception import ConflictError, StorageUnavailable, MessagingError

logger = logging.getLogger(__name__)


@contextmanager
def mongo_errors(operation):
    """Translate pymongo errors raised inside the block into messaging errors.

    - DuplicateKeyError -> ConflictError
    - ConnectionFailure (AutoReconnect, NetworkTimeout, ServerSelectionTimeoutError),
      ExecutionTimeout, WTimeoutError -> StorageUnavailable
    - any other PyMongoError -> MessagingError
    """
    try:
        yield
    except DuplicateKeyError as e:
        logger.info("Duplicate key during %s: %s", operation, e.details or e)
        raise ConflictError(f'Duplicate key during {operation}', operation=operation) from e
    except (ConnectionFailure, ExecutionTimeout, WTimeoutError) as e:
        logger.warning("MongoDB unavailable during %s: %s", operation, e)
        raise StorageUnavailable(f'Storage unavailable during {operation}', operation=operation) from e
    except PyMongoError as e:
        logger.exception("MongoDB error during %s", operation)
        raise MessagingError(f'Storage error during {operation}', operation=operation) from e


def translate_errors(func):
    """Method decorator form of mongo_errors, named after the wrapped method."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with mongo_errors(func.__name__):
            return func(*args, **kwargs)
    return wrapper


class MongoRepositorySingleton:
    """Process-wide MongoDB handle for the chat database.

    Connection settings come from config (MONGO_URI, CHAT_DB_NAME). The
    client is created with tz_aware=True so datetimes read back are UTC aware.
    """
    _instance = None
    _client = None
    _db_instance = None

    @classmethod
    def get_db(cls, mongo_uri=None, db_name=None):
        if cls._db_instance is not None:
            return cls._db_instance
        from config import config
        mongo_uri = mongo_uri or config.MONGO_URI
        db_name = db_name or config.CHAT_DB_NAME
        logger.info("Connecting to MongoDB DB: %s", db_name)
        cls._client = MongoClient(
            mongo_uri,
            tz_aware=True,
            serverSelectionTimeoutMS=config.MONGO_TIMEOUT_MS,
        )
        cls._db_instance = cls._client[db_name]
        return cls._db_instance

    @classmethod
    def get_collection(cls, collection_name, db=None):
        """
        Get a collection from the database, creating it if it does not exist.
        Returns the collection object.
        """
        if db is None:
            db = cls.get_db()
        try:
            if collection_name not in db.list_collection_names():
                db.create_collection(collection_name)
                logger.info("Created '%s' collection in DB.", collection_name)
        except PyMongoError as e:
            # Another process may have created it first; inserts create it anyway
            logger.warning("Error ensuring '%s' collection exists: %s", collection_name, e)
        return db[collection_name]

    @classmethod
    def get_instance(cls):
        return cls.__new__(cls)

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            logger.debug("Initializing MongoRepositorySingleton instance.")
            cls._instance._init_repositories()
        return cls._instance

    def _init_repositories(self):
        from shuttle_server.repository.mongo_store import MongoChatStore

        db = self.get_db()
        self.chat = MongoChatStore(db)

    @classmethod
    def reset(cls):
        """Drop the cached client (used by tests and on shutdown)."""
        if cls._client is not None:
            cls._client.close()
        cls._instance = None
        cls._client = None
        cls._db_instance = None


def ensure_indexes(db):
    """Create the indexes the chat store relies on (idempotent)."""
    with mongo_errors('ensure_indexes'):
        # one active conversation per (type, participant set), across processes
        db['conversations'].create_index(
            [('participant_key', ASCENDING)], unique=True,
            partialFilterExpression={'status': 'active'},
            name='conversations_active_participant_key'
        )
        db['conversations'].create_index([('status', ASCENDING), ('updated_at', DESCENDING)],
                                         name='conversations_status_updated_at')
        db['conversation_participants'].create_index(
            [('conversation_id', ASCENDING), ('user_id', ASCENDING)], unique=True,
            name='participants_conversation_user'
        )
        db['conversation_participants'].create_index([('user_id', ASCENDING), ('is_active', ASCENDING)],
                                                     name='participants_user_active')
        db['chat_messages'].create_index([('conversation_id', ASCENDING), ('message_id', ASCENDING)],
                                         name='messages_conversation_id')
        # compound sparse indexes still index rows missing one field, so only
        # rows that carry a client id take part in the uniqueness check
        db['chat_messages'].create_index(
            [('conversation_id', ASCENDING), ('sender_id', ASCENDING), ('client_message_id', ASCENDING)],
            unique=True, partialFilterExpression={'client_message_id': {'$type': 'string'}},
            name='messages_client_message_id'
        )
        db['chat_messages'].create_index([('reply_to', ASCENDING)], sparse=True, name='messages_reply_to')
        db['user_presence'].create_index([('is_online', ASCENDING), ('role', ASCENDING)],
                                         name='presence_online_role')
        db['typing_indicators'].create_index(
            [('conversation_id', ASCENDING), ('user_id', ASCENDING)], unique=True,
            name='typing_conversation_user'
        )
        db['typing_indicators'].create_index([('updated_at', ASCENDING)], name='typing_updated_at')
    logger.info('Ensured chat DB indexes')
