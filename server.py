import argparse
import logging

from flask import Flask
from flask_cors import CORS
from flask_socketio import SocketIO

from config import config
from shuttle_server.messaging.presence import InMemoryPresenceRegistry
from shuttle_server.messaging.service import MessagingService, configure_messaging_service
from shuttle_server.messaging.sweeper import PresenceSweeper
from shuttle_server.repository.memory_store import InMemoryChatStore
from shuttle_server.routes.chat import chat_bp
from shuttle_server.security.authentication import AuthSecurity
from shuttle_server.utils.time_utils import now_utc
from shuttle_server.websocket.hub import WebSocketHub


def configure_logging(settings=None):
    settings = settings or config
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
                        format=settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)


def configure_auth_from_env(settings=None):
    """Configure AuthSecurity from the layered config.

    JWT_SECRET: secret key for verifying tokens (required in production).
    JWT_ALGORITHM: default HS256.
    ACCESS_TOKEN_MINUTES: default 1 day.
    """
    settings = settings or config
    if not settings.JWT_SECRET:
        logging.warning('JWT_SECRET is not set; every connection will be refused')
        return
    AuthSecurity.configure(
        secret_key=settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
        access_token_expire_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
    )


def build_store(settings=None):
    """Chat store for the configured backend (``mongo`` or ``memory``)."""
    settings = settings or config
    if settings.STORAGE_BACKEND == 'memory':
        logging.info('Using in-memory chat store')
        return InMemoryChatStore()
    from shuttle_server.repository.mongo_helper import MongoRepositorySingleton
    return MongoRepositorySingleton.get_instance().chat


def create_app(store=None, registry=None, settings=None, start_sweeper=False) -> Flask:
    """Application factory used by server.py and tests.

    Wires the chat store, presence registry, messaging service, Socket.IO
    gateway and REST blueprint. The SocketIO instance is kept in
    ``app.extensions['socketio']`` and the hub in ``app.extensions['ws_hub']``.
    """
    settings = settings or config
    settings.validate_required()
    configure_auth_from_env(settings)

    app = Flask(__name__)
    CORS(app, origins=settings.CORS_ORIGINS_LIST)
    socketio = SocketIO(app, async_mode=settings.SOCKETIO_ASYNC_MODE,
                        cors_allowed_origins=settings.CORS_ORIGINS_LIST)

    store = store if store is not None else build_store(settings)
    registry = registry if registry is not None else InMemoryPresenceRegistry(store, clock=now_utc)
    service = MessagingService.from_config(store, registry=registry, settings=settings)
    configure_messaging_service(service)

    hub = WebSocketHub(service)
    hub.init_app(app, socketio)
    app.register_blueprint(chat_bp)

    app.extensions['socketio'] = socketio
    app.extensions['ws_hub'] = hub
    app.extensions['messaging_service'] = service

    if start_sweeper:
        sweeper = PresenceSweeper.from_config(service, disconnect=hub.disconnect_connection, settings=settings)
        sweeper.start()
        app.extensions['presence_sweeper'] = sweeper

    return app


def parse_args():
    """Parse simple CLI arguments for running the server.

    Supports overriding the port and disabling the presence sweeper
    in environments where liveness is managed separately.
    """
    parser = argparse.ArgumentParser(description='Run the shuttle messaging server')
    parser.add_argument('--port', type=int, default=config.PORT, help='TCP port to bind (default: 5000 or PORT env)')
    parser.add_argument('--no-sweeper', action='store_true', help='Do not start the presence sweeper thread')
    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    configure_logging()
    app = create_app(start_sweeper=config.PRESENCE_SWEEPER_ENABLED and not args.no_sweeper)
    logging.info('Starting %s %s with Socket.IO on port %s', config.APP_NAME, config.APP_VERSION, args.port)
    app.extensions['socketio'].run(app, host="0.0.0.0", port=args.port, debug=config.DEBUG,
                                   allow_unsafe_werkzeug=True)
