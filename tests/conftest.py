from datetime import datetime, timedelta, timezone

import pytest

from shuttle_server.messaging.presence import InMemoryPresenceRegistry
from shuttle_server.messaging.service import MessagingService, configure_messaging_service
from shuttle_server.repository.memory_store import InMemoryChatStore
from shuttle_server.security.authentication import AuthSecurity, Identity
from shuttle_server.websocket.event_emitter import EventEmitter

TEST_SECRET = 'test-secret'


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 9, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds=0, milliseconds=0):
        self.now = self.now + timedelta(seconds=seconds, milliseconds=milliseconds)
        return self.now


class RecordingEmitter(EventEmitter):
    """Emitter that records (room, event, payload) instead of talking to Socket.IO."""

    def __init__(self):
        super().__init__()
        self.events = []

    def _emit(self, event, payload, room, skip_sid=None):
        self.events.append((room, event, payload))
        return True

    def named(self, event, room=None):
        return [p for (r, e, p) in self.events if e == event and (room is None or r == room)]

    def clear(self):
        self.events = []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryChatStore()


@pytest.fixture
def registry(store, clock):
    return InMemoryPresenceRegistry(store, clock=clock)


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def service(store, registry, emitter, clock):
    return MessagingService(store, registry=registry, emitter=emitter, clock=clock,
                            max_message_length=50, typing_ttl_seconds=300, retry_backoff=0)


@pytest.fixture
def student():
    return Identity(1, role='student', name='Ama')


@pytest.fixture
def driver():
    return Identity(2, role='driver', name='Kofi')


@pytest.fixture
def conversation(service, student):
    summary, _ = service.create_or_find_conversation(student, [1, 2], 'student_driver')
    return summary.conversation


@pytest.fixture
def make_token():
    AuthSecurity.configure(TEST_SECRET)

    def _make(user_id, role='student', name=None, **claims):
        data = {'user_id': user_id, 'role': role}
        if name:
            data['name'] = name
        data.update(claims)
        return AuthSecurity.encode_token(data)
    return _make


@pytest.fixture
def app(store):
    from server import create_app
    app = create_app(store=store)
    app.config['TESTING'] = True
    AuthSecurity.configure(TEST_SECRET)
    yield app
    configure_messaging_service(None)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(make_token):
    def _headers(user_id, role='student', **claims):
        return {'Authorization': f'Bearer {make_token(user_id, role, **claims)}'}
    return _headers


@pytest.fixture
def connect(app, make_token):
    """Open an authenticated Socket.IO test client for a user."""
    socketio = app.extensions['socketio']
    clients = []

    def _connect(user_id, role='student', token=None, **claims):
        if token is None:
            token = make_token(user_id, role, **claims)
        sio = socketio.test_client(app, auth={'token': token})
        clients.append(sio)
        return sio
    yield _connect
    for sio in clients:
        if sio.is_connected():
            sio.disconnect()


@pytest.fixture
def received():
    """Drain a Socket.IO test client into {event name: [first argument, ...]}."""
    def _received(sio):
        events = {}
        for msg in sio.get_received():
            events.setdefault(msg['name'], []).append(msg['args'][0] if msg['args'] else None)
        return events
    return _received
