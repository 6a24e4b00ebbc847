from datetime import timedelta

from shuttle_server.messaging.models import MessageState
from shuttle_server.security.authentication import AuthSecurity, Identity


def _service(app):
    return app.extensions['messaging_service']


def _conversation(app, user_ids=(1, 2), ctype='student_driver', requester=None):
    requester = requester or Identity(user_ids[0], role='student')
    summary, _ = _service(app).create_or_find_conversation(requester, list(user_ids), ctype)
    return summary.conversation_id


def test_bad_token_refuses_connection_without_registering(app, connect):
    sio = connect(1, token='not-a-jwt')
    assert not sio.is_connected()
    assert _service(app).registry.connection_count() == 0


def test_expired_token_is_refused(app, connect):
    token = AuthSecurity.encode_token({'user_id': 1, 'role': 'student'}, expires_delta=timedelta(minutes=-5))
    sio = connect(1, token=token)
    assert not sio.is_connected()
    assert not _service(app).registry.is_online(1)


def test_connect_authenticates_and_subscribes(app, connect, received):
    cid = _conversation(app)
    sio = connect(1, 'student')
    assert sio.is_connected()
    events = received(sio)
    auth = events['authenticated'][0]
    assert auth['userId'] == 1 and auth['role'] == 'student'
    assert auth['conversationIds'] == [cid]
    assert auth['state'] == 'subscribed'
    assert _service(app).registry.is_online(1)
    assert _service(app).store.get_user(1).role.value == 'student'


def test_connect_without_conversations_is_only_authenticated(app, connect, received):
    sio = connect(5, 'support')
    assert received(sio)['authenticated'][0]['state'] == 'authenticated'


def test_offline_send_then_delivery_sweep_then_read_receipt(app, connect, received):
    cid = _conversation(app)
    alice = connect(1, 'student')
    received(alice)

    ack = alice.emit('message:send', {'conversationId': cid, 'content': 'hi', 'tempId': 't-1'}, callback=True)
    assert ack['success'] is True and ack['tempId'] == 't-1'
    message_id = ack['message']['messageId']
    assert ack['message']['state'] == MessageState.CREATED.value
    assert received(alice)['message:sent'][0]['tempId'] == 't-1'

    bob = connect(2, 'driver')
    bob_events = received(bob)
    assert [m['message']['messageId'] for m in bob_events['message:new']] == [message_id]
    assert _service(app).store.get_message(message_id).state == MessageState.DELIVERED
    alice_events = received(alice)
    assert alice_events['message:delivered'][0]['messageId'] == message_id
    assert alice_events['presence:update'][0]['userId'] == 2

    read_ack = bob.emit('message:read', {'messageId': message_id}, callback=True)
    assert read_ack['success'] is True and read_ack['message']['state'] == 'read'
    receipts = received(alice)['message:read']
    assert receipts[0]['messageId'] == message_id and receipts[0]['readBy'] == 2


def test_online_recipient_gets_message_immediately(app, connect, received):
    cid = _conversation(app)
    alice = connect(1, 'student')
    bob = connect(2, 'driver')
    received(alice)
    received(bob)

    alice.emit('message:send', {'conversationId': cid, 'content': 'at the gate'}, callback=True)
    new = received(bob)['message:new']
    assert new[0]['message']['content'] == 'at the gate'
    assert new[0]['message']['state'] == 'created'
    assert received(alice)['message:delivered'][0]['deliveredTo'] == 2


def test_failed_send_is_reported_distinctly(app, connect, received):
    cid = _conversation(app)
    alice = connect(1, 'student')
    received(alice)
    ack = alice.emit('message:send', {'conversationId': cid, 'content': '  ', 'tempId': 't-2'}, callback=True)
    assert ack['success'] is False
    assert ack['code'] == 'INVALID_DATA' and ack['tempId'] == 't-2'
    events = received(alice)
    assert events['message:error'][0]['tempId'] == 't-2'
    assert 'message:sent' not in events


def test_outsider_send_is_forbidden(app, connect):
    cid = _conversation(app)
    mallory = connect(9, 'student')
    ack = mallory.emit('message:send', {'conversationId': cid, 'content': 'hi'}, callback=True)
    assert ack['success'] is False and ack['code'] == 'FORBIDDEN'


def test_typing_is_relayed_to_other_subscribers(app, connect, received):
    cid = _conversation(app)
    alice = connect(1, 'student')
    bob = connect(2, 'driver')
    received(alice)
    received(bob)

    assert alice.emit('typing:start', {'conversationId': cid}, callback=True) == {'success': True}
    started = received(bob)['typing:started']
    assert started[0]['userId'] == 1 and started[0]['conversationId'] == cid
    assert 'typing:started' not in received(alice)

    alice.emit('typing:stop', {'conversationId': cid}, callback=True)
    assert received(bob)['typing:stopped'][0]['isTyping'] is False


def test_new_conversation_subscribes_connected_participants(app, connect, received):
    alice = connect(1, 'student')
    bob = connect(2, 'driver')
    cid = _conversation(app)
    received(bob)
    alice.emit('typing:start', {'conversationId': cid}, callback=True)
    assert 'typing:started' in received(bob)


def test_disconnect_broadcasts_offline_and_clears_typing(app, connect, received):
    cid = _conversation(app)
    alice = connect(1, 'student')
    bob = connect(2, 'driver')
    bob.emit('typing:start', {'conversationId': cid}, callback=True)
    received(alice)

    bob.disconnect()
    events = received(alice)
    update = events['presence:update'][0]
    assert update == {**update, 'userId': 2, 'status': 'offline', 'conversationIds': [cid]}
    assert events['typing:stopped'][0]['userId'] == 2
    assert not _service(app).registry.is_online(2)


def test_second_device_keeps_user_online(app, connect, received):
    _conversation(app)
    alice = connect(1, 'student')
    phone = connect(2, 'driver')
    tablet = connect(2, 'driver')
    received(alice)

    phone.disconnect()
    assert _service(app).registry.is_online(2)
    assert 'presence:update' not in received(alice)
    tablet.disconnect()
    assert not _service(app).registry.is_online(2)


def test_join_and_leave_conversation(app, connect, received):
    cid = _conversation(app)
    alice = connect(1, 'student')
    received(alice)
    ack = alice.emit('conversation:leave', {'conversationId': cid}, callback=True)
    assert ack['state'] == 'authenticated'
    ack = alice.emit('conversation:join', {'conversationId': cid}, callback=True)
    assert ack['success'] and ack['state'] == 'subscribed'
    assert received(alice)['conversation:joined'][0]['conversationId'] == cid

    mallory = connect(9, 'student')
    assert mallory.emit('conversation:join', {'conversationId': cid}, callback=True)['code'] == 'FORBIDDEN'


def test_online_discovery_requests(app, connect):
    alice = connect(1, 'student')
    connect(2, 'driver', name='Kofi')
    connect(3, 'support')

    drivers = alice.emit('drivers:online', callback=True)
    assert [u['userId'] for u in drivers['drivers']] == [2]
    assert drivers['drivers'][0]['name'] == 'Kofi'
    agents = alice.emit('support:agents', {}, callback=True)
    assert [u['userId'] for u in agents['agents']] == [3]
    everyone = alice.emit('users:online', {}, callback=True)
    assert [u['userId'] for u in everyone['users']] == [1, 2, 3]


def test_ping_and_conversation_read(app, connect, received):
    cid = _conversation(app)
    alice = connect(1, 'student')
    _service(app).send_message(cid, 2, 'one')
    _service(app).send_message(cid, 2, 'two')
    assert alice.emit('presence:ping', callback=True) == {'success': True}
    ack = alice.emit('conversation:read', {'conversationId': cid}, callback=True)
    assert ack['success'] and ack['count'] == 2


def test_malformed_payload_gets_error_ack(app, connect):
    alice = connect(1, 'student')
    ack = alice.emit('message:read', {'messageId': 'abc'}, callback=True)
    assert ack['success'] is False and ack['code'] == 'INVALID_DATA'
