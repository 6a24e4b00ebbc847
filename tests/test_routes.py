import pytest

from shuttle_server.exception import StorageUnavailable


def _create(client, headers, ids=(1, 2), ctype='student_driver', **extra):
    body = {'participantIds': list(ids), 'type': ctype, **extra}
    return client.post('/api/conversations', json=body, headers=headers)


def _send(client, headers, cid, content='hi', **extra):
    return client.post('/api/messages', json={'conversationId': cid, 'content': content, **extra}, headers=headers)


def test_requests_without_token_are_unauthorized(client):
    resp = client.get('/api/conversations')
    assert resp.status_code == 401
    assert resp.get_json()['code'] == 'UNAUTHORIZED'
    resp = client.get('/api/conversations', headers={'Authorization': 'Bearer junk'})
    assert resp.status_code == 401


def test_create_then_find_conversation(client, auth_headers):
    resp = _create(client, auth_headers(1), title='Airport run', tripId='T-42', priority='high')
    assert resp.status_code == 201
    body = resp.get_json()
    assert body['success'] and body['created']
    conv = body['conversation']
    assert conv['participants'] == [1, 2] and conv['tripId'] == 'T-42'
    assert conv['title'] == 'Airport run' and conv['priority'] == 'high'

    again = _create(client, auth_headers(2, 'driver'), ids=(2, 1))
    assert again.status_code == 200
    assert again.get_json()['conversation']['conversationId'] == conv['conversationId']


@pytest.mark.parametrize('body', [
    {'participantIds': [1], 'type': 'student_driver'},
    {'participantIds': [1, 2], 'type': 'carpool'},
    {'participantIds': 'one,two', 'type': 'student_driver'},
])
def test_create_rejects_bad_input(client, auth_headers, body):
    resp = client.post('/api/conversations', json=body, headers=auth_headers(1))
    assert resp.status_code == 400
    assert resp.get_json()['code'] == 'INVALID_DATA'


def test_create_requires_json_body(client, auth_headers):
    resp = client.post('/api/conversations', data='nope', headers=auth_headers(1))
    assert resp.status_code == 400


def test_create_for_others_is_forbidden(client, auth_headers):
    assert _create(client, auth_headers(3)).status_code == 403


def test_send_list_and_unread(client, auth_headers):
    cid = _create(client, auth_headers(1)).get_json()['conversation']['conversationId']
    for text in ('one', 'two', 'three'):
        resp = _send(client, auth_headers(1), cid, text)
        assert resp.status_code == 201

    listed = client.get('/api/conversations', headers=auth_headers(2, 'driver')).get_json()['conversations']
    assert listed[0]['unreadCount'] == 3
    assert listed[0]['lastMessage']['content'] == 'three'

    page = client.get(f'/api/conversations/{cid}/messages?limit=2', headers=auth_headers(2, 'driver')).get_json()
    assert [m['content'] for m in page['messages']] == ['two', 'three']
    first_id = page['messages'][0]['messageId']
    older = client.get(f'/api/conversations/{cid}/messages?before={first_id}',
                       headers=auth_headers(2, 'driver')).get_json()
    assert [m['content'] for m in older['messages']] == ['one']


def test_message_pagination_is_validated(client, auth_headers):
    cid = _create(client, auth_headers(1)).get_json()['conversation']['conversationId']
    resp = client.get(f'/api/conversations/{cid}/messages?limit=0&after=x', headers=auth_headers(1))
    assert resp.status_code == 400
    errors = resp.get_json()['errors']
    assert 'limit' in errors and 'after' in errors


def test_send_validation_and_forbidden(client, auth_headers):
    cid = _create(client, auth_headers(1)).get_json()['conversation']['conversationId']
    assert _send(client, auth_headers(1), cid, '').status_code == 400
    assert _send(client, auth_headers(7), cid).status_code == 403
    assert _send(client, auth_headers(1), 999).status_code == 404
    resp = client.post('/api/messages', json={'content': 'hi'}, headers=auth_headers(1))
    assert resp.status_code == 400


def test_send_with_client_message_id_is_idempotent(client, auth_headers):
    cid = _create(client, auth_headers(1)).get_json()['conversation']['conversationId']
    first = _send(client, auth_headers(1), cid, clientMessageId='c-1').get_json()['message']
    second = _send(client, auth_headers(1), cid, clientMessageId='c-1').get_json()['message']
    assert first['messageId'] == second['messageId']


def test_read_receipt_and_conversation_read(client, auth_headers):
    cid = _create(client, auth_headers(1)).get_json()['conversation']['conversationId']
    mid = _send(client, auth_headers(1), cid).get_json()['message']['messageId']
    _send(client, auth_headers(1), cid, 'second')

    resp = client.post(f'/api/messages/{mid}/read', headers=auth_headers(2, 'driver'))
    message = resp.get_json()['message']
    assert message['state'] == 'read' and message['deliveredAt'] is not None
    assert client.post(f'/api/messages/{mid}/read', headers=auth_headers(2, 'driver')).status_code == 200

    resp = client.post(f'/api/conversations/{cid}/read', headers=auth_headers(2, 'driver'))
    assert resp.get_json()['count'] == 1
    summary = client.get(f'/api/conversations/{cid}', headers=auth_headers(2, 'driver')).get_json()
    assert summary['conversation']['unreadCount'] == 0


def test_archive_and_direct_fetch(client, auth_headers):
    cid = _create(client, auth_headers(1)).get_json()['conversation']['conversationId']
    resp = client.post(f'/api/conversations/{cid}/archive', headers=auth_headers(2, 'driver'))
    assert resp.get_json()['conversation']['status'] == 'archived'
    assert client.get('/api/conversations', headers=auth_headers(1)).get_json()['conversations'] == []
    archived = client.get('/api/conversations?include_archived=true', headers=auth_headers(1)).get_json()
    assert len(archived['conversations']) == 1
    assert client.get(f'/api/conversations/{cid}', headers=auth_headers(1)).status_code == 200
    assert _send(client, auth_headers(1), cid).status_code == 403


def test_admin_can_monitor_any_conversation(client, auth_headers):
    cid = _create(client, auth_headers(1)).get_json()['conversation']['conversationId']
    _send(client, auth_headers(1), cid)
    assert client.get(f'/api/conversations/{cid}/messages', headers=auth_headers(8)).status_code == 403
    resp = client.get(f'/api/conversations/{cid}/messages', headers=auth_headers(8, 'admin'))
    assert resp.status_code == 200 and resp.get_json()['count'] == 1


def test_delete_message(client, auth_headers):
    cid = _create(client, auth_headers(1)).get_json()['conversation']['conversationId']
    mid = _send(client, auth_headers(1), cid).get_json()['message']['messageId']
    assert client.delete(f'/api/messages/{mid}', headers=auth_headers(2, 'driver')).status_code == 403
    resp = client.delete(f'/api/messages/{mid}', headers=auth_headers(1))
    assert resp.get_json()['message']['isDeleted'] is True
    assert client.delete('/api/messages/abc', headers=auth_headers(1)).status_code == 400


def test_typing_listing(client, auth_headers, app):
    cid = _create(client, auth_headers(1)).get_json()['conversation']['conversationId']
    app.extensions['messaging_service'].start_typing(cid, 1)
    resp = client.get(f'/api/conversations/{cid}/typing', headers=auth_headers(2, 'driver'))
    assert [t['userId'] for t in resp.get_json()['typing']] == [1]


def test_online_users_by_role(client, auth_headers, app):
    registry = app.extensions['messaging_service'].registry
    registry.register_connection(2, 'sid-2', role='driver')
    registry.register_connection(3, 'sid-3', role='support')
    body = client.get('/api/users/online?role=driver', headers=auth_headers(1)).get_json()
    assert body['count'] == 1 and body['users'][0]['userId'] == 2
    assert client.get('/api/users/online', headers=auth_headers(1)).get_json()['count'] == 2


def test_health(client, app, store):
    body = client.get('/api/health').get_json()
    assert body['success'] and body['storage'] == 'ok'

    def down():
        raise StorageUnavailable('no primary')
    store.ping = down
    resp = client.get('/api/health')
    assert resp.status_code == 503
    assert resp.get_json()['errors']['storage'] == 'unavailable'
