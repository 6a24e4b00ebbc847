import threading

import pytest

from shuttle_server.exception import ValidationError, ForbiddenError, NotFoundError, StorageUnavailable
from shuttle_server.messaging.models import MessageState, MessageType
from shuttle_server.security.authentication import Identity
from shuttle_server.websocket.event_emitter import EventEmitter, user_room


def test_send_to_offline_recipient_stays_created(service, conversation, store, emitter):
    message = service.send_message(conversation.conversation_id, 1, 'hi')
    assert message.state == MessageState.CREATED
    assert message.delivered_at is None
    assert store.get_conversation(conversation.conversation_id).updated_at == message.created_at
    sent = emitter.named(EventEmitter.MESSAGE_SENT, room=user_room(1))
    assert sent[0]['message']['messageId'] == message.message_id
    assert emitter.named(EventEmitter.MESSAGE_NEW) == []


def test_send_to_online_recipient_is_delivered(service, conversation, registry, store, emitter):
    registry.register_connection(2, 'sid-b')
    message = service.send_message(conversation.conversation_id, 1, 'hi', client_message_id='tmp-1')
    stored = store.get_message(message.message_id)
    assert stored.state == MessageState.DELIVERED
    assert emitter.named(EventEmitter.MESSAGE_NEW, room=user_room(2))[0]['message']['content'] == 'hi'
    receipts = emitter.named(EventEmitter.MESSAGE_DELIVERED, room=user_room(1))
    assert receipts[0]['messageId'] == message.message_id and receipts[0]['deliveredTo'] == 2
    assert emitter.named(EventEmitter.MESSAGE_SENT)[0]['tempId'] == 'tmp-1'


@pytest.mark.parametrize('content', ['', '   ', None, 42])
def test_empty_content_is_rejected_before_storage(service, conversation, store, content):
    before = store.get_conversation(conversation.conversation_id).updated_at
    with pytest.raises(ValidationError):
        service.send_message(conversation.conversation_id, 1, content)
    assert store.last_message(conversation.conversation_id) is None
    assert store.get_conversation(conversation.conversation_id).updated_at == before


def test_content_length_and_type_are_validated(service, conversation):
    with pytest.raises(ValidationError):
        service.send_message(conversation.conversation_id, 1, 'x' * 51)
    with pytest.raises(ValidationError):
        service.send_message(conversation.conversation_id, 1, 'hi', message_type='sticker')
    message = service.send_message(conversation.conversation_id, 1, '5.65,-0.18', message_type='location')
    assert message.message_type == MessageType.LOCATION


def test_non_participant_cannot_send(service, conversation):
    with pytest.raises(ForbiddenError):
        service.send_message(conversation.conversation_id, 9, 'let me in')
    with pytest.raises(NotFoundError):
        service.send_message(404, 1, 'hello?')


def test_archived_conversation_rejects_sends(service, conversation, student):
    service.archive_conversation(student, conversation.conversation_id)
    with pytest.raises(ForbiddenError):
        service.send_message(conversation.conversation_id, 1, 'still there?')


def test_reply_must_stay_in_conversation(service, conversation, student):
    other, _ = service.create_or_find_conversation(student, [1, 3], 'student_support')
    foreign = service.send_message(other.conversation_id, 1, 'help')
    with pytest.raises(ValidationError):
        service.send_message(conversation.conversation_id, 1, 'reply', reply_to=foreign.message_id)
    first = service.send_message(conversation.conversation_id, 2, 'on my way')
    reply = service.send_message(conversation.conversation_id, 1, 'thanks', reply_to=first.message_id)
    assert reply.reply_to == first.message_id


def test_created_at_is_strictly_increasing_with_a_frozen_clock(service, conversation):
    messages = [service.send_message(conversation.conversation_id, 1 + i % 2, f'm{i}') for i in range(5)]
    stamps = [m.created_at for m in messages]
    assert stamps == sorted(stamps) and len(set(stamps)) == 5
    assert [m.message_id for m in messages] == sorted(m.message_id for m in messages)


def test_client_message_id_makes_sends_idempotent(service, conversation, store):
    first = service.send_message(conversation.conversation_id, 1, 'hi', client_message_id='tmp-9')
    again = service.send_message(conversation.conversation_id, 1, 'hi', client_message_id='tmp-9')
    assert again.message_id == first.message_id
    assert len(store.list_messages(conversation.conversation_id, 10)) == 1


def test_send_with_client_id_retries_storage_outage(service, conversation, store):
    real_insert = store.insert_message
    calls = []

    def flaky_insert(message):
        calls.append(message.client_message_id)
        if len(calls) == 1:
            raise StorageUnavailable('primary stepped down')
        return real_insert(message)

    store.insert_message = flaky_insert
    message = service.send_message(conversation.conversation_id, 1, 'hi', client_message_id='tmp-2')
    assert calls == ['tmp-2', 'tmp-2'] and message.message_id is not None


def test_send_without_client_id_is_not_retried(service, conversation, store):
    calls = []

    def down(message):
        calls.append(message)
        raise StorageUnavailable('primary stepped down')

    store.insert_message = down
    with pytest.raises(StorageUnavailable):
        service.send_message(conversation.conversation_id, 1, 'hi')
    assert len(calls) == 1


def test_concurrent_sends_get_distinct_ordered_positions(service, conversation, store):
    barrier = threading.Barrier(2)
    errors = []

    def sender(user_id):
        barrier.wait()
        try:
            for i in range(10):
                service.send_message(conversation.conversation_id, user_id, f'{user_id}-{i}')
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=sender, args=(uid,)) for uid in (1, 2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    rows = store.list_messages(conversation.conversation_id, 50)
    assert len(rows) == 20
    assert [m.created_at for m in rows] == sorted(m.created_at for m in rows)
    assert len({m.created_at for m in rows}) == 20


def test_mark_read_is_idempotent_and_implies_delivered(service, conversation, emitter, clock):
    message = service.send_message(conversation.conversation_id, 1, 'hi')
    clock.advance(seconds=3)
    read = service.mark_read(message.message_id, 2)
    assert read.state == MessageState.READ
    assert read.delivered_at is not None and read.read_at >= read.delivered_at
    again = service.mark_read(message.message_id, 2)
    assert again.read_at == read.read_at
    assert len(emitter.named(EventEmitter.MESSAGE_READ, room=user_room(1))) == 1
    assert len(emitter.named(EventEmitter.MESSAGE_DELIVERED, room=user_room(1))) == 1


def test_mark_read_advances_unread_marker(service, conversation):
    first = service.send_message(conversation.conversation_id, 1, 'one')
    service.send_message(conversation.conversation_id, 1, 'two')
    service.mark_read(first.message_id, 2)
    assert service.conversations.unread_count(conversation.conversation_id, 2) == 1
    assert service.conversations.unread_count(conversation.conversation_id, 9) == 0


def test_mark_read_by_sender_or_outsider(service, conversation):
    message = service.send_message(conversation.conversation_id, 1, 'hi')
    assert service.mark_read(message.message_id, 1).state == MessageState.CREATED
    with pytest.raises(ForbiddenError):
        service.mark_read(message.message_id, 9)
    with pytest.raises(NotFoundError):
        service.mark_read(999, 2)


def test_mark_delivered_ignores_sender_and_outsiders(service, conversation, emitter):
    message = service.send_message(conversation.conversation_id, 1, 'hi')
    assert service.mark_delivered(message.message_id, 1).delivered_at is None
    assert service.mark_delivered(message.message_id, 9).delivered_at is None
    delivered = service.mark_delivered(message.message_id, 2)
    assert delivered.state == MessageState.DELIVERED
    assert service.mark_delivered(message.message_id, 2).delivered_at == delivered.delivered_at
    assert len(emitter.named(EventEmitter.MESSAGE_DELIVERED)) == 1


def test_read_never_regresses_to_delivered(service, conversation):
    message = service.send_message(conversation.conversation_id, 1, 'hi')
    service.mark_read(message.message_id, 2)
    assert service.mark_delivered(message.message_id, 2).state == MessageState.READ


def test_mark_conversation_read(service, conversation, emitter):
    cid = conversation.conversation_id
    for i in range(3):
        service.send_message(cid, 1, f'm{i}')
    service.send_message(cid, 2, 'mine')
    changed = service.mark_conversation_read(cid, 2)
    assert len(changed) == 3
    assert service.conversations.unread_count(cid, 2) == 0
    assert len(emitter.named(EventEmitter.MESSAGE_READ, room=user_room(1))) == 3
    assert service.mark_conversation_read(cid, 2) == []


def test_deliver_pending_pushes_in_order(service, conversation, store, emitter):
    cid = conversation.conversation_id
    ids = [service.send_message(cid, 1, f'm{i}').message_id for i in range(3)]
    emitter.clear()
    assert service.deliver_pending(2) == 3
    pushed = [p['message']['messageId'] for p in emitter.named(EventEmitter.MESSAGE_NEW, room=user_room(2))]
    assert pushed == ids
    assert all(store.get_message(i).state == MessageState.DELIVERED for i in ids)
    assert service.deliver_pending(2) == 0


def test_offline_group_member_gets_pushes_after_first_delivery(service, registry, store, emitter):
    summary, _ = service.create_or_find_conversation(Identity(9, role='admin'), [1, 2, 9], 'admin_monitor')
    cid = summary.conversation.conversation_id
    registry.register_connection(2, 'sid-b')
    message = service.send_message(cid, 1, 'bus is late')
    assert store.get_message(message.message_id).state == MessageState.DELIVERED
    assert len(emitter.named(EventEmitter.MESSAGE_DELIVERED, room=user_room(1))) == 1

    registry.register_connection(9, 'sid-admin')
    emitter.clear()
    assert service.deliver_pending(9) == 1
    pushed = emitter.named(EventEmitter.MESSAGE_NEW, room=user_room(9))
    assert [p['message']['messageId'] for p in pushed] == [message.message_id]
    # the sender already heard about the first delivery
    assert emitter.named(EventEmitter.MESSAGE_DELIVERED) == []
    assert store.get_participant(cid, 9).last_delivered_id == message.message_id
    assert service.deliver_pending(9) == 0
    assert service.deliver_pending(2) == 0


def test_deliver_pending_skips_messages_read_through_history(service, conversation, store, emitter):
    cid = conversation.conversation_id
    first = service.send_message(cid, 1, 'm0')
    second = service.send_message(cid, 1, 'm1')
    service.mark_read(first.message_id, 2)
    emitter.clear()
    assert service.deliver_pending(2) == 1
    pushed = emitter.named(EventEmitter.MESSAGE_NEW, room=user_room(2))
    assert [p['message']['messageId'] for p in pushed] == [second.message_id]
    assert store.get_participant(cid, 2).last_delivered_id == second.message_id


def test_read_racing_a_delivery_ack_sends_one_delivery_receipt(service, conversation, store, emitter, monkeypatch):
    message = service.send_message(conversation.conversation_id, 1, 'hi')
    real_get_participant = store.get_participant
    acked = []

    def ack_first(conversation_id, user_id):
        # the ack lands after mark_read loaded the message but before it takes the lock
        if not acked:
            acked.append(user_id)
            service.mark_delivered(message.message_id, 2)
        return real_get_participant(conversation_id, user_id)

    monkeypatch.setattr(store, 'get_participant', ack_first)
    read = service.mark_read(message.message_id, 2)
    assert acked == [2]
    assert read.state == MessageState.READ
    assert len(emitter.named(EventEmitter.MESSAGE_DELIVERED, room=user_room(1))) == 1
    assert len(emitter.named(EventEmitter.MESSAGE_READ, room=user_room(1))) == 1


def test_list_messages_requires_read_access(service, conversation):
    cid = conversation.conversation_id
    for i in range(4):
        service.send_message(cid, 1, f'm{i}')
    page = service.list_messages(Identity(2, 'driver'), cid, limit=2)
    assert [m.content for m in page] == ['m2', 'm3']
    older = service.list_messages(Identity(2, 'driver'), cid, limit=2, before=page[0].message_id)
    assert [m.content for m in older] == ['m0', 'm1']
    with pytest.raises(ForbiddenError):
        service.list_messages(Identity(9, 'student'), cid)
    assert len(service.list_messages(Identity(10, 'admin'), cid, limit=500)) == 4


def test_list_messages_retries_reads(service, conversation, store):
    real_list = store.list_messages
    calls = []

    def flaky(*args):
        calls.append(args)
        if len(calls) < 3:
            raise StorageUnavailable('timeout')
        return real_list(*args)

    store.list_messages = flaky
    assert service.list_messages(Identity(1, 'student'), conversation.conversation_id) == []
    assert len(calls) == 3


def test_delete_message_by_sender_only(service, conversation, emitter):
    message = service.send_message(conversation.conversation_id, 1, 'oops')
    with pytest.raises(ForbiddenError):
        service.delete_message(message.message_id, 2)
    deleted = service.delete_message(message.message_id, 1)
    assert deleted.is_deleted and deleted.to_dict()['content'] is None
    rooms = sorted(r for (r, e, _) in emitter.events if e == EventEmitter.MESSAGE_DELETED)
    assert rooms == [user_room(1), user_room(2)]
    assert service.delete_message(message.message_id, 1).deleted_at == deleted.deleted_at
