import threading

import pytest

from shuttle_server.exception import ValidationError, ForbiddenError, NotFoundError, ConflictError
from shuttle_server.messaging.conversations import ConversationManager, parse_participant_ids
from shuttle_server.messaging.models import ConversationStatus, Priority
from shuttle_server.repository.memory_store import InMemoryChatStore


@pytest.fixture
def manager(store, clock):
    return ConversationManager(store, clock=clock, retry_backoff=0)


def test_find_or_create_returns_existing(manager):
    first, created = manager.find_or_create([1, 2], 'student_driver', requester_id=1, title=' Pickup ')
    again, created_again = manager.find_or_create([2, 1, 2], 'student_driver', requester_id=2)
    assert created and not created_again
    assert again.conversation_id == first.conversation_id
    assert first.title == 'Pickup'
    assert first.priority == Priority.MEDIUM
    assert first.created_by == 1


def test_type_and_exact_participant_set_are_part_of_the_key(manager):
    pair, _ = manager.find_or_create([1, 2], 'student_driver')
    support, _ = manager.find_or_create([1, 2], 'student_support')
    trio, _ = manager.find_or_create([1, 2, 3], 'student_driver')
    assert len({pair.conversation_id, support.conversation_id, trio.conversation_id}) == 3


@pytest.mark.parametrize('ids', [None, 'abc', [1], [1, 1], [1, 'x'], [True, 2], {'a': 1}])
def test_malformed_participant_sets_are_rejected(ids):
    with pytest.raises(ValidationError):
        parse_participant_ids(ids)


def test_unknown_type_or_priority_is_rejected(manager):
    with pytest.raises(ValidationError):
        manager.find_or_create([1, 2], 'student_pilot')
    with pytest.raises(ValidationError):
        manager.find_or_create([1, 2], 'student_driver', priority='whenever')


def test_requester_must_take_part_unless_admin(manager):
    with pytest.raises(ForbiddenError):
        manager.find_or_create([1, 2], 'student_driver', requester_id=9)
    conversation, created = manager.find_or_create([1, 2], 'admin_monitor', requester_id=9,
                                                   requester_is_admin=True)
    assert created and conversation.created_by == 9


def test_concurrent_find_or_create_converges(manager, store):
    results = []
    errors = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        try:
            conversation, _ = manager.find_or_create([4, 5], 'student_driver')
            results.append(conversation.conversation_id)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(set(results)) == 1 and len(results) == 8
    assert len(store.list_conversations_for_user(4)) == 1


def test_conflict_from_another_process_resolves_as_lookup(clock):
    store = InMemoryChatStore()
    manager = ConversationManager(store, clock=clock)
    winner, _ = ConversationManager(store, clock=clock).find_or_create([1, 2], 'student_driver')

    # the lookup misses once, as if the other insert landed in between
    real_find = store.find_active_conversation
    calls = []

    def racing_find(key):
        calls.append(key)
        return None if len(calls) == 1 else real_find(key)

    store.find_active_conversation = racing_find
    conversation, created = manager.find_or_create([1, 2], 'student_driver')
    assert not created
    assert conversation.conversation_id == winner.conversation_id


def test_conflict_without_active_row_propagates(clock):
    store = InMemoryChatStore()

    def always_conflict(conversation, participant_ids):
        raise ConflictError('duplicate participant pair')

    store.create_conversation = always_conflict
    with pytest.raises(ConflictError):
        ConversationManager(store, clock=clock).find_or_create([1, 2], 'student_driver')


def test_list_for_user_includes_unread_and_last_message(service, student, driver, clock):
    summary, _ = service.create_or_find_conversation(student, [1, 2], 'student_driver')
    cid = summary.conversation_id
    service.send_message(cid, 1, 'hi')
    clock.advance(seconds=1)
    service.send_message(cid, 1, 'are you close?')

    listed = service.list_conversations(2)
    assert len(listed) == 1
    body = listed[0].to_dict()
    assert body['unreadCount'] == 2
    assert body['participants'] == [1, 2]
    assert body['lastMessage']['content'] == 'are you close?'
    assert body['lastMessageAt'] == body['lastMessage']['createdAt']
    assert service.list_conversations(1)[0].unread_count == 0

    service.send_message(cid, 1, 'one more')
    assert service.list_conversations(2)[0].unread_count == 3


def test_archive_hides_from_listing_but_not_direct_fetch(service, student, driver, conversation):
    cid = conversation.conversation_id
    archived = service.archive_conversation(driver, cid)
    assert archived.status == ConversationStatus.ARCHIVED
    assert service.list_conversations(1) == []
    assert [s.conversation_id for s in service.list_conversations(1, include_archived=True)] == [cid]
    assert service.get_conversation(student, cid).conversation.status == ConversationStatus.ARCHIVED

    # the participant set can start over with a fresh conversation
    fresh, created = service.create_or_find_conversation(student, [1, 2], 'student_driver')
    assert created and fresh.conversation_id != cid


def test_outsiders_cannot_read_or_archive(service, conversation):
    from shuttle_server.security.authentication import Identity
    outsider = Identity(9, role='student')
    admin = Identity(10, role='admin')
    cid = conversation.conversation_id
    with pytest.raises(ForbiddenError):
        service.get_conversation(outsider, cid)
    with pytest.raises(ForbiddenError):
        service.archive_conversation(outsider, cid)
    assert service.get_conversation(admin, cid).participant_ids == [1, 2]
    with pytest.raises(NotFoundError):
        service.get_conversation(admin, 404)


def test_new_conversation_notifies_listeners(service, student):
    seen = []
    service.add_conversation_listener(lambda conv, ids: seen.append((conv.conversation_id, ids)))
    summary, _ = service.create_or_find_conversation(student, [1, 3], 'student_support')
    service.create_or_find_conversation(student, [1, 3], 'student_support')
    assert seen == [(summary.conversation_id, [1, 3])]
