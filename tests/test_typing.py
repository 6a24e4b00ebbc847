import pytest

from shuttle_server.exception import ForbiddenError
from shuttle_server.security.authentication import Identity
from shuttle_server.websocket.event_emitter import EventEmitter, conversation_room


def test_start_relays_to_conversation_except_sender(service, conversation, emitter):
    service.start_typing(conversation.conversation_id, 1, sid='sid-a')
    room, event, payload = emitter.events[-1]
    assert (room, event) == (conversation_room(conversation.conversation_id), EventEmitter.TYPING_STARTED)
    assert payload['userId'] == 1 and payload['isTyping'] is True


def test_list_typing_excludes_caller(service, conversation, driver):
    cid = conversation.conversation_id
    service.start_typing(cid, 1)
    service.start_typing(cid, 2)
    assert [t.user_id for t in service.list_typing(driver, cid)] == [1]


def test_stop_clears_indicator(service, conversation, driver, emitter):
    cid = conversation.conversation_id
    service.start_typing(cid, 1)
    service.stop_typing(cid, 1)
    assert service.list_typing(driver, cid) == []
    assert emitter.events[-1][1] == EventEmitter.TYPING_STOPPED


def test_indicator_expires_after_ttl_without_stop(service, conversation, driver, clock):
    cid = conversation.conversation_id
    service.start_typing(cid, 1)
    clock.advance(seconds=299)
    assert [t.user_id for t in service.list_typing(driver, cid)] == [1]
    clock.advance(seconds=2)
    assert service.list_typing(driver, cid) == []


def test_new_start_renews_the_ttl(service, conversation, driver, clock):
    cid = conversation.conversation_id
    service.start_typing(cid, 1)
    clock.advance(seconds=200)
    service.start_typing(cid, 1)
    clock.advance(seconds=200)
    assert [t.user_id for t in service.list_typing(driver, cid)] == [1]


def test_typing_requires_participation(service, conversation, student):
    with pytest.raises(ForbiddenError):
        service.start_typing(conversation.conversation_id, 9)
    with pytest.raises(ForbiddenError):
        service.list_typing(Identity(9, 'student'), conversation.conversation_id)
    service.archive_conversation(student, conversation.conversation_id)
    with pytest.raises(ForbiddenError):
        service.start_typing(conversation.conversation_id, 1)


def test_clear_user_announces_stop(service, conversation, driver, emitter):
    cid = conversation.conversation_id
    service.start_typing(cid, 1)
    emitter.clear()
    assert service.typing.clear_user(1, [cid]) == 1
    assert [e for (_, e, _) in emitter.events] == [EventEmitter.TYPING_STOPPED]
    assert service.list_typing(driver, cid) == []


def test_clear_stale_deletes_expired_rows(service, conversation, store, clock):
    cid = conversation.conversation_id
    service.start_typing(cid, 1)
    clock.advance(seconds=400)
    service.start_typing(cid, 2)
    assert service.typing.clear_stale() == 1
    assert service.typing.clear_stale() == 0
