"""Chat/Messaging REST API routes.

These endpoints cover history loading, conversation management and the
request/response versions of the realtime operations. Sending through
REST fans out to connected clients exactly like a socket send.

REST API Endpoints:
- POST   /api/conversations                     - Create or find a conversation
- GET    /api/conversations                     - List the caller's conversations
- GET    /api/conversations/{id}                - Conversation details
- POST   /api/conversations/{id}/archive        - Archive a conversation
- POST   /api/conversations/{id}/read           - Mark every message read
- GET    /api/conversations/{id}/messages       - Message history (limit/before/after)
- GET    /api/conversations/{id}/typing         - Participants currently typing
- POST   /api/messages                          - Send a message
- POST   /api/messages/{id}/read                - Read receipt
- DELETE /api/messages/{id}                     - Delete own message
- GET    /api/users/online                      - Online users, optionally by role
- GET    /api/health                            - Storage and connection status

All endpoints except /api/health need a Bearer token.
"""
import logging

from flask import Blueprint, request

from shuttle_server.exception import ValidationError
from shuttle_server.messaging.service import get_messaging_service
from shuttle_server.utils.decorators import handle_errors, require_auth
from shuttle_server.utils.helpers import (
    respond_success, respond_error, parse_int, parse_optional_int, parse_pagination, parse_bool
)

logger = logging.getLogger(__name__)

# Blueprint
chat_bp = Blueprint('chat', __name__, url_prefix='/api')


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError('Request body must be JSON')
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


# =============================================================================
# Conversation Endpoints
# =============================================================================

@chat_bp.route('/conversations', methods=['POST'])
@handle_errors
@require_auth
def create_conversation(identity):
    """Create or find the conversation for a participant set and type.

    Body: participantIds (list of user ids, caller included), type,
    title (optional), tripId (optional), priority (optional).
    Returns 201 when created, 200 when an active one already existed.
    """
    data = _json_body()
    summary, created = get_messaging_service().create_or_find_conversation(
        identity,
        data.get('participantIds', data.get('participant_ids')),
        data.get('type', data.get('conversationType')),
        title=data.get('title'),
        trip_id=data.get('tripId', data.get('trip_id')),
        priority=data.get('priority')
    )
    return respond_success({'conversation': summary.to_dict(), 'created': created},
                           status=201 if created else 200)


@chat_bp.route('/conversations', methods=['GET'])
@handle_errors
@require_auth
def list_conversations(identity):
    include_archived = parse_bool(request.args.get('include_archived'))
    summaries = get_messaging_service().list_conversations(identity.user_id, include_archived=include_archived)
    return respond_success({'conversations': [s.to_dict() for s in summaries]})


@chat_bp.route('/conversations/<conversation_id>', methods=['GET'])
@handle_errors
@require_auth
def get_conversation(conversation_id, identity):
    summary = get_messaging_service().get_conversation(identity, parse_int(conversation_id, 'conversationId'))
    return respond_success({'conversation': summary.to_dict()})


@chat_bp.route('/conversations/<conversation_id>/archive', methods=['POST'])
@handle_errors
@require_auth
def archive_conversation(conversation_id, identity):
    conversation = get_messaging_service().archive_conversation(
        identity, parse_int(conversation_id, 'conversationId')
    )
    return respond_success({'conversation': conversation.to_dict()})


@chat_bp.route('/conversations/<conversation_id>/read', methods=['POST'])
@handle_errors
@require_auth
def read_conversation(conversation_id, identity):
    cid = parse_int(conversation_id, 'conversationId')
    changed = get_messaging_service().mark_conversation_read(cid, identity.user_id)
    return respond_success({'conversationId': cid, 'count': len(changed)})


@chat_bp.route('/conversations/<conversation_id>/messages', methods=['GET'])
@handle_errors
@require_auth
def list_messages(conversation_id, identity):
    """Message history in ascending id order.

    Query: limit, before (message id), after (message id).
    """
    service = get_messaging_service()
    limit, before, after = parse_pagination(request.args, default_limit=service.page_size,
                                            max_limit=service.page_max)
    cid = parse_int(conversation_id, 'conversationId')
    messages = service.list_messages(identity, cid, limit=limit, before=before, after=after)
    return respond_success({
        'conversationId': cid,
        'messages': [m.to_dict() for m in messages],
        'count': len(messages)
    })


@chat_bp.route('/conversations/<conversation_id>/typing', methods=['GET'])
@handle_errors
@require_auth
def list_typing(conversation_id, identity):
    indicators = get_messaging_service().list_typing(identity, parse_int(conversation_id, 'conversationId'))
    return respond_success({'typing': [t.to_dict() for t in indicators]})


# =============================================================================
# Message Endpoints
# =============================================================================

@chat_bp.route('/messages', methods=['POST'])
@handle_errors
@require_auth
def send_message(identity):
    """Send a message.

    Body: conversationId, content, type (optional), replyTo (optional),
    clientMessageId (optional idempotency key).
    """
    data = _json_body()
    message = get_messaging_service().send_message(
        parse_int(data.get('conversationId', data.get('conversation_id')), 'conversationId'),
        identity.user_id,
        data.get('content'),
        message_type=data.get('type'),
        reply_to=parse_optional_int(data.get('replyTo', data.get('reply_to')), 'replyTo'),
        client_message_id=data.get('clientMessageId', data.get('tempId'))
    )
    return respond_success({'message': message.to_dict()}, status=201)


@chat_bp.route('/messages/<message_id>/read', methods=['POST'])
@handle_errors
@require_auth
def read_message(message_id, identity):
    message = get_messaging_service().mark_read(parse_int(message_id, 'messageId'), identity.user_id)
    return respond_success({'message': message.to_dict()})


@chat_bp.route('/messages/<message_id>', methods=['DELETE'])
@handle_errors
@require_auth
def delete_message(message_id, identity):
    message = get_messaging_service().delete_message(parse_int(message_id, 'messageId'), identity.user_id)
    return respond_success({'message': message.to_dict()})


# =============================================================================
# Presence Endpoints
# =============================================================================

@chat_bp.route('/users/online', methods=['GET'])
@handle_errors
@require_auth
def online_users(identity):
    role = request.args.get('role') or None
    users = get_messaging_service().list_online_users(role)
    return respond_success({'users': [u.to_dict() for u in users], 'count': len(users)})


@chat_bp.route('/health', methods=['GET'])
@handle_errors
def health():
    status = get_messaging_service().health()
    if status['storage'] != 'ok':
        return respond_error(status, status=503, code='SERVICE_UNAVAILABLE')
    return respond_success(status)
