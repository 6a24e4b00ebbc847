from shuttle_server.repository.chat.user_repository import UserRepository
from shuttle_server.repository.chat.conversation_repository import ConversationRepository
from shuttle_server.repository.chat.participant_repository import ParticipantRepository
from shuttle_server.repository.chat.chat_message_repository import ChatMessageRepository
from shuttle_server.repository.chat.user_presence_repository import UserPresenceRepository
from shuttle_server.repository.chat.typing_repository import TypingRepository

__all__ = [
    'UserRepository',
    'ConversationRepository',
    'ParticipantRepository',
    'ChatMessageRepository',
    'UserPresenceRepository',
    'TypingRepository'
]
