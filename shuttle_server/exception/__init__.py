from shuttle_server.exception.errors import (
    MessagingError, ValidationError, AuthenticationError, ForbiddenError,
    NotFoundError, ConflictError, StorageUnavailable
)

__all__ = [
    'MessagingError', 'ValidationError', 'AuthenticationError', 'ForbiddenError',
    'NotFoundError', 'ConflictError', 'StorageUnavailable'
]
