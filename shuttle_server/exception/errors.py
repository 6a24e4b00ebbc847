"""Messaging error taxonomy.

Every error raised by the messaging core derives from MessagingError so
that REST and socket boundaries can map it to a response without knowing
the concrete class:

- ValidationError: malformed input, rejected before anything is stored
- AuthenticationError: missing, malformed or expired credential
- ForbiddenError: caller is not allowed to act on the conversation
- NotFoundError: unknown conversation or message id
- ConflictError: uniqueness constraint hit (retry the find-or-create as a lookup)
- StorageUnavailable: transient storage failure, safe to retry for reads
"""


class MessagingError(Exception):
    """Base class for all messaging errors."""

    code = 'MESSAGING_ERROR'
    status = 500
    retryable = False

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self):
        body = {'code': self.code, 'error': self.message}
        if self.details:
            body['details'] = self.details
        return body


class ValidationError(MessagingError):
    code = 'INVALID_DATA'
    status = 400


class AuthenticationError(MessagingError):
    """Raised when a token is missing, malformed, expired or has a bad signature."""

    code = 'UNAUTHORIZED'
    status = 401


class ForbiddenError(MessagingError):
    code = 'FORBIDDEN'
    status = 403


class NotFoundError(MessagingError):
    code = 'NOT_FOUND'
    status = 404


class ConflictError(MessagingError):
    code = 'CONFLICT'
    status = 409


class StorageUnavailable(MessagingError):
    code = 'SERVICE_UNAVAILABLE'
    status = 503
    retryable = True
