"""Decorators shared by the REST handlers in ``shuttle_server.routes``."""
import functools
import logging
from typing import Callable

from flask import request

from shuttle_server.exception import MessagingError, AuthenticationError
from shuttle_server.utils.helpers import respond_error
from shuttle_server.security.authentication import get_identity

logger = logging.getLogger(__name__)


def handle_errors(func: Callable) -> Callable:
    """Turn raised errors into JSON error responses.

    ``MessagingError`` subclasses keep their own status and code (and any
    ``details`` are merged into the body); anything else becomes a 500.

        @chat_bp.route('/messages', methods=['POST'])
        @handle_errors
        @require_auth
        def send_message(identity):
            ...
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except AuthenticationError as e:
            logger.warning("Rejected %s: %s", request.path, e.message)
            return respond_error(e.message, status=e.status, code=e.code)
        except MessagingError as e:
            log = logger.error if e.status >= 500 else logger.warning
            log("%s in %s: %s", e.code, func.__name__, e.message)
            body = {'message': e.message, **e.details} if e.details else e.message
            return respond_error(body, status=e.status, code=e.code)
        except Exception:
            logger.exception("Unhandled error in %s", func.__name__)
            return respond_error('Server error', status=500)
    return wrapper


def require_auth(func: Callable) -> Callable:
    """Verify the bearer token and pass the caller in as ``identity=``."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        kwargs['identity'] = get_identity(request)
        return func(*args, **kwargs)
    return wrapper
