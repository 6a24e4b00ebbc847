import functools
import logging
import time

from shuttle_server.exception import StorageUnavailable

logger = logging.getLogger(__name__)


def call_with_retry(fn, *args, attempts=3, backoff=0.1, sleep=time.sleep, **kwargs):
    """Call fn, retrying on StorageUnavailable with exponential backoff.

    Only use for idempotent operations. Any other error propagates on the
    first attempt; the last StorageUnavailable propagates once attempts run out.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return fn(*args, **kwargs)
        except StorageUnavailable as e:
            if attempt == attempts:
                logger.error("Storage unavailable after %s attempts in %s: %s",
                             attempts, getattr(fn, '__name__', fn), e.message)
                raise
            sleep_time = backoff * (2 ** (attempt - 1))
            logger.warning("Storage unavailable (attempt %s/%s), retrying in %.2fs",
                           attempt, attempts, sleep_time)
            sleep(sleep_time)


def retry_on_unavailable(attempts=None, backoff=None):
    """Decorator form of call_with_retry.

    When attempts/backoff are not given they are read from config at call time.
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            from config import config
            return call_with_retry(
                fn, *args,
                attempts=attempts if attempts is not None else config.STORAGE_RETRY_ATTEMPTS,
                backoff=backoff if backoff is not None else config.STORAGE_RETRY_BACKOFF_SECONDS,
                **kwargs
            )
        return wrapper
    return decorator
