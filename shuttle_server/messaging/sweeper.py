import logging
import threading

logger = logging.getLogger(__name__)


class PresenceSweeper:
    """Background liveness check.

    Every ``interval_seconds`` it demotes connections that have not pinged
    within ``timeout_seconds``, closes their sockets and deletes typing rows
    older than the typing TTL.
    """

    def __init__(self, service, interval_seconds=30, timeout_seconds=90, disconnect=None):
        self.service = service
        self.interval = interval_seconds
        self.timeout = timeout_seconds
        self.disconnect = disconnect
        self.thread = None
        self._stop = threading.Event()

    @classmethod
    def from_config(cls, service, disconnect=None, settings=None):
        if settings is None:
            from config import config as settings
        return cls(service, interval_seconds=settings.PRESENCE_SWEEP_INTERVAL_SECONDS,
                   timeout_seconds=settings.PRESENCE_TIMEOUT_SECONDS, disconnect=disconnect)

    @property
    def running(self):
        return self.thread is not None and self.thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self.thread = threading.Thread(target=self.run, name='presence-sweeper', daemon=True)
        self.thread.start()
        logger.info("[Sweeper] started (interval=%ss, timeout=%ss)", self.interval, self.timeout)

    def stop(self):
        self._stop.set()
        if self.thread is not None:
            self.thread.join()
            self.thread = None

    def run(self):
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("[Sweeper] sweep failed")

    def run_once(self):
        """One sweep. Returns (stale connection ids, typing rows removed)."""
        stale = self.service.registry.demote_stale(self.timeout)
        for sid in stale:
            if self.disconnect is not None:
                self.disconnect(sid)
        removed = self.service.typing.clear_stale()
        if stale or removed:
            logger.info("[Sweeper] demoted %s connection(s), cleared %s typing row(s)", len(stale), removed)
        return stale, removed
