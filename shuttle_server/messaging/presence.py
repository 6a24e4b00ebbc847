"""Presence registry: which users are connected, through which connections.

A user is online while at least one of their connections is registered.
Every online/offline transition is mirrored into the ChatStore presence
rows and announced to listeners (the realtime gateway broadcasts it).

API:
- register_connection(user_id, connection_id, role=None, name=None) -> PreviousState
- unregister_connection(connection_id) -> Optional[PresenceChange]
- touch(connection_id) -> bool
- demote_stale(timeout_seconds) -> list of connection ids removed
- is_online(user_id) -> bool
- list_online(role=None) -> [UserSummary]
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections import namedtuple
from datetime import timedelta
from typing import Optional, List, Dict, Set, Callable

from shuttle_server.exception import MessagingError
from shuttle_server.messaging.models import UserPresence, UserSummary, coerce_role
from shuttle_server.utils.time_utils import now_utc

logger = logging.getLogger(__name__)

# State of the user before a connection was registered
PreviousState = namedtuple('PreviousState', ['was_online', 'connection_count'])

# Result of removing a connection; went_offline is True when it was the user's last one
PresenceChange = namedtuple('PresenceChange', ['user_id', 'connection_id', 'went_offline', 'remaining'])

# Payload handed to listeners on every online/offline transition
PresenceEvent = namedtuple('PresenceEvent', ['user_id', 'is_online', 'role', 'name', 'at'])


class PresenceRegistry(ABC):
    """Interface for presence tracking, injectable into the gateway and pipeline."""

    def __init__(self):
        self._listeners: List[Callable[[PresenceEvent], None]] = []

    def add_listener(self, listener: Callable[[PresenceEvent], None]):
        self._listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: PresenceEvent):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Presence listener failed for user %s", event.user_id)

    @abstractmethod
    def register_connection(self, user_id: int, connection_id: str, role=None, name=None) -> PreviousState:
        pass

    @abstractmethod
    def unregister_connection(self, connection_id: str) -> Optional[PresenceChange]:
        pass

    @abstractmethod
    def touch(self, connection_id: str) -> bool:
        """Record a heartbeat for a connection. Returns False for unknown connections."""

    @abstractmethod
    def demote_stale(self, timeout_seconds: float) -> List[str]:
        pass

    @abstractmethod
    def is_online(self, user_id: int) -> bool:
        pass

    @abstractmethod
    def list_online(self, role=None) -> List[UserSummary]:
        pass

    @abstractmethod
    def user_for_connection(self, connection_id: str) -> Optional[int]:
        pass

    @abstractmethod
    def connections_for(self, user_id: int) -> List[str]:
        pass

    @abstractmethod
    def connection_count(self) -> int:
        pass


class _Connection:
    __slots__ = ('connection_id', 'user_id', 'role', 'name', 'connected_at', 'last_ping')

    def __init__(self, connection_id, user_id, role, name, at):
        self.connection_id = connection_id
        self.user_id = user_id
        self.role = role
        self.name = name
        self.connected_at = at
        self.last_ping = at


class InMemoryPresenceRegistry(PresenceRegistry):
    """Process-local registry that mirrors transitions into a ChatStore.

    ``clock`` is injectable so liveness tests can move time forward.
    """

    def __init__(self, store=None, clock: Callable = now_utc):
        super().__init__()
        self.store = store
        self.clock = clock
        self._lock = threading.RLock()
        self._connections: Dict[str, _Connection] = {}
        self._by_user: Dict[int, Set[str]] = {}

    def _mirror(self, user_id: int, is_online: bool, at, conn: Optional[_Connection], count: int):
        if self.store is None:
            return
        presence = UserPresence(
            user_id=user_id,
            is_online=is_online,
            connection_id=conn.connection_id if (conn and is_online) else None,
            last_ping=conn.last_ping if conn else at,
            last_seen=at,
            role=conn.role if conn else None,
            name=conn.name if conn else None,
            connection_count=count
        )
        try:
            self.store.upsert_presence(presence)
        except MessagingError as e:
            # the in-process registry stays authoritative for this node
            logger.warning("Could not persist presence for user %s: %s", user_id, e.message)

    def register_connection(self, user_id: int, connection_id: str, role=None, name=None) -> PreviousState:
        at = self.clock()
        role = coerce_role(role)
        with self._lock:
            replaced = None
            existing = self._connections.get(connection_id)
            if existing is not None and existing.user_id != user_id:
                replaced = self._remove_locked(connection_id)
            sockets = self._by_user.setdefault(user_id, set())
            others = len(sockets - {connection_id})
            previous = PreviousState(was_online=others > 0, connection_count=others)
            conn = _Connection(connection_id, user_id, role, name, at)
            self._connections[connection_id] = conn
            sockets.add(connection_id)
            self._mirror(user_id, True, at, conn, len(sockets))
        if replaced is not None and replaced[0].went_offline:
            old = replaced[1]
            self._notify(PresenceEvent(old.user_id, False, old.role, old.name, at))
        if previous.connection_count:
            logger.info("User %s opened another connection (%s total)", user_id, previous.connection_count + 1)
        else:
            logger.info("User %s is online", user_id)
            self._notify(PresenceEvent(user_id, True, role, name, at))
        return previous

    def _remove_locked(self, connection_id: str):
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return None
        sockets = self._by_user.get(conn.user_id, set())
        sockets.discard(connection_id)
        remaining = len(sockets)
        if not remaining:
            self._by_user.pop(conn.user_id, None)
            self._mirror(conn.user_id, False, self.clock(), conn, 0)
        return PresenceChange(conn.user_id, connection_id, remaining == 0, remaining), conn

    def unregister_connection(self, connection_id: str) -> Optional[PresenceChange]:
        with self._lock:
            removed = self._remove_locked(connection_id)
        if removed is None:
            return None
        change, conn = removed
        if change.went_offline:
            logger.info("User %s is offline", change.user_id)
            self._notify(PresenceEvent(change.user_id, False, conn.role, conn.name, self.clock()))
        return change

    def touch(self, connection_id: str) -> bool:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                return False
            conn.last_ping = self.clock()
            return True

    def demote_stale(self, timeout_seconds: float) -> List[str]:
        cutoff = self.clock() - timedelta(seconds=timeout_seconds)
        with self._lock:
            stale = [c.connection_id for c in self._connections.values() if c.last_ping < cutoff]
        removed = []
        for connection_id in stale:
            change = self.unregister_connection(connection_id)
            if change is not None:
                removed.append(connection_id)
        if removed:
            logger.info("Demoted %s stale connection(s)", len(removed))
        return removed

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._by_user.get(user_id))

    def list_online(self, role=None) -> List[UserSummary]:
        role = coerce_role(role)
        with self._lock:
            summaries = []
            for user_id in sorted(self._by_user):
                conns = [self._connections[c] for c in self._by_user[user_id]]
                latest = max(conns, key=lambda c: c.last_ping)
                if role is not None and latest.role != role:
                    continue
                summaries.append(UserSummary(user_id, name=latest.name, role=latest.role,
                                             is_online=True, last_seen=latest.last_ping))
            return summaries

    def user_for_connection(self, connection_id: str) -> Optional[int]:
        with self._lock:
            conn = self._connections.get(connection_id)
            return conn.user_id if conn else None

    def connections_for(self, user_id: int) -> List[str]:
        with self._lock:
            return sorted(self._by_user.get(user_id, ()))

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)
