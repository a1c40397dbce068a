import asyncio
from typing import AsyncIterator, Dict, Optional, Set

from ..utils.logger import setup_logger

logger = setup_logger('groupchat.hub')

_CLOSED = object()


class Connection:
    """Live delivery handle for one connected client.

    Wraps an unbounded asyncio Queue: ``deliver`` never blocks, so events
    reach a single connection in the order they were published.
    """

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, event) -> bool:
        """Queue an event for this connection.

        Returns:
            bool: False if the connection is already closed
        """
        if self.closed:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self):
        """End the event stream; events already queued are still drained."""
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator:
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                return
            yield event

    def drain(self) -> list:
        """Remove and return every queued event without waiting."""
        events = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not _CLOSED:
                events.append(event)
        if self.closed:
            self._queue.put_nowait(_CLOSED)
        return events


class ConnectionRegistry:
    """Maps user IDs to their live connection.

    At most one connection per user: registering again replaces (and
    closes) the previous one. A single lock guards the map, so
    registrations and lookups from independent connection lifecycles
    never interleave.
    """

    def __init__(self):
        """Initialize connection registry.

        Attributes:
            connections (Dict[str, Connection]): Maps user IDs to their live connection
            _lock (asyncio.Lock): Serializes every access to the map
        """
        self.connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()
        logger.info("Connection registry initialized")

    async def register(self, user_id: str, connection: Connection):
        """Register the live connection for a user.

        Args:
            user_id (str): ID of the connecting user
            connection (Connection): Handle events will be delivered to

        Side Effects:
            - Replaces and closes any previous connection of the user
            - Logs registration and active users
        """
        async with self._lock:
            previous = self.connections.get(user_id)
            self.connections[user_id] = connection
            logger.info(f"Registered connection for user {user_id}")
            logger.debug(f"Active users: {list(self.connections.keys())}")
        if previous is not None and previous is not connection:
            previous.close()
            logger.info(f"Superseded previous connection of user {user_id}")

    async def unregister(self, user_id: str, connection: Optional[Connection] = None):
        """Remove a user's connection.

        Args:
            user_id (str): ID of user whose connection to remove
            connection (Connection, optional): Only remove the entry if it is
                still this connection; a stream superseded by a newer login
                must not evict its replacement

        Side Effects:
            - Removes the entry from self.connections if it exists
            - Logs removal and remaining active users
        """
        async with self._lock:
            current = self.connections.get(user_id)
            if current is None:
                return
            if connection is not None and current is not connection:
                logger.debug(f"Ignoring stale unregister for user {user_id}")
                return
            del self.connections[user_id]
            logger.info(f"Removed connection for user {user_id}")
            logger.debug(f"Remaining active users: {list(self.connections.keys())}")
        current.close()

    async def lookup(self, user_id: str) -> Optional[Connection]:
        """Return the user's live connection, or None if offline."""
        async with self._lock:
            return self.connections.get(user_id)

    async def list_online(self) -> Set[str]:
        """Snapshot of currently connected user IDs."""
        async with self._lock:
            return set(self.connections)
