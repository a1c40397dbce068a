from typing import Iterable, Optional

from .events import Event
from .hub import ConnectionRegistry
from ..utils.logger import setup_logger

logger = setup_logger('groupchat.dispatcher')


class Dispatcher:
    """Fan-out of events to the live connections of an audience.

    Delivery is best-effort: offline users are skipped and nothing is
    queued for them, a reconnecting client re-fetches state instead of
    replaying missed events.
    """

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def publish(self, event: Event, audience: Iterable[str], excluding: Optional[str] = None) -> int:
        """Deliver ``event`` once to every connected user in ``audience``.

        Args:
            event (Event): Event to deliver, passed through untouched
            audience (Iterable[str]): User IDs that should see the event;
                duplicates are collapsed
            excluding (str, optional): User ID to leave out, typically the
                user whose own call produced the event

        Returns:
            int: Number of connections the event was delivered to

        Side Effects:
            - Queues the event on each online recipient's connection
            - Logs delivery per recipient at DEBUG
        """
        recipients = set(audience)
        recipients.discard(excluding)

        delivered = 0
        for user_id in sorted(recipients):
            # A user who disconnects mid-loop simply looks offline here
            connection = await self.registry.lookup(user_id)
            if connection is not None and connection.deliver(event):
                delivered += 1
                logger.debug(f"Delivered {event.kind.value} to user {user_id}")
            else:
                logger.debug(f"Skipped {event.kind.value} for user {user_id} - not online")

        logger.info(f"Published {event.kind.value} to {delivered}/{len(recipients)} recipients")
        return delivered

    async def publish_presence(self) -> int:
        """Tell every connected user who is online right now."""
        online = await self.registry.list_online()
        return await self.publish(Event.online_users(online), online)
