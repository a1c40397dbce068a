"""Client-side cache kept convergent with the server.

The store changes only in two ways: from the response of a call the user
made, and from an event the server pushed. Nothing is applied before the
server has confirmed it, so a failed call leaves no ghost entries behind.
All handlers run on one event loop and finish their read-modify-write
between awaits, which keeps them from interleaving.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from ..server.events import Event, EventKind
from ..server.models import Group, Message, User
from .api import RemoteError
from ..utils.logger import setup_logger

logger = setup_logger('groupchat.client')


@dataclass
class Selection:
    """The conversation on screen.

    ``is_group`` is set by whoever selects, never inferred from the ID.
    """
    target_id: str
    is_group: bool
    group: Optional[Group] = None


def _log_notice(error: RemoteError):
    logger.warning(f"{error.code}: {error.message}")


class ConvergenceStore:
    """Messages, groups, selection and presence as seen by one user.

    Args:
        api: Remote to call (``ChatClient`` or anything with the same methods)
        notify (callable, optional): Receives a ``RemoteError`` for every
            failed action; defaults to logging it
    """

    def __init__(self, api, notify: Optional[Callable[[RemoteError], None]] = None):
        self.api = api
        self.user_id: str = api.user_id
        self.notify = notify or _log_notice
        self.selection: Optional[Selection] = None
        self.messages: List[Message] = []
        self.groups: List[Group] = []
        self.users: List[User] = []
        self.online: Set[str] = set()
        self._deleted_while_loading: Set[str] = set()

    # -- queries ----------------------------------------------------------

    def find_group(self, group_id: str) -> Optional[Group]:
        for group in self.groups:
            if group.id == group_id:
                return group
        return None

    def is_active_group(self, group_id: str) -> bool:
        return self.selection is not None and self.selection.is_group and self.selection.target_id == group_id

    def belongs_to_active(self, message: Message) -> bool:
        """Does ``message`` belong to the conversation on screen?"""
        sel = self.selection
        if sel is None:
            return False
        if sel.is_group:
            return message.group_id == sel.target_id
        if message.is_group_message:
            return False
        return sel.target_id in (message.sender_id, message.receiver_id) and \
            self.user_id in (message.sender_id, message.receiver_id)

    # -- local helpers ----------------------------------------------------

    def _append_message(self, message: Message):
        if any(m.id == message.id for m in self.messages):
            return
        self.messages.append(message)

    def _replace_message(self, message: Message):
        self.messages = [message if m.id == message.id else m for m in self.messages]

    def _remove_message(self, message_id: str):
        self.messages = [m for m in self.messages if m.id != message_id]
        self._deleted_while_loading.add(message_id)

    def _upsert_group(self, group: Group):
        if self.find_group(group.id) is None:
            self.groups.append(group)
        else:
            self.groups = [group if g.id == group.id else g for g in self.groups]
        if self.is_active_group(group.id):
            self.selection.group = group

    def _drop_group(self, group_id: str):
        self.groups = [g for g in self.groups if g.id != group_id]
        if self.is_active_group(group_id):
            self.selection = None
            self.messages = []

    async def _remote(self, call, *args, **kwargs):
        """Run a remote call; on failure notify and return None."""
        try:
            return await call(*args, **kwargs)
        except RemoteError as e:
            self.notify(e)
            return None

    # -- loading ----------------------------------------------------------

    async def load_groups(self):
        groups = await self._remote(self.api.list_groups)
        if groups is not None:
            self.groups = groups
            if self.selection is not None and self.selection.is_group:
                active = self.find_group(self.selection.target_id)
                if active is None:
                    self.selection = None
                    self.messages = []
                else:
                    self.selection.group = active

    async def load_users(self):
        users = await self._remote(self.api.list_users)
        if users is not None:
            self.users = users

    async def search_users(self, query: str) -> List[User]:
        """Look users up by display name; the cached user list is left as is."""
        users = await self._remote(self.api.search_users, query)
        return users or []

    async def load_online(self):
        online = await self._remote(self.api.list_online)
        if online is not None:
            self.online = set(online)

    async def refresh(self):
        """Re-fetch everything; used after (re)connecting since missed events are not replayed."""
        await self.load_users()
        await self.load_groups()
        await self.load_online()
        if self.selection is not None:
            await self.select(self.selection.target_id, self.selection.is_group)

    async def select(self, target_id: str, is_group: bool) -> bool:
        """Switch the active conversation and load its history.

        The previous list is cleared right away. Events that arrive while
        the fetch is pending are kept: messages appended meanwhile are
        merged into the fetched history by ID and deletions are replayed
        over it. If the user switches again before the fetch returns, the
        late response is dropped.

        Returns:
            bool: True if the history was loaded for this selection
        """
        selection = Selection(target_id, is_group, self.find_group(target_id) if is_group else None)
        self.selection = selection
        self.messages = []
        self._deleted_while_loading = set()
        messages = await self._remote(self.api.get_messages, target_id)
        if messages is None or self.selection is not selection:
            return False

        merged = {m.id: m for m in messages}
        for m in self.messages:
            merged.setdefault(m.id, m)
        self.messages = sorted(
            (m for m in merged.values() if m.id not in self._deleted_while_loading),
            key=lambda m: m.created_ts,
        )
        self._deleted_while_loading = set()
        return True

    # -- actions ----------------------------------------------------------

    async def send(self, text: Optional[str] = None, image: Optional[str] = None) -> Optional[Message]:
        if self.selection is None:
            return None
        message = await self._remote(self.api.send_message, self.selection.target_id, text=text, image=image)
        if message is not None and self.belongs_to_active(message):
            self._append_message(message)
        return message

    async def edit(self, message_id: str, text: str) -> Optional[Message]:
        message = await self._remote(self.api.edit_message, message_id, text)
        if message is not None:
            self._replace_message(message)
        return message

    async def delete(self, message_id: str) -> bool:
        try:
            await self.api.delete_message(message_id)
        except RemoteError as e:
            self.notify(e)
            return False
        self._remove_message(message_id)
        return True

    async def create_group(self, name: str, member_ids, avatar: Optional[str] = None) -> Optional[Group]:
        group = await self._remote(self.api.create_group, name, member_ids, avatar=avatar)
        if group is not None:
            self._upsert_group(group)
        return group

    async def add_member(self, group_id: str, member_id: str) -> Optional[Group]:
        group = await self._remote(self.api.add_member, group_id, member_id)
        if group is not None:
            self._upsert_group(group)
        return group

    async def remove_member(self, group_id: str, member_id: str) -> Optional[Group]:
        group = await self._remote(self.api.remove_member, group_id, member_id)
        if group is not None:
            self._upsert_group(group)
        return group

    async def update_group(self, group_id: str, name: Optional[str] = None,
                           avatar: Optional[str] = None) -> Optional[Group]:
        group = await self._remote(self.api.update_group, group_id, name=name, avatar=avatar)
        if group is not None:
            self._upsert_group(group)
        return group

    async def leave_group(self, group_id: str) -> bool:
        try:
            await self.api.leave_group(group_id)
        except RemoteError as e:
            self.notify(e)
            return False
        self._drop_group(group_id)
        return True

    # -- server events ----------------------------------------------------

    def apply(self, event: Event):
        """Apply one pushed event."""
        payload = event.payload
        kind = event.kind

        if kind in (EventKind.NEW_MESSAGE, EventKind.MESSAGE_EDITED):
            message = Message.from_dict(payload)
            if kind is EventKind.MESSAGE_EDITED:
                self._replace_message(message)
            elif self.belongs_to_active(message):
                self._append_message(message)

        elif kind is EventKind.MESSAGE_DELETED:
            self._remove_message(payload["message_id"])

        elif kind is EventKind.GROUP_UPDATED:
            group = Group.from_dict(payload)
            if group.is_member(self.user_id):
                self._upsert_group(group)
            else:
                self._drop_group(group.id)

        elif kind in (EventKind.REMOVED_FROM_GROUP, EventKind.LEFT_GROUP):
            self._drop_group(payload["id"])

        elif kind is EventKind.ONLINE_USERS:
            self.online = set(payload["user_ids"])

        else:
            logger.debug(f"Ignoring unknown event {kind}")
