import copy
import json
import os
from typing import Dict, Iterable, List, Optional, Tuple

from .models import Group, Message, User
from ..utils.logger import setup_logger

logger = setup_logger('groupchat.repo')


def _append_record(path: str, rec: dict):
    """Append one JSON record to a JSONL file and fsync it."""
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(rec, ensure_ascii=False) + "\n")
        f.flush()
        os.fsync(f.fileno())


def _rewrite_records(path: str, records: Iterable[dict]):
    """Replace the whole JSONL file with ``records``.

    This is not efficient for large files but every collection here is
    small; a temp file plus rename keeps each rewrite all-or-nothing.
    """
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        for rec in records:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def _read_records(path: str) -> List[dict]:
    if not os.path.exists(path):
        return []
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            records.append(json.loads(line))
    return records


class UsersRepo:
    """Repository for managing user data in JSONL format."""

    def __init__(self, path: str):
        """Initialize users repository.

        Args:
            path (str): Path to JSONL file storing user data

        Side Effects:
            - Creates directory structure if not exists
            - Loads existing users from file
        """
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.path = path
        self.users_by_id: Dict[str, User] = {}
        for rec in _read_records(path):
            self.users_by_id[rec["id"]] = User.from_dict(rec)

    def append_user(self, user: User):
        """Add new user to repository.

        Args:
            user (User): User object to store

        Side Effects:
            - Appends user to JSONL file
            - Updates in-memory dictionary
            - Logs user registration
        """
        _append_record(self.path, user.to_dict())
        self.users_by_id[user.id] = user
        logger.info(f"New user registered: {user.display_name} (ID: {user.id})")

    def find_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID.

        Args:
            user_id (str): User's unique identifier

        Returns:
            Optional[User]: User object if found, None otherwise
        """
        return self.users_by_id.get(user_id)

    def find_many(self, user_ids: Iterable[str]) -> List[User]:
        """Get the subset of ``user_ids`` that exist, in request order."""
        found = []
        for user_id in dict.fromkeys(user_ids):
            user = self.users_by_id.get(user_id)
            if user is not None:
                found.append(user)
        return found

    def exists_all(self, user_ids: Iterable[str]) -> bool:
        return all(user_id in self.users_by_id for user_id in user_ids)

    def all(self) -> Iterable[User]:
        """Get all users.

        Returns:
            Iterable[User]: Iterator of all user objects
        """
        return self.users_by_id.values()

    def find_by_display_name(self, display_name: str) -> Optional[User]:
        """Find user by display name (case sensitive).

        Args:
            display_name (str): User's display name to search for

        Returns:
            Optional[User]: User object if found, None otherwise
        """
        for user in self.users_by_id.values():
            if user.display_name == display_name:
                return user
        return None

    def search(self, query: str) -> List[User]:
        """Case-insensitive substring search on display names."""
        q = (query or "").lower()
        return [u for u in self.users_by_id.values() if q in u.display_name.lower()]


class GroupsRepo:
    """Repository for managing chat groups and their memberships.

    Behaves like a document store: ``find_by_id`` hands out a private copy
    and ``save`` replaces the stored document as a whole, so a caller that
    bails out half-way through a mutation never leaks partial state.
    """

    def __init__(self, path: str):
        """Initialize groups repository.

        Args:
            path (str): Path to JSONL file storing group data

        Side Effects:
            - Creates directory structure if not exists
            - Loads existing groups from file
        """
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.path = path
        self.groups_by_id: Dict[str, Group] = {}
        for rec in _read_records(path):
            self.groups_by_id[rec["id"]] = Group.from_dict(rec)

    def create(self, group: Group) -> Group:
        """Store a new group.

        Args:
            group (Group): Group to persist

        Returns:
            Group: Copy of the stored group

        Raises:
            ValueError: If a group with the same ID already exists

        Side Effects:
            - Appends group to JSONL file
            - Logs group creation
        """
        if group.id in self.groups_by_id:
            logger.warning(f"Attempt to create existing group: {group.id}")
            raise ValueError(f"Group {group.id} already exists")
        _append_record(self.path, group.to_dict())
        self.groups_by_id[group.id] = copy.deepcopy(group)
        logger.info(f"New group created: {group.name} ({group.id}) by user {group.creator_id}")
        return copy.deepcopy(group)

    def save(self, group: Group) -> Group:
        """Replace a stored group with ``group``.

        Raises:
            ValueError: If the group does not exist

        Side Effects:
            - Rewrites groups file with the new document
        """
        if group.id not in self.groups_by_id:
            raise ValueError(f"Group {group.id} does not exist")
        updated = dict(self.groups_by_id)
        updated[group.id] = copy.deepcopy(group)
        _rewrite_records(self.path, (g.to_dict() for g in updated.values()))
        self.groups_by_id = updated
        logger.debug(f"Updated group {group.id} in storage")
        return copy.deepcopy(group)

    def find_by_id(self, group_id: str) -> Optional[Group]:
        group = self.groups_by_id.get(group_id)
        return copy.deepcopy(group) if group is not None else None

    def find_by_member_id(self, user_id: str) -> List[Group]:
        """Get all groups that a user is a member of.

        Args:
            user_id (str): ID of user to get groups for

        Returns:
            list[Group]: Groups where user is a member, most recently updated first
        """
        groups = [
            copy.deepcopy(group) for group in self.groups_by_id.values()
            if user_id in group.member_ids
        ]
        groups.sort(key=lambda g: g.updated_ts, reverse=True)
        return groups


class MessagesRepo:
    """Repository for direct and group messages.

    Messages are kept in receive order; sorting by ``created_ts`` is stable,
    so insertion order breaks timestamp ties.
    """

    def __init__(self, path: str):
        """Initialize messages repository.

        Args:
            path (str): Path to JSONL file storing message data

        Side Effects:
            - Creates directory structure if not exists
            - Loads existing messages from file
        """
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.path = path
        self._messages: List[Message] = [Message.from_dict(rec) for rec in _read_records(path)]

    def create(self, m: Message) -> Message:
        """Append new message to repository.

        Args:
            m (Message): Message object to store

        Side Effects:
            - Appends message to JSONL file
            - Updates in-memory message list
            - Logs message storage with type (DM/group)
        """
        _append_record(self.path, m.to_dict())
        self._messages.append(copy.deepcopy(m))
        if m.is_group_message:
            logger.info(f"New group message saved: {m.id} from {m.sender_id} to group {m.group_id}")
        else:
            logger.info(f"New direct message saved: {m.id} from {m.sender_id} to {m.receiver_id}")
        return copy.deepcopy(m)

    def find_by_id(self, message_id: str) -> Optional[Message]:
        for msg in self._messages:
            if msg.id == message_id:
                return copy.deepcopy(msg)
        return None

    def save(self, m: Message) -> Message:
        """Replace a stored message (used for edits).

        Raises:
            ValueError: If the message does not exist
        """
        updated = list(self._messages)
        for i, msg in enumerate(updated):
            if msg.id == m.id:
                updated[i] = copy.deepcopy(m)
                break
        else:
            raise ValueError(f"Message {m.id} does not exist")
        _rewrite_records(self.path, (msg.to_dict() for msg in updated))
        self._messages = updated
        logger.debug(f"Updated message {m.id} in storage")
        return copy.deepcopy(m)

    def delete_by_id(self, message_id: str) -> bool:
        """Delete a message.

        Returns:
            bool: True if a message was removed, False if it did not exist
        """
        remaining = [msg for msg in self._messages if msg.id != message_id]
        if len(remaining) == len(self._messages):
            return False
        _rewrite_records(self.path, (msg.to_dict() for msg in remaining))
        self._messages = remaining
        logger.info(f"Message {message_id} deleted")
        return True

    def find_by_conversation(self, group_id: Optional[str] = None,
                             participants: Optional[Tuple[str, str]] = None) -> List[Message]:
        """Get message history for a conversation, oldest first.

        Args:
            group_id (str, optional): Group whose messages to return
            participants (Tuple[str, str], optional): The two users of a
                direct conversation, in any order

        Returns:
            list[Message]: Matching messages sorted by creation time ascending

        Raises:
            ValueError: If neither or both filters are given
        """
        if (group_id is None) == (participants is None):
            raise ValueError("Exactly one of group_id or participants is required")

        if group_id is not None:
            messages = [m for m in self._messages if m.group_id == group_id]
        else:
            a, b = participants
            messages = [
                m for m in self._messages
                if not m.is_group_message and (
                    (m.sender_id == a and m.receiver_id == b) or
                    (m.sender_id == b and m.receiver_id == a)
                )
            ]

        messages.sort(key=lambda m: m.created_ts)
        return [copy.deepcopy(m) for m in messages]
