from dataclasses import dataclass, field
from typing import List, Optional, Set, Union


@dataclass
class User:
    """Represents a user in the chat system.

    Attributes:
        id (str): Unique identifier for the user
        display_name (str): User's chosen display name
        avatar (Optional[str]): Public URL of the user's avatar, if any
    """
    id: str
    display_name: str
    avatar: Optional[str] = None

    def to_dict(self) -> dict:
        return {"id": self.id, "display_name": self.display_name, "avatar": self.avatar}

    @classmethod
    def from_dict(cls, rec: dict) -> "User":
        return cls(id=rec["id"], display_name=rec["display_name"], avatar=rec.get("avatar"))


@dataclass
class Group:
    """Represents a chat group in the system.

    The creator is always a member and always holds admin rights, even
    though it is tracked separately from ``admin_ids``.

    Attributes:
        id (str): Unique group identifier
        name (str): Display name of the group
        creator_id (str): User ID of the group creator, immutable
        admin_ids (Set[str]): Members allowed to manage the roster
        member_ids (Set[str]): User IDs of every member, creator included
        created_ts (int): Unix timestamp in milliseconds when group was created
        updated_ts (int): Unix timestamp in milliseconds of the last change
        avatar (Optional[str]): Public URL of the group avatar, if any
        message_ids (List[str]): Message IDs in send order, append-only
    """
    id: str
    name: str
    creator_id: str
    admin_ids: Set[str]
    member_ids: Set[str]
    created_ts: int
    updated_ts: int = 0
    avatar: Optional[str] = None
    message_ids: List[str] = field(default_factory=list)

    def is_member(self, user_id: str) -> bool:
        return user_id in self.member_ids

    def is_admin(self, user_id: str) -> bool:
        return user_id == self.creator_id or user_id in self.admin_ids

    def to_dict(self) -> dict:
        # Sets are sorted so snapshots compare and serialize deterministically
        return {
            "id": self.id,
            "name": self.name,
            "creator_id": self.creator_id,
            "admin_ids": sorted(self.admin_ids),
            "member_ids": sorted(self.member_ids),
            "created_ts": self.created_ts,
            "updated_ts": self.updated_ts,
            "avatar": self.avatar,
            "message_ids": list(self.message_ids),
        }

    @classmethod
    def from_dict(cls, rec: dict) -> "Group":
        return cls(
            id=rec["id"],
            name=rec["name"],
            creator_id=rec["creator_id"],
            admin_ids=set(rec.get("admin_ids", [])),
            member_ids=set(rec.get("member_ids", [])),
            created_ts=rec.get("created_ts", 0),
            updated_ts=rec.get("updated_ts", 0),
            avatar=rec.get("avatar"),
            message_ids=list(rec.get("message_ids", [])),
        )


@dataclass
class Message:
    """Represents a chat message in the system.

    A message is either a direct message (``receiver_id`` set) or a group
    message (``group_id`` set), never both and never neither.

    Attributes:
        id (str): Unique identifier for the message
        sender_id (str): ID of the user who sent the message
        created_ts (int): Unix timestamp in milliseconds when message was received
        receiver_id (Optional[str]): Recipient's user ID for direct messages
        group_id (Optional[str]): Group ID for group messages
        text (Optional[str]): Text content
        image (Optional[str]): Public URL of an attached image
        edited (bool): True once the sender has edited the text
    """
    id: str
    sender_id: str
    created_ts: int
    receiver_id: Optional[str] = None
    group_id: Optional[str] = None
    text: Optional[str] = None
    image: Optional[str] = None
    edited: bool = False

    @property
    def is_group_message(self) -> bool:
        return self.group_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "group_id": self.group_id,
            "text": self.text,
            "image": self.image,
            "created_ts": self.created_ts,
            "edited": self.edited,
        }

    @classmethod
    def from_dict(cls, rec: dict) -> "Message":
        return cls(
            id=rec["id"],
            sender_id=rec["sender_id"],
            created_ts=rec["created_ts"],
            receiver_id=rec.get("receiver_id"),
            group_id=rec.get("group_id"),
            text=rec.get("text"),
            image=rec.get("image"),
            edited=rec.get("edited", False),
        )


@dataclass(frozen=True)
class DirectTarget:
    """A one-to-one conversation with ``peer_id``."""
    peer_id: str
    is_group = False

    @property
    def target_id(self) -> str:
        return self.peer_id


@dataclass(frozen=True)
class GroupTarget:
    """A group conversation, carrying the group as resolved for this call."""
    group: Group
    is_group = True

    @property
    def target_id(self) -> str:
        return self.group.id

    @property
    def member_ids(self) -> Set[str]:
        return set(self.group.member_ids)


ConversationTarget = Union[DirectTarget, GroupTarget]
