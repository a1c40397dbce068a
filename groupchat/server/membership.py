import asyncio
import time
import uuid
from enum import Enum
from typing import Iterable, List, Optional

from .dispatcher import Dispatcher
from .errors import (
    AlreadyMember,
    CannotRemoveCreator,
    CreatorCannotLeave,
    EmptyMembership,
    Forbidden,
    InvalidInput,
    InvalidMember,
    InvalidMembers,
    NotFound,
    NotMember,
    storage_call,
)
from .events import Event
from .media import AVATAR_BOX, GROUP_FOLDER, upload_image
from .models import Group, Message
from .repo import GroupsRepo, UsersRepo
from ..utils.logger import setup_logger

logger = setup_logger('groupchat.membership')


class Action(str, Enum):
    ADD_MEMBER = "add_member"
    REMOVE_MEMBER = "remove_member"
    REMOVE_ADMIN = "remove_admin"
    UPDATE_GROUP = "update_group"
    READ_MESSAGES = "read_messages"
    SEND_MESSAGE = "send_message"
    LEAVE = "leave"


_ADMIN_ACTIONS = {Action.ADD_MEMBER, Action.REMOVE_MEMBER, Action.UPDATE_GROUP}
_MEMBER_ACTIONS = {Action.READ_MESSAGES, Action.SEND_MESSAGE, Action.LEAVE}


def authorize(group: Group, actor_id: str, action: Action) -> bool:
    """Single capability check for everything a user may do to a group.

    Only the creator ranks above admins: admins manage plain members,
    while removing an admin is reserved to the creator.

    Args:
        group (Group): Group as currently stored
        actor_id (str): User attempting the action
        action (Action): What they are attempting

    Returns:
        bool: True if the actor holds the capability
    """
    if action is Action.REMOVE_ADMIN:
        return actor_id == group.creator_id
    if action in _ADMIN_ACTIONS:
        return group.is_admin(actor_id)
    if action in _MEMBER_ACTIONS:
        return group.is_member(actor_id)
    return False


def owns_message(message: Message, actor_id: str) -> bool:
    """Only the sender may edit or delete a message."""
    return message.sender_id == actor_id


def _now_ms() -> int:
    return int(time.time() * 1000)


class MembershipEngine:
    """Group roster state machine.

    Each operation validates and authorizes completely before the group is
    touched, saves the whole group, and only then publishes, so a rejected
    call never changes state or notifies anyone. Broadcasts always go to
    the member set as it is after the change.
    """

    def __init__(self, users: UsersRepo, groups: GroupsRepo, dispatcher: Dispatcher, uploader):
        """Initialize the engine.

        Args:
            users (UsersRepo): User store, used to validate member IDs
            groups (GroupsRepo): Group store
            dispatcher (Dispatcher): Fan-out for group events
            uploader: Media uploader for group avatars

        Attributes:
            groups_lock: Serializes read-modify-write sequences on groups
        """
        self.users = users
        self.groups = groups
        self.dispatcher = dispatcher
        self.uploader = uploader
        self.groups_lock = asyncio.Lock()

    def get_group(self, group_id: str) -> Group:
        group = self.groups.find_by_id(group_id)
        if group is None:
            raise NotFound(f"Group {group_id} not found")
        return group

    def list_groups(self, user_id: str) -> List[Group]:
        return self.groups.find_by_member_id(user_id)

    async def create(self, creator_id: str, name: str, member_ids: Iterable[str],
                     avatar: Optional[str] = None) -> Group:
        """Create a group with the creator as its first admin.

        Args:
            creator_id (str): User creating the group
            name (str): Group name, must not be blank
            member_ids (Iterable[str]): Initial members besides the creator;
                duplicates and the creator's own ID are ignored
            avatar (str, optional): Base64 image data URI

        Returns:
            Group: The stored group

        Raises:
            InvalidInput: If the name is blank or the avatar is not an image
            EmptyMembership: If no member other than the creator is given
            InvalidMembers: If any ID does not name an existing user
            UpstreamFailure: If the avatar upload or storage fails

        Side Effects:
            - Persists the group
            - Publishes GroupUpdated to the other members
        """
        name = (name or "").strip()
        if not name:
            raise InvalidInput("Group name is required")

        others = [m for m in dict.fromkeys(member_ids) if m != creator_id]
        if not others:
            raise EmptyMembership("At least one member besides the creator is required")
        if not self.users.exists_all([creator_id, *others]):
            logger.warning(f"CreateGroup: invalid member list from user '{creator_id}'")
            raise InvalidMembers("One or more members are invalid")

        now = _now_ms()
        group = Group(
            id=uuid.uuid4().hex,
            name=name,
            creator_id=creator_id,
            admin_ids={creator_id},
            member_ids={creator_id, *others},
            created_ts=now,
            updated_ts=now,
        )
        if avatar:
            group.avatar = await upload_image(self.uploader, avatar, GROUP_FOLDER, AVATAR_BOX)

        with storage_call("creating group"):
            group = self.groups.create(group)
        logger.info(f"CreateGroup: User '{creator_id}' created group '{group.name}' ({group.id})")

        await self.dispatcher.publish(Event.group_updated(group), group.member_ids, excluding=creator_id)
        return group

    async def add_member(self, group_id: str, actor_id: str, member_id: str) -> Group:
        """Add a user to a group.

        Raises:
            NotFound: If the group does not exist
            Forbidden: If the actor is neither creator nor admin
            AlreadyMember: If the user is already in the group
            InvalidMember: If the user does not exist

        Side Effects:
            - Saves the group with the new member
            - Publishes GroupUpdated to every member, the new one included
        """
        async with self.groups_lock:
            group = self.get_group(group_id)
            if not authorize(group, actor_id, Action.ADD_MEMBER):
                raise Forbidden("Only admins or creator can add members")
            if group.is_member(member_id):
                raise AlreadyMember("Member already in group")
            if self.users.find_by_id(member_id) is None:
                raise InvalidMember(f"User {member_id} not found")

            group.member_ids.add(member_id)
            group.updated_ts = _now_ms()
            with storage_call("adding member"):
                group = self.groups.save(group)
        logger.info(f"AddMember: User '{actor_id}' added '{member_id}' to group '{group_id}'")

        await self.dispatcher.publish(Event.group_updated(group), group.member_ids)
        return group

    async def remove_member(self, group_id: str, actor_id: str, member_id: str) -> Group:
        """Remove a member from a group.

        Raises:
            NotFound: If the group does not exist
            Forbidden: If the actor is neither creator nor admin, or the
                target is an admin and the actor is not the creator
            CannotRemoveCreator: If the target is the creator
            NotMember: If the target is not in the group

        Side Effects:
            - Saves the group without the member (and without their admin role)
            - Publishes GroupUpdated to the remaining members
            - Publishes RemovedFromGroup to the removed user only
        """
        async with self.groups_lock:
            group = self.get_group(group_id)
            if not authorize(group, actor_id, Action.REMOVE_MEMBER):
                raise Forbidden("Only admins or creator can remove members")
            if member_id == group.creator_id:
                raise CannotRemoveCreator("Cannot remove the group creator")
            if member_id in group.admin_ids and not authorize(group, actor_id, Action.REMOVE_ADMIN):
                raise Forbidden("Only the creator can remove other admins")
            if not group.is_member(member_id):
                raise NotMember("Member not in group")

            group.member_ids.discard(member_id)
            group.admin_ids.discard(member_id)
            group.updated_ts = _now_ms()
            with storage_call("removing member"):
                group = self.groups.save(group)
        logger.info(f"RemoveMember: User '{actor_id}' removed '{member_id}' from group '{group_id}'")

        await self.dispatcher.publish(Event.group_updated(group), group.member_ids)
        await self.dispatcher.publish(Event.removed_from_group(group), [member_id])
        return group

    async def leave(self, group_id: str, actor_id: str) -> Group:
        """Leave a group.

        Raises:
            NotFound: If the group does not exist
            NotMember: If the actor is not in the group
            CreatorCannotLeave: If the actor is the creator

        Side Effects:
            - Saves the group without the leaver
            - Publishes GroupUpdated to the remaining members
            - Publishes LeftGroup to the leaver only
        """
        async with self.groups_lock:
            group = self.get_group(group_id)
            if not authorize(group, actor_id, Action.LEAVE):
                raise NotMember("You are not a member of this group")
            if actor_id == group.creator_id:
                raise CreatorCannotLeave("Creator cannot leave the group")

            group.member_ids.discard(actor_id)
            group.admin_ids.discard(actor_id)
            group.updated_ts = _now_ms()
            with storage_call("leaving group"):
                group = self.groups.save(group)
        logger.info(f"LeaveGroup: User '{actor_id}' left group '{group_id}'")

        await self.dispatcher.publish(Event.group_updated(group), group.member_ids)
        await self.dispatcher.publish(Event.left_group(group), [actor_id])
        return group

    async def update(self, group_id: str, actor_id: str, name: Optional[str] = None,
                     avatar: Optional[str] = None) -> Group:
        """Rename a group and/or change its avatar.

        Only the fields that are given change.

        Raises:
            NotFound: If the group does not exist
            Forbidden: If the actor is neither creator nor admin
            InvalidInput: If the new name is blank or the avatar is not an image
            UpstreamFailure: If the avatar upload fails; nothing is saved

        Side Effects:
            - Saves the group
            - Publishes GroupUpdated to every member
        """
        async with self.groups_lock:
            group = self.get_group(group_id)
            if not authorize(group, actor_id, Action.UPDATE_GROUP):
                raise Forbidden("Only admins or creator can update group")
            if name is not None and not name.strip():
                raise InvalidInput("Group name cannot be empty")

            if name is not None:
                group.name = name.strip()
            if avatar:
                group.avatar = await upload_image(self.uploader, avatar, GROUP_FOLDER, AVATAR_BOX)
            group.updated_ts = _now_ms()
            with storage_call("updating group"):
                group = self.groups.save(group)
        logger.info(f"UpdateGroup: User '{actor_id}' updated group '{group_id}'")

        await self.dispatcher.publish(Event.group_updated(group), group.member_ids)
        return group
