import time
import uuid
from typing import List, Optional, Set

from .dispatcher import Dispatcher
from .errors import Forbidden, InvalidInput, NotFound, storage_call
from .events import Event
from .media import GROUP_FOLDER, MESSAGE_FOLDER, MESSAGE_IMAGE_BOX, upload_image
from .membership import Action, MembershipEngine, authorize, owns_message
from .models import GroupTarget, Message
from .repo import MessagesRepo, UsersRepo
from .resolver import ConversationResolver
from ..utils.logger import setup_logger

logger = setup_logger('groupchat.messaging')


class MessageService:
    """Send, list, edit and delete messages in direct and group conversations.

    The conversation target is resolved once at the top of every call and
    threaded through; nothing downstream re-guesses whether an ID is a
    group or a user.
    """

    def __init__(self, users: UsersRepo, messages: MessagesRepo, resolver: ConversationResolver,
                 engine: MembershipEngine, dispatcher: Dispatcher, uploader):
        self.users = users
        self.messages = messages
        self.resolver = resolver
        self.engine = engine
        self.dispatcher = dispatcher
        self.uploader = uploader

    def _audience(self, message: Message) -> Set[str]:
        """Everyone who can currently see ``message``."""
        if message.is_group_message:
            group = self.engine.groups.find_by_id(message.group_id)
            return set(group.member_ids) if group is not None else set()
        return {message.sender_id, message.receiver_id}

    def _get_owned(self, message_id: str, requester_id: str) -> Message:
        message = self.messages.find_by_id(message_id)
        if message is None:
            raise NotFound("Message not found")
        if not owns_message(message, requester_id):
            logger.warning(f"User '{requester_id}' tried to modify message {message_id} they did not send")
            raise Forbidden("You can only modify your own messages")
        return message

    def get_messages(self, target_id: str, requester_id: str) -> List[Message]:
        """Return a conversation's history, oldest first.

        Raises:
            NotFound: If ``target_id`` names neither a group nor a user
            Forbidden: If the requester is not a member of the group
        """
        target = self.resolver.resolve(target_id)
        if isinstance(target, GroupTarget):
            if not authorize(target.group, requester_id, Action.READ_MESSAGES):
                raise Forbidden("You are not a member of this group")
            return self.messages.find_by_conversation(group_id=target.group.id)
        return self.messages.find_by_conversation(participants=(requester_id, target.peer_id))

    async def send_message(self, target_id: str, sender_id: str, text: Optional[str] = None,
                           image: Optional[str] = None) -> Message:
        """Store a message and push it to the other side of the conversation.

        Args:
            target_id (str): Peer user ID or group ID
            sender_id (str): Sending user
            text (str, optional): Message text
            image (str, optional): Base64 image data URI

        Returns:
            Message: The stored message

        Raises:
            InvalidInput: If both text and image are missing, or the image is malformed
            NotFound: If the sender or the target does not exist
            Forbidden: If the sender is not a member of the target group
            UpstreamFailure: If the image upload or storage fails

        Side Effects:
            - Persists the message, then appends it to the group's message list
            - Direct: publishes NewMessage to the receiver
            - Group: publishes NewMessage to every current member, the sender included
        """
        text = (text or "").strip() or None
        if text is None and not image:
            raise InvalidInput("Message must have text or an image")
        if self.users.find_by_id(sender_id) is None:
            raise NotFound(f"User {sender_id} not found")

        target = self.resolver.resolve(target_id)
        if target.is_group and not authorize(target.group, sender_id, Action.SEND_MESSAGE):
            raise Forbidden("You are not a member of this group")

        image_url = None
        if image:
            folder = GROUP_FOLDER if target.is_group else MESSAGE_FOLDER
            image_url = await upload_image(self.uploader, image, folder, MESSAGE_IMAGE_BOX)

        message = Message(
            id=uuid.uuid4().hex,
            sender_id=sender_id,
            created_ts=int(time.time() * 1000),
            receiver_id=None if target.is_group else target.peer_id,
            group_id=target.group.id if target.is_group else None,
            text=text,
            image=image_url,
        )
        with storage_call("saving message"):
            message = self.messages.create(message)

        if not target.is_group:
            await self.dispatcher.publish(Event.new_message(message), [message.receiver_id])
            return message

        members = await self._append_to_group(message, target)
        await self.dispatcher.publish(Event.new_message(message), members)
        return message

    async def _append_to_group(self, message: Message, target: GroupTarget) -> Set[str]:
        """Record the message in its group's message list.

        The message is already durable at this point. A failure here leaves
        the two documents out of step; it is logged for reconciliation and
        the send still succeeds.

        Returns:
            Set[str]: The group's current member IDs
        """
        async with self.engine.groups_lock:
            try:
                group = self.engine.get_group(target.group.id)
                group.message_ids.append(message.id)
                group = self.engine.groups.save(group)
            except (OSError, ValueError, NotFound) as e:
                logger.error(
                    f"Reconciliation candidate: message {message.id} saved but not appended "
                    f"to group {target.group.id}: {e}"
                )
                return target.member_ids
        return set(group.member_ids)

    async def edit_message(self, message_id: str, requester_id: str, text: Optional[str]) -> Message:
        """Replace the text of a message the requester sent.

        Works the same way for direct and group messages.

        Raises:
            NotFound: If the message does not exist
            Forbidden: If the requester is not the sender
            InvalidInput: If the edit would leave the message with no content

        Side Effects:
            - Saves the message with ``edited`` set
            - Publishes MessageEdited to everyone who can see the message
        """
        message = self._get_owned(message_id, requester_id)
        text = (text or "").strip() or None
        if text is None and not message.image:
            raise InvalidInput("Message must have text or an image")

        message.text = text
        message.edited = True
        with storage_call("editing message"):
            message = self.messages.save(message)
        logger.info(f"User '{requester_id}' edited message {message_id}")

        await self.dispatcher.publish(Event.message_edited(message), self._audience(message))
        return message

    async def delete_message(self, message_id: str, requester_id: str):
        """Delete a message the requester sent.

        Raises:
            NotFound: If the message does not exist
            Forbidden: If the requester is not the sender

        Side Effects:
            - Removes the message from storage
            - Group: removes the ID from the group's message list
            - Publishes MessageDeleted to everyone who could see it
        """
        message = self._get_owned(message_id, requester_id)
        audience = self._audience(message)
        with storage_call("deleting message"):
            self.messages.delete_by_id(message_id)
        logger.info(f"User '{requester_id}' deleted message {message_id}")

        if message.is_group_message:
            await self._detach_from_group(message)
        await self.dispatcher.publish(Event.message_deleted(message), audience)

    async def _detach_from_group(self, message: Message):
        """Drop a deleted message from its group's message list.

        The message itself is already gone; a failure here is logged for
        reconciliation and the delete still succeeds.
        """
        async with self.engine.groups_lock:
            try:
                group = self.engine.get_group(message.group_id)
                if message.id not in group.message_ids:
                    return
                group.message_ids.remove(message.id)
                self.engine.groups.save(group)
            except (OSError, ValueError, NotFound) as e:
                logger.error(
                    f"Reconciliation candidate: message {message.id} deleted but still listed "
                    f"in group {message.group_id}: {e}"
                )
