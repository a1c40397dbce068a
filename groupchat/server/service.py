import functools
import uuid
from typing import AsyncIterator

import grpc
from grpc import aio

from .dispatcher import Dispatcher
from .errors import ChatError, Conflict, InvalidInput, NotFound, UpstreamFailure
from .hub import Connection, ConnectionRegistry
from .media import AVATAR_BOX, USER_FOLDER, upload_image
from .membership import MembershipEngine
from .messaging import MessageService
from .models import User
from .repo import GroupsRepo, MessagesRepo, UsersRepo
from .resolver import ConversationResolver
from ..protocol import ERROR_CODE_KEY
from ..utils.logger import setup_logger

logger = setup_logger('groupchat.server')


async def _abort(context: aio.ServicerContext, error: ChatError):
    """Fail the RPC with the error's status, message and stable code."""
    context.set_trailing_metadata(((ERROR_CODE_KEY, error.code),))
    await context.abort(error.status, error.message)


def _rpc(handler):
    """Map domain errors raised by a unary handler onto gRPC statuses."""
    @functools.wraps(handler)
    async def wrapper(self, request, context):
        try:
            return await handler(self, request or {}, context)
        except ChatError as e:
            logger.warning(f"{handler.__name__}: {e.code} - {e.message}")
            await _abort(context, e)
        except OSError as e:
            logger.error(f"{handler.__name__}: storage failure: {e}")
            await _abort(context, UpstreamFailure("Storage failure"))
    return wrapper


def _require(request: dict, *fields):
    missing = [f for f in fields if not request.get(f)]
    if missing:
        raise InvalidInput(f"Missing required field(s): {', '.join(missing)}")


class ChatService:
    """gRPC service implementation for chat functionality.

    Binds every exposed operation to the membership engine and the message
    service, and runs the live event stream that keeps the connection
    registry in sync with connected clients.
    """

    def __init__(self, users_repo: UsersRepo, messages_repo: MessagesRepo, groups_repo: GroupsRepo,
                 registry: ConnectionRegistry, uploader):
        """Initialize chat service with required repositories, registry and uploader.

        Args:
            users_repo (UsersRepo): Repository for user management
            messages_repo (MessagesRepo): Repository for message storage
            groups_repo (GroupsRepo): Repository for group management
            registry (ConnectionRegistry): Live connections of online users
            uploader: Media uploader for avatars and image messages

        Attributes:
            users: User repository instance
            registry: Connection registry instance
            dispatcher: Fan-out over the registry
            engine: Group membership engine
            messaging: Message operations
        """
        self.users = users_repo
        self.registry = registry
        self.uploader = uploader
        self.dispatcher = Dispatcher(registry)
        self.resolver = ConversationResolver(users_repo, groups_repo)
        self.engine = MembershipEngine(users_repo, groups_repo, self.dispatcher, uploader)
        self.messaging = MessageService(
            users_repo, messages_repo, self.resolver, self.engine, self.dispatcher, uploader
        )

    @_rpc
    async def RegisterUser(self, request: dict, context: aio.ServicerContext):
        """Register a new user in the chat system.

        Args:
            request (dict): Contains desired display_name and optional avatar
            context (ServicerContext): gRPC service context

        Returns:
            dict: ``{"user": ...}`` with the assigned user ID

        Raises:
            FAILED_PRECONDITION: If display_name is already taken
        """
        _require(request, "display_name")
        display_name = request["display_name"].strip()
        if self.users.find_by_display_name(display_name):
            raise Conflict(f"User {display_name} already exists")

        avatar = None
        if request.get("avatar"):
            avatar = await upload_image(self.uploader, request["avatar"], USER_FOLDER, AVATAR_BOX)
        user = User(id=uuid.uuid4().hex[:12], display_name=display_name, avatar=avatar)
        self.users.append_user(user)
        logger.info(f"RegisterUser: User '{display_name}' registered successfully with ID '{user.id}'")
        return {"user": user.to_dict()}

    @_rpc
    async def LoginUser(self, request: dict, context: aio.ServicerContext):
        """Look a user up by display name.

        This only verifies the display name exists; real authentication
        belongs to the transport in front of this service.
        """
        _require(request, "display_name")
        user = self.users.find_by_display_name(request["display_name"])
        if not user:
            raise NotFound(f"User {request['display_name']} not found")
        return {"user": user.to_dict()}

    @_rpc
    async def ListUsers(self, request: dict, context: aio.ServicerContext):
        """Every user except the caller, by display name."""
        user_id = request.get("user_id")
        users = sorted((u for u in self.users.all() if u.id != user_id), key=lambda u: u.display_name)
        return {"users": [u.to_dict() for u in users]}

    @_rpc
    async def SearchUsers(self, request: dict, context: aio.ServicerContext):
        """Search for users by display name.

        Performs a case-insensitive substring search on user display names.

        Args:
            request (dict): Contains search query
            context (ServicerContext): gRPC service context

        Returns:
            dict: ``{"users": [...]}`` ordered by display name
        """
        users = sorted(self.users.search(request.get("query", "")), key=lambda u: u.display_name)
        return {"users": [u.to_dict() for u in users]}

    @_rpc
    async def ListOnline(self, request: dict, context: aio.ServicerContext):
        return {"user_ids": sorted(await self.registry.list_online())}

    @_rpc
    async def CreateGroup(self, request: dict, context: aio.ServicerContext):
        _require(request, "creator_id")
        group = await self.engine.create(
            request["creator_id"],
            request.get("name", ""),
            request.get("member_ids") or [],
            avatar=request.get("avatar"),
        )
        return {"group": group.to_dict()}

    @_rpc
    async def ListGroups(self, request: dict, context: aio.ServicerContext):
        """List all groups that a specific user is a member of.

        Args:
            request (dict): Contains user_id
            context (ServicerContext): gRPC service context

        Returns:
            dict: ``{"groups": [...]}``, most recently updated first
        """
        _require(request, "user_id")
        return {"groups": [g.to_dict() for g in self.engine.list_groups(request["user_id"])]}

    @_rpc
    async def AddMember(self, request: dict, context: aio.ServicerContext):
        _require(request, "group_id", "actor_id", "member_id")
        group = await self.engine.add_member(request["group_id"], request["actor_id"], request["member_id"])
        return {"group": group.to_dict()}

    @_rpc
    async def RemoveMember(self, request: dict, context: aio.ServicerContext):
        _require(request, "group_id", "actor_id", "member_id")
        group = await self.engine.remove_member(request["group_id"], request["actor_id"], request["member_id"])
        return {"group": group.to_dict()}

    @_rpc
    async def LeaveGroup(self, request: dict, context: aio.ServicerContext):
        _require(request, "group_id", "actor_id")
        await self.engine.leave(request["group_id"], request["actor_id"])
        return {"ok": True}

    @_rpc
    async def UpdateGroup(self, request: dict, context: aio.ServicerContext):
        _require(request, "group_id", "actor_id")
        group = await self.engine.update(
            request["group_id"],
            request["actor_id"],
            name=request.get("name"),
            avatar=request.get("avatar"),
        )
        return {"group": group.to_dict()}

    @_rpc
    async def GetMessages(self, request: dict, context: aio.ServicerContext):
        _require(request, "target_id", "requester_id")
        messages = self.messaging.get_messages(request["target_id"], request["requester_id"])
        return {"messages": [m.to_dict() for m in messages]}

    @_rpc
    async def SendMessage(self, request: dict, context: aio.ServicerContext):
        _require(request, "target_id", "sender_id")
        message = await self.messaging.send_message(
            request["target_id"],
            request["sender_id"],
            text=request.get("text"),
            image=request.get("image"),
        )
        return {"message": message.to_dict()}

    @_rpc
    async def EditMessage(self, request: dict, context: aio.ServicerContext):
        _require(request, "message_id", "requester_id")
        message = await self.messaging.edit_message(
            request["message_id"], request["requester_id"], request.get("text")
        )
        return {"message": message.to_dict()}

    @_rpc
    async def DeleteMessage(self, request: dict, context: aio.ServicerContext):
        _require(request, "message_id", "requester_id")
        await self.messaging.delete_message(request["message_id"], request["requester_id"])
        return {"ok": True}

    async def OpenStream(self, request: dict, context: aio.ServicerContext) -> AsyncIterator[dict]:
        """Open the live event stream for a client.

        Protocol Flow:
        1. Client calls OpenStream with its user_id
        2. Server registers a connection for the user, replacing any older one
        3. Every online user is told the new online set
        4. Events published to the user are streamed until the client goes
           away or a newer stream for the same user supersedes this one

        Nothing missed while offline is replayed; a client re-fetches its
        groups and the open conversation after connecting.

        Yields:
            dict: Serialized events (``{"kind": ..., "payload": ...}``)

        Side Effects:
            - Registers/unregisters the user's connection in the registry
            - Publishes OnlineUsers on connect and disconnect
            - Logs connection lifecycle events
        """
        user_id = (request or {}).get("user_id")
        if not user_id or self.users.find_by_id(user_id) is None:
            logger.error("ChatStream: Invalid stream request - missing or unknown user_id")
            await context.abort(grpc.StatusCode.UNAUTHENTICATED, "OpenStream requires a registered user_id")

        connection = Connection(user_id)
        await self.registry.register(user_id, connection)
        logger.info(f"ChatStream: User '{user_id}' connected to stream")
        await self.dispatcher.publish_presence()

        try:
            async for event in connection.events():
                yield event.to_dict()
        finally:
            await self.registry.unregister(user_id, connection)
            await self.dispatcher.publish_presence()
            logger.info(f"ChatStream: User '{user_id}' disconnected from stream")
