"""Async client for the chat service, speaking in model objects."""
from typing import AsyncIterator, Iterable, List, Optional

import grpc
from grpc import aio

from ..protocol import ERROR_CODE_KEY, ChatServiceStub
from ..server.events import Event
from ..server.models import Group, Message, User


class RemoteError(Exception):
    """A call the server rejected, or that never reached it."""

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message

    @classmethod
    def from_rpc_error(cls, e: grpc.aio.AioRpcError) -> "RemoteError":
        code = None
        for key, value in e.trailing_metadata() or ():
            if key == ERROR_CODE_KEY:
                code = value
        return cls(code or e.code().name.lower(), e.details() or "")


class ChatClient:
    """Thin wrapper over the gRPC stub.

    Every method returns decoded models and raises ``RemoteError`` instead
    of ``AioRpcError``, so callers deal with one error type.
    """

    def __init__(self, user_id: str, channel: aio.Channel):
        self.user_id = user_id
        self.channel = channel
        self.stub = ChatServiceStub(channel)

    @classmethod
    def connect(cls, user_id: str, host: str, port: int) -> "ChatClient":
        return cls(user_id, aio.insecure_channel(f"{host}:{port}"))

    async def _call(self, method: str, **request) -> dict:
        try:
            return await getattr(self.stub, method)(request)
        except grpc.aio.AioRpcError as e:
            raise RemoteError.from_rpc_error(e) from e

    async def close(self):
        await self.channel.close()

    async def list_users(self) -> List[User]:
        resp = await self._call("ListUsers", user_id=self.user_id)
        return [User.from_dict(u) for u in resp["users"]]

    async def search_users(self, query: str) -> List[User]:
        resp = await self._call("SearchUsers", query=query)
        return [User.from_dict(u) for u in resp["users"]]

    async def list_online(self) -> List[str]:
        resp = await self._call("ListOnline")
        return resp["user_ids"]

    async def list_groups(self) -> List[Group]:
        resp = await self._call("ListGroups", user_id=self.user_id)
        return [Group.from_dict(g) for g in resp["groups"]]

    async def create_group(self, name: str, member_ids: Iterable[str], avatar: Optional[str] = None) -> Group:
        resp = await self._call(
            "CreateGroup", creator_id=self.user_id, name=name, member_ids=list(member_ids), avatar=avatar
        )
        return Group.from_dict(resp["group"])

    async def add_member(self, group_id: str, member_id: str) -> Group:
        resp = await self._call("AddMember", group_id=group_id, actor_id=self.user_id, member_id=member_id)
        return Group.from_dict(resp["group"])

    async def remove_member(self, group_id: str, member_id: str) -> Group:
        resp = await self._call("RemoveMember", group_id=group_id, actor_id=self.user_id, member_id=member_id)
        return Group.from_dict(resp["group"])

    async def leave_group(self, group_id: str):
        await self._call("LeaveGroup", group_id=group_id, actor_id=self.user_id)

    async def update_group(self, group_id: str, name: Optional[str] = None, avatar: Optional[str] = None) -> Group:
        resp = await self._call("UpdateGroup", group_id=group_id, actor_id=self.user_id, name=name, avatar=avatar)
        return Group.from_dict(resp["group"])

    async def get_messages(self, target_id: str) -> List[Message]:
        resp = await self._call("GetMessages", target_id=target_id, requester_id=self.user_id)
        return [Message.from_dict(m) for m in resp["messages"]]

    async def send_message(self, target_id: str, text: Optional[str] = None, image: Optional[str] = None) -> Message:
        resp = await self._call("SendMessage", target_id=target_id, sender_id=self.user_id, text=text, image=image)
        return Message.from_dict(resp["message"])

    async def edit_message(self, message_id: str, text: str) -> Message:
        resp = await self._call("EditMessage", message_id=message_id, requester_id=self.user_id, text=text)
        return Message.from_dict(resp["message"])

    async def delete_message(self, message_id: str):
        await self._call("DeleteMessage", message_id=message_id, requester_id=self.user_id)

    async def events(self) -> AsyncIterator[Event]:
        """Open the live stream and yield events until it ends."""
        call = self.stub.OpenStream({"user_id": self.user_id})
        try:
            async for rec in call:
                yield Event.from_dict(rec)
        except grpc.aio.AioRpcError as e:
            raise RemoteError.from_rpc_error(e) from e


async def register_or_login(host: str, port: int, display_name: str, register: bool = False) -> User:
    """Resolve a display name to a user, registering it when asked."""
    async with aio.insecure_channel(f"{host}:{port}") as chan:
        stub = ChatServiceStub(chan)
        method = stub.RegisterUser if register else stub.LoginUser
        try:
            resp = await method({"display_name": display_name})
        except grpc.aio.AioRpcError as e:
            raise RemoteError.from_rpc_error(e) from e
    return User.from_dict(resp["user"])
