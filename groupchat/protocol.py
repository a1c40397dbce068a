"""gRPC method table and JSON codec for the chat service.

Requests and responses are plain JSON objects, so instead of generated
protobuf stubs the service is registered through grpc's generic handler
API with JSON (de)serializers. ``add_ChatServiceServicer_to_server`` and
``ChatServiceStub`` mirror the shape of generated code.
"""
import json

import grpc

SERVICE_NAME = "groupchat.ChatService"

UNARY_METHODS = (
    "RegisterUser",
    "LoginUser",
    "ListUsers",
    "SearchUsers",
    "ListOnline",
    "CreateGroup",
    "ListGroups",
    "AddMember",
    "RemoveMember",
    "LeaveGroup",
    "UpdateGroup",
    "GetMessages",
    "SendMessage",
    "EditMessage",
    "DeleteMessage",
)

STREAM_METHODS = ("OpenStream",)

# Trailing metadata key carrying the stable error code of a failed call
ERROR_CODE_KEY = "error-code"


def encode(obj) -> bytes:
    return json.dumps(obj, ensure_ascii=False).encode("utf-8")


def decode(data: bytes):
    if not data:
        return {}
    return json.loads(data.decode("utf-8"))


def method_path(name: str) -> str:
    return f"/{SERVICE_NAME}/{name}"


def add_ChatServiceServicer_to_server(servicer, server):
    """Register every RPC of ``servicer`` on a grpc (aio) server."""
    handlers = {}
    for name in UNARY_METHODS:
        handlers[name] = grpc.unary_unary_rpc_method_handler(
            getattr(servicer, name),
            request_deserializer=decode,
            response_serializer=encode,
        )
    for name in STREAM_METHODS:
        handlers[name] = grpc.unary_stream_rpc_method_handler(
            getattr(servicer, name),
            request_deserializer=decode,
            response_serializer=encode,
        )
    server.add_generic_rpc_handlers((grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),))


class ChatServiceStub:
    """Client-side callables for every RPC, bound to a channel."""

    def __init__(self, channel):
        for name in UNARY_METHODS:
            setattr(self, name, channel.unary_unary(
                method_path(name),
                request_serializer=encode,
                response_deserializer=decode,
            ))
        for name in STREAM_METHODS:
            setattr(self, name, channel.unary_stream(
                method_path(name),
                request_serializer=encode,
                response_deserializer=decode,
            ))
