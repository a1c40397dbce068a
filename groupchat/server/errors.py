"""Error taxonomy shared by the engine, the servicer and the client.

Every error carries a stable ``code`` and a short human-readable message.
The five families map one-to-one onto gRPC status codes; specific errors
subclass a family and only override the code.
"""
from contextlib import contextmanager

import grpc


class ChatError(Exception):
    code = "error"
    status = grpc.StatusCode.UNKNOWN

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFound(ChatError):
    code = "not_found"
    status = grpc.StatusCode.NOT_FOUND


class Forbidden(ChatError):
    code = "forbidden"
    status = grpc.StatusCode.PERMISSION_DENIED


class InvalidInput(ChatError):
    code = "invalid_input"
    status = grpc.StatusCode.INVALID_ARGUMENT


class Conflict(ChatError):
    code = "conflict"
    status = grpc.StatusCode.FAILED_PRECONDITION


class UpstreamFailure(ChatError):
    code = "upstream_failure"
    status = grpc.StatusCode.UNAVAILABLE


class InvalidMember(NotFound):
    code = "invalid_member"


class InvalidMembers(InvalidInput):
    code = "invalid_members"


class EmptyMembership(InvalidInput):
    code = "empty_membership"


class AlreadyMember(Conflict):
    code = "already_member"


class NotMember(Conflict):
    code = "not_member"


class CannotRemoveCreator(Conflict):
    code = "cannot_remove_creator"


class CreatorCannotLeave(Conflict):
    code = "creator_cannot_leave"


@contextmanager
def storage_call(operation: str):
    """Report storage I/O failures as ``UpstreamFailure``."""
    try:
        yield
    except OSError as e:
        raise UpstreamFailure(f"Storage failure while {operation}") from e
