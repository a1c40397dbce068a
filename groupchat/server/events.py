"""Server-to-client events pushed over the live stream.

An event is an immutable value: the payload is serialized when the event
is built, so later changes to the group or message it came from never
leak into an event that is already queued.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .models import Group, Message


class EventKind(str, Enum):
    NEW_MESSAGE = "new_message"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    GROUP_UPDATED = "group_updated"
    REMOVED_FROM_GROUP = "removed_from_group"
    LEFT_GROUP = "left_group"
    ONLINE_USERS = "online_users"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    data: str

    @property
    def payload(self) -> dict:
        return json.loads(self.data)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "payload": self.payload}

    @classmethod
    def from_dict(cls, rec: dict) -> "Event":
        return cls(EventKind(rec["kind"]), json.dumps(rec["payload"]))

    @classmethod
    def new_message(cls, message: Message) -> "Event":
        return cls(EventKind.NEW_MESSAGE, json.dumps(message.to_dict()))

    @classmethod
    def message_edited(cls, message: Message) -> "Event":
        return cls(EventKind.MESSAGE_EDITED, json.dumps(message.to_dict()))

    @classmethod
    def message_deleted(cls, message: Message) -> "Event":
        return cls(EventKind.MESSAGE_DELETED, json.dumps({
            "message_id": message.id,
            "group_id": message.group_id,
            "sender_id": message.sender_id,
            "receiver_id": message.receiver_id,
        }))

    @classmethod
    def group_updated(cls, group: Group) -> "Event":
        return cls(EventKind.GROUP_UPDATED, json.dumps(group.to_dict()))

    @classmethod
    def removed_from_group(cls, group: Group) -> "Event":
        return cls(EventKind.REMOVED_FROM_GROUP, json.dumps(group.to_dict()))

    @classmethod
    def left_group(cls, group: Group) -> "Event":
        return cls(EventKind.LEFT_GROUP, json.dumps(group.to_dict()))

    @classmethod
    def online_users(cls, user_ids: Iterable[str]) -> "Event":
        return cls(EventKind.ONLINE_USERS, json.dumps({"user_ids": sorted(user_ids)}))
