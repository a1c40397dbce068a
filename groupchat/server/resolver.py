from .errors import NotFound
from .models import ConversationTarget, DirectTarget, GroupTarget
from .repo import GroupsRepo, UsersRepo


class ConversationResolver:
    """Turns an opaque conversation ID into a direct or group target.

    Group membership can change between calls, so every operation resolves
    afresh and nothing is cached.
    """

    def __init__(self, users: UsersRepo, groups: GroupsRepo):
        self.users = users
        self.groups = groups

    def resolve(self, target_id: str) -> ConversationTarget:
        """Classify ``target_id``.

        Raises:
            NotFound: If the ID names neither a group nor a user
        """
        group = self.groups.find_by_id(target_id)
        if group is not None:
            return GroupTarget(group)
        if self.users.find_by_id(target_id) is not None:
            return DirectTarget(target_id)
        raise NotFound(f"Conversation {target_id} not found")
