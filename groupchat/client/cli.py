import asyncio
import base64
import contextlib
import mimetypes
import re
from typing import Optional

import typer

from ..config import get_settings
from ..server.events import Event, EventKind
from ..server.models import Message
from .api import ChatClient, RemoteError, register_or_login
from .store import ConvergenceStore

app = typer.Typer(help="Terminal client for the group chat server")

HELP_TEXT = (
    "Commands:\n"
    "  /users                          list users\n"
    "  /search <query>                 find users by display name\n"
    "  /online                         list online users\n"
    "  /groups                         list your groups\n"
    "  /open @<name> | #<group>        open a direct or group conversation\n"
    "  /history                        show the open conversation\n"
    "  /img <path>                     send an image to the open conversation\n"
    "  /edit <message_id> <text>       edit one of your messages\n"
    "  /delete <message_id>            delete one of your messages\n"
    "  /create-group <name> @a @b ...  create a group\n"
    "  /add @<name> | /remove @<name>  manage members of the open group\n"
    "  /rename <name> | /avatar <path> update the open group\n"
    "  /leave                          leave the open group\n"
    "  /quit\n"
    "Anything else is sent as a message to the open conversation."
)


def image_data_uri(path: str) -> str:
    """Read an image file into a base64 data URI."""
    mime, _ = mimetypes.guess_type(path)
    with open(path, "rb") as f:
        data = base64.b64encode(f.read()).decode("ascii")
    return f"data:{mime or 'image/png'};base64,{data}"


class ChatShell:
    """Interactive command loop over a ConvergenceStore."""

    def __init__(self, store: ConvergenceStore):
        self.store = store

    def name_of(self, user_id: str) -> str:
        for u in self.store.users:
            if u.id == user_id:
                return u.display_name
        return "you" if user_id == self.store.user_id else user_id

    def user_id_of(self, name: str) -> Optional[str]:
        name = name.lstrip("@")
        for u in self.store.users:
            if u.display_name == name or u.id == name:
                return u.id
        return None

    def group_id_of(self, ref: str) -> Optional[str]:
        ref = ref.lstrip("#")
        for g in self.store.groups:
            if g.id == ref or g.name == ref:
                return g.id
        return None

    def format_message(self, m: Message) -> str:
        body = m.text or ""
        if m.image:
            body = f"{body} [image {m.image}]".strip()
        edited = " (edited)" if m.edited else ""
        return f"[{m.id[:8]}] {self.name_of(m.sender_id)}: {body}{edited}"

    def show_event(self, event: Event):
        """Print what an incoming event changed, after it was applied."""
        if event.kind is EventKind.NEW_MESSAGE:
            m = Message.from_dict(event.payload)
            if self.store.belongs_to_active(m):
                print(self.format_message(m))
            elif m.group_id:
                group = self.store.find_group(m.group_id)
                print(f"[notice] new message in #{group.name if group else m.group_id}")
            else:
                print(f"[notice] new message from {self.name_of(m.sender_id)}")
        elif event.kind is EventKind.MESSAGE_EDITED:
            m = Message.from_dict(event.payload)
            if self.store.belongs_to_active(m):
                print(f"[edited] {self.format_message(m)}")
        elif event.kind is EventKind.MESSAGE_DELETED:
            print(f"[deleted] {event.payload['message_id'][:8]}")
        elif event.kind is EventKind.GROUP_UPDATED:
            print(f"[group] #{event.payload['name']} updated ({len(event.payload['member_ids'])} members)")
        elif event.kind is EventKind.REMOVED_FROM_GROUP:
            print(f"[group] you were removed from #{event.payload['name']}")
        elif event.kind is EventKind.LEFT_GROUP:
            print(f"[group] you left #{event.payload['name']}")
        elif event.kind is EventKind.ONLINE_USERS:
            print(f"[online] {', '.join(self.name_of(u) for u in event.payload['user_ids'])}")

    def active_group_id(self) -> Optional[str]:
        sel = self.store.selection
        if sel is None or not sel.is_group:
            print("[error] Open a group first")
            return None
        return sel.target_id

    async def handle(self, line: str) -> bool:
        """Run one input line. Returns False when the user quits."""
        store = self.store
        line = line.strip()
        if not line:
            return True

        if line in {"/quit", "/exit"}:
            return False

        if line in {"/help", "help"}:
            print(HELP_TEXT)
            return True

        if line == "/users":
            await store.load_users()
            for u in store.users:
                status = "online" if u.id in store.online else "offline"
                print(f" - {u.display_name} ({u.id}) {status}")
            return True

        m = re.match(r"^/search\s+(.+)$", line)
        if m:
            matches = await store.search_users(m.group(1).strip())
            if not matches:
                print("[search] No matches")
            for u in matches:
                print(f"[search] {u.display_name} ({u.id})")
            return True

        if line == "/online":
            await store.load_online()
            print("[online] " + ", ".join(self.name_of(u) for u in sorted(store.online)))
            return True

        if line == "/groups":
            await store.load_groups()
            if not store.groups:
                print("[groups] No groups found")
            for g in store.groups:
                members = ",".join(self.name_of(m) for m in sorted(g.member_ids))
                print(f" - #{g.name} ({g.id}) members={members}")
            return True

        m = re.match(r"^/open\s+(\S+)$", line)
        if m:
            ref = m.group(1)
            if ref.startswith("#"):
                target_id, is_group = self.group_id_of(ref), True
            else:
                target_id, is_group = self.user_id_of(ref), False
            if not target_id:
                print(f"[error] Unknown conversation {ref}")
                return True
            if await store.select(target_id, is_group):
                for msg in store.messages:
                    print(self.format_message(msg))
            return True

        if line == "/history":
            for msg in store.messages:
                print(self.format_message(msg))
            return True

        m = re.match(r"^/img\s+(.+)$", line)
        if m:
            try:
                data_uri = image_data_uri(m.group(1).strip())
            except OSError as e:
                print(f"[error] {e}")
                return True
            sent = await store.send(image=data_uri)
            if sent:
                print(self.format_message(sent))
            return True

        m = re.match(r"^/edit\s+(\S+)\s+(.+)$", line)
        if m:
            message_id = self.full_message_id(m.group(1))
            if await store.edit(message_id, m.group(2)):
                print("[edit] done")
            return True

        m = re.match(r"^/delete\s+(\S+)$", line)
        if m:
            if await store.delete(self.full_message_id(m.group(1))):
                print("[delete] done")
            return True

        m = re.match(r"^/create-group\s+(\S+)((?:\s+@\S+)+)$", line)
        if m:
            member_ids = [self.user_id_of(n) for n in m.group(2).split()]
            if None in member_ids:
                print("[error] Unknown member name")
                return True
            group = await store.create_group(m.group(1), member_ids)
            if group:
                print(f"[group] Created #{group.name} ({group.id})")
            return True

        m = re.match(r"^/(add|remove)\s+(@\S+)$", line)
        if m:
            group_id = self.active_group_id()
            member_id = self.user_id_of(m.group(2))
            if group_id and member_id:
                action = store.add_member if m.group(1) == "add" else store.remove_member
                await action(group_id, member_id)
            elif group_id:
                print("[error] Unknown member name")
            return True

        m = re.match(r"^/rename\s+(.+)$", line)
        if m:
            group_id = self.active_group_id()
            if group_id:
                await store.update_group(group_id, name=m.group(1))
            return True

        m = re.match(r"^/avatar\s+(.+)$", line)
        if m:
            group_id = self.active_group_id()
            if group_id:
                try:
                    await store.update_group(group_id, avatar=image_data_uri(m.group(1).strip()))
                except OSError as e:
                    print(f"[error] {e}")
            return True

        if line == "/leave":
            group_id = self.active_group_id()
            if group_id and await store.leave_group(group_id):
                print("[group] Left group")
            return True

        if line.startswith("/"):
            print('Type "/help" for commands.')
            return True

        if store.selection is None:
            print("[error] Open a conversation first (/open)")
            return True
        await store.send(text=line)
        return True

    def full_message_id(self, prefix: str) -> str:
        for msg in self.store.messages:
            if msg.id.startswith(prefix):
                return msg.id
        return prefix


async def _run(display_name: str, host: str, port: int, register: bool = False):
    """Main client loop handling connection and chat operations.

    Logs in (or registers), loads the user's view, then runs the event
    reader and the interactive prompt side by side.

    Args:
        display_name (str): User's display name (will prompt if empty)
        host (str): Chat server hostname
        port (int): Chat server port
        register (bool): True to register new user, False to try login first
    """
    if not display_name:
        display_name = input("Enter your display name: ").strip()

    try:
        user = await register_or_login(host, port, display_name, register)
    except RemoteError as e:
        print(f"Login failed: {e.message}")
        if register or input("Would you like to register as a new user? (y/n): ").lower() != 'y':
            return
        try:
            user = await register_or_login(host, port, display_name, register=True)
        except RemoteError as e:
            print(f"Error during registration: {e.message}")
            return
    print(f"Logged in as {user.display_name} ({user.id})")

    client = ChatClient.connect(user.id, host, port)
    store = ConvergenceStore(client, notify=lambda e: print(f"[error] {e.message}"))
    shell = ChatShell(store)

    async def reader():
        try:
            async for event in client.events():
                store.apply(event)
                shell.show_event(event)
        except RemoteError as e:
            print(f"[error] Stream closed: {e.message}")

    reader_task = asyncio.create_task(reader())
    await store.refresh()
    print('Type "/help" for commands.')

    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, input, "")
            if not await shell.handle(line):
                break
    finally:
        reader_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reader_task
        await client.close()


@app.command("run")
def run_cmd(
    name: str = "",
    host: Optional[str] = None,
    port: Optional[int] = None,
    register: bool = False
):
    """
    Run the chat client.

    Args:
        name: Display name to use
        host: Server hostname (defaults to GROUPCHAT_HOST)
        port: Server port (defaults to GROUPCHAT_PORT)
        register: If True, register as new user. If False, try to login first
    """
    settings = get_settings()
    asyncio.run(_run(name, host or settings.host, port or settings.port, register))


if __name__ == "__main__":
    app()
