import asyncio
import os
from typing import Optional

import typer
from grpc import aio

from ..config import get_settings
from ..protocol import add_ChatServiceServicer_to_server
from .hub import ConnectionRegistry
from .media import LocalMediaUploader
from .repo import GroupsRepo, MessagesRepo, UsersRepo
from .service import ChatService, logger  # Reuse the same logger

app = typer.Typer(help="Group chat gRPC server")


def build_service(data_dir: str, uploader) -> ChatService:
    """Wire repositories, registry and uploader into a ChatService."""
    users_repo = UsersRepo(os.path.join(data_dir, "users.jsonl"))
    messages_repo = MessagesRepo(os.path.join(data_dir, "messages.jsonl"))
    groups_repo = GroupsRepo(os.path.join(data_dir, "groups.jsonl"))
    return ChatService(users_repo, messages_repo, groups_repo, ConnectionRegistry(), uploader)


async def serve(host: Optional[str] = None, port: Optional[int] = None):
    """Start the chat server.

    Sets up and runs the gRPC server with chat service implementation.
    Initializes all required components:
    - User, message and group repositories
    - Connection registry and fan-out dispatcher
    - Local media uploader

    Args:
        host (str, optional): Hostname to bind server to. Defaults to GROUPCHAT_HOST.
        port (int, optional): Port number to listen on. Defaults to GROUPCHAT_PORT.

    Side Effects:
        - Creates data directories if needed
        - Starts gRPC server
        - Logs server startup progress
    """
    settings = get_settings()
    host = host or settings.host
    port = port or settings.port

    server = aio.server()
    uploader = LocalMediaUploader(settings.media_root, settings.media_base_url)
    add_ChatServiceServicer_to_server(build_service(settings.data_dir, uploader), server)
    listen_addr = f"{host}:{port}"
    server.add_insecure_port(listen_addr)
    logger.info(f"Server starting, listening on {listen_addr}")
    await server.start()
    logger.info(f"Server is now running on {listen_addr}")
    await server.wait_for_termination()


@app.command("run")
def run_cmd(host: Optional[str] = None, port: Optional[int] = None):
    """Run the chat server until interrupted."""
    asyncio.run(serve(host, port))


if __name__ == "__main__":
    app()
