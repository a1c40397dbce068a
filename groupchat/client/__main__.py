"""
Entry point for the chat client.

    python -m groupchat.client --name alice [--host H] [--port P] [--register]
"""
from .cli import app


def main():
    """Launch the terminal chat client."""
    app()


if __name__ == "__main__":
    main()
