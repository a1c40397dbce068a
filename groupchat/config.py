from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the chat server and client.

    Every field can be overridden from the environment with the
    ``GROUPCHAT_`` prefix (e.g. ``GROUPCHAT_PORT=50052``) or from a
    local ``.env`` file.
    """

    # Server
    host: str = "127.0.0.1"
    port: int = 50051

    # Storage (JSONL files)
    data_dir: str = "groupchat/data"

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"

    # Media uploads
    media_root: str = "media"
    media_base_url: str = "http://127.0.0.1:8080/media"

    model_config = SettingsConfigDict(env_prefix="GROUPCHAT_", env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    return Settings()
