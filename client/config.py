from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Client settings, overridable with SECURECHAT_CLIENT_* environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="SECURECHAT_CLIENT_",
        env_ignore_empty=True,
        extra="ignore",
    )

    server_url: str = "http://localhost:5000"
    poll_interval: float = 3.0
    request_timeout: float = 10.0
    storage_dir: str = "client_data"
