from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Server settings, overridable with SECURECHAT_* environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="SECURECHAT_",
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    project_name: str = "Encrypted Mailbox Server"
    project_version: str = "1.0.0"

    database_url: str = "sqlite+aiosqlite:///./chat.db"

    # JWT - in production, set SECURECHAT_JWT_SECRET
    jwt_secret: str = "your-secret-key-change-this-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Crypto
    rsa_key_size: int = 2048
    # When False the server keeps only the public key; the private key is
    # handed to the client once, in the registration response.
    retain_private_keys: bool = False

    log_level: str = "INFO"
    log_file: str | None = None


settings = Settings()
