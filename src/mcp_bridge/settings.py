from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MCP_BRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"
    # stderr is always used; stdout carries protocol traffic
    log_file: str | None = None

    # identity presented to the local client and to the remote server
    server_name: str = "mcp-bridge"
    server_version: str | None = None

    connect_timeout: float = 30.0
    shutdown_timeout: float = 10.0


settings = Settings()
