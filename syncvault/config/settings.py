from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import Field, field_validator
from pathlib import Path
from typing import Annotated, Optional, Literal


BASE_DIR = Path(__file__).resolve().parents[2]

MIN_PBKDF2_ITERATIONS = 100_000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage backend
    db_type: Literal["sqlite", "postgres"] = "sqlite"
    database_url: Optional[str] = None
    sqlite_db_path: Optional[Path] = None       # defaults to {data_dir}/syncvault.db
    db_pool_size: int = 20
    db_connection_timeout: float = 10.0         # seconds
    db_idle_timeout: float = 30.0               # seconds before a pooled connection is recycled
    db_max_retries: int = 5
    db_retry_base_delay: float = 1.0            # 1s, 2s, 4s, 8s, 16s

    # Server
    api_host: str = "0.0.0.0"
    api_port: int = 1610
    max_sync_payload_size: int = 104_857_600    # 100 MB
    data_dir: Path = BASE_DIR / "data"
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    # At-rest encryption
    server_secret: Optional[str] = None
    server_secret_previous: Annotated[list[str], NoDecode] = Field(default_factory=list)
    max_server_secrets: int = 5

    # Client vault
    client_dir: Optional[Path] = None           # defaults to {data_dir}/client
    pbkdf2_iterations: int = 600_000
    password_min_length: int = 8

    # Client sync
    sync_server_url: str = "http://127.0.0.1:1610"
    sync_interval_seconds: float = 120.0        # 2 minutes
    sync_cooldown_seconds: float = 1.0
    sync_request_timeout: float = 10.0
    sync_request_retries: int = 2
    sync_retry_delay: float = 1.0
    pending_removal_grace_seconds: float = 5.0

    @field_validator("pbkdf2_iterations")
    @classmethod
    def _check_iterations(cls, value: int) -> int:
        if value < MIN_PBKDF2_ITERATIONS:
            raise ValueError(f"pbkdf2_iterations must be >= {MIN_PBKDF2_ITERATIONS}")
        return value

    @field_validator("server_secret_previous", mode="before")
    @classmethod
    def _split_secrets(cls, value):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @property
    def sqlite_path(self) -> Path:
        return self.sqlite_db_path or self.data_dir / "syncvault.db"

    @property
    def client_path(self) -> Path:
        return self.client_dir or self.data_dir / "client"

    @property
    def server_secret_path(self) -> Path:
        return self.data_dir / "server_secret.key"

    def model_post_init(self, __context):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.client_path.mkdir(parents=True, exist_ok=True)


settings = Settings()
