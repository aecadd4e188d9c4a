"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class NetworkConfig(BaseModel):
    """Bridge connection settings."""
    model_config = ConfigDict(frozen=True)

    websocket: str = "ws://127.0.0.1:5500"  # Event socket
    http: str = "http://127.0.0.1:5500/v1"  # Command API base URL
    login_token: str = ""  # Shared bearer token for both endpoints
    reconnect_max_delay: float = Field(default=60.0, gt=0)
    send_timeout: float = Field(default=15.0, gt=0)


class LoggerConfig(BaseModel):
    """Per-level log switches and optional file output."""
    model_config = ConfigDict(frozen=True)

    info: bool = True
    warning: bool = True
    error: bool = True
    chat: bool = True
    debug: bool = True
    generate_file: bool = False
    save_path: str | None = None  # Defaults to <data_dir>/logs/relaybot.log


class PermissionConfig(BaseModel):
    """
    Raw permission policy.

    Tiers are given by name (blocked, default, trusted, admin) or by their
    numeric level 0-3. ``other`` maps a scope key ("group:123") or a member of
    a scope ("group:123/456") to a tier.
    """
    model_config = ConfigDict(frozen=True)

    default: str | int = "default"
    private: str | int = "default"
    admins: list[str | int] = Field(default_factory=list)  # User ids; QQ ids are often written as numbers
    other: dict[str, str | int] = Field(default_factory=dict)


class ProviderConfig(BaseModel):
    """LLM provider configuration."""
    model_config = ConfigDict(frozen=True)

    name: str = "deepseek"
    model: str = "deepseek/deepseek-chat"
    api_key: str = ""
    api_base: str | None = None
    max_tokens: int = 1024
    temperature: float = 0.7
    timeout: float = Field(default=60.0, gt=0)  # Per-call completion timeout


# Default weights for the group-chat trigger gate
DEFAULT_TRIGGER_KEYWORDS: dict[str, int] = {
    "relaybot": 40,
    "relay": 40,
    "help": 20,
    "?": 20,
    "？": 20,
    "!": 10,
    "！": 10,
}


class AgentConfig(BaseModel):
    """Dispatcher behaviour."""
    model_config = ConfigDict(frozen=True)

    system_prompt: str = ""  # Empty means the built-in persona
    max_context_turns: int = Field(default=20, ge=1)
    context_ttl: float = 1300.0  # Seconds a turn stays eligible for prompts
    max_concurrency: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=4, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    rate_limit_max_delay: float = Field(default=60.0, ge=0)
    drain_timeout: float = Field(default=30.0, ge=0)
    require_trigger_in_groups: bool = True
    trigger_keywords: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_TRIGGER_KEYWORDS))
    trigger_threshold: int = 50
    followup_turns: int = Field(default=3, ge=0)


class StorageConfig(BaseModel):
    """Where contexts and the policy snapshot are persisted."""
    model_config = ConfigDict(frozen=True)

    data_dir: str = "~/.relaybot"
    ephemeral: bool = False  # Keep everything in memory


class ControlConfig(BaseModel):
    """Operator control plane (HTTP)."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 18790
    auth_token: str = ""


class Config(BaseSettings):
    """Root configuration for relaybot."""
    model_config = SettingsConfigDict(
        env_prefix="RELAYBOT_",
        env_nested_delimiter="__",
        frozen=True,
    )

    heart_beat: float = Field(default=0.5, gt=0)  # Seconds; seeds reconnect backoff
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    logger: LoggerConfig = Field(default_factory=LoggerConfig)
    permission: PermissionConfig = Field(default_factory=PermissionConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Real environment variables win over values read from config.json.
        return env_settings, init_settings, file_secret_settings

    @property
    def data_path(self) -> Path:
        """Get expanded data directory path."""
        return Path(self.storage.data_dir).expanduser()

    def with_updates(self, **sections: Any) -> "Config":
        """Return a copy with whole sections replaced (the model is frozen)."""
        return self.model_copy(update=sections)
