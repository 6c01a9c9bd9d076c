"""Settings loaded from a TOML config file with environment overrides."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .errors import ConfigError

HOME_CONFIG_PATH = Path.home() / ".royalnet" / "royalnet.toml"

DEFAULT_UNKNOWN_COMMAND = "⚠️ Comando sconosciuto."
DEFAULT_ERROR_PREFIX = "⚠️ "
DEFAULT_START_TEXT = (
    "👋 Ciao! Sono il bot della Royal Games.\n"
    "Scrivi /help per vedere cosa so fare."
)


class MatrixSettings(BaseModel):
    homeserver: str
    user_id: str
    access_token: str | None = None
    password: str | None = None
    device_id: str | None = None
    device_name: str = "royalnet"
    room_ids: list[str] = Field(default_factory=list)
    user_allowlist: list[str] | None = None

    @model_validator(mode="after")
    def _require_credentials(self) -> MatrixSettings:
        if not self.access_token and not self.password:
            raise ValueError("one of access_token or password is required")
        return self


class MessagesSettings(BaseModel):
    unknown_command: str = DEFAULT_UNKNOWN_COMMAND
    error_prefix: str = DEFAULT_ERROR_PREFIX
    start: str = DEFAULT_START_TEXT


class StateSettings(BaseModel):
    directory: Path | None = None


class LoggingSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    verbose: bool = False
    json_output: bool = Field(default=False, alias="json")


class ReminderSettings(BaseModel):
    poll_interval: float = Field(default=15.0, gt=0)


class RoyalnetSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ROYALNET__",
        env_nested_delimiter="__",
        str_strip_whitespace=True,
        populate_by_name=True,
    )

    matrix: MatrixSettings
    messages: MessagesSettings = Field(default_factory=MessagesSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    reminders: ReminderSettings = Field(default_factory=ReminderSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    def state_dir(self, config_path: Path) -> Path:
        if self.state.directory is not None:
            return self.state.directory.expanduser()
        return config_path.parent


def _resolve_config_path(path: str | Path | None) -> Path:
    return Path(path).expanduser() if path else HOME_CONFIG_PATH


def _ensure_config_file(cfg_path: Path) -> None:
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.") from None
    if not cfg_path.exists():
        raise ConfigError(f"Missing config file {cfg_path}.") from None


def load_settings(path: str | Path | None = None) -> tuple[RoyalnetSettings, Path]:
    """Load settings from TOML config file."""
    cfg_path = _resolve_config_path(path)
    _ensure_config_file(cfg_path)

    cfg = dict(RoyalnetSettings.model_config)
    cfg["toml_file"] = cfg_path
    Bound = type(
        "RoyalnetSettingsBound",
        (RoyalnetSettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    try:
        return Bound(), cfg_path
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
    except Exception as exc:
        raise ConfigError(f"Failed to load config {cfg_path}: {exc}") from exc
