"""Environment settings powered by Pydantic BaseSettings."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from falconnect.config import HttpClientConfig, PresetName, load_config


class ClientSettings(BaseSettings):
    """Client configuration sourced from ``FALCONNECT_*`` variables and .env."""

    model_config = SettingsConfigDict(
        env_prefix="FALCONNECT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    preset: PresetName = "default"
    config_file: Path | None = None
    user_agent: str | None = None
    log_level: str = Field(default="INFO", pattern=r"(?i)^(debug|info|warning|error)$")
    log_json: bool = True

    def build_config(self) -> HttpClientConfig:
        """Resolve the effective client configuration.

        A config file wins over the preset; the user agent from the
        environment overrides both.

        Raises:
            ConfigValidationError: If the config file is invalid.
        """
        if self.config_file is not None:
            config = load_config(self.config_file)
        else:
            config = HttpClientConfig.preset(self.preset)

        if self.user_agent:
            config = config.copy_with(user_agent=self.user_agent)
        return config
