import os
from dotenv import load_dotenv
from pathlib import Path

from pydantic import BaseModel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

ROOT = Path(__file__).resolve().parents[2]
YAML_PATH = ROOT / "configs" / "app"

load_dotenv(ROOT / ".env")
env = os.getenv("APP_ENV")


class AppInfo(BaseModel):
    name: str = "Request Tracker"
    version: str = "0.1.0"


class LoggingSettings(BaseModel):
    level: str = "INFO"


class UpstreamSettings(BaseModel):
    base_url: str = "http://localhost:8000/mock"
    timeout: float = 10.0
    mock: bool = True


class PollingSettings(BaseModel):
    interval_ms: int = 1000                 # base polling interval
    min_ms: int = 1000                      # don't go lower than this
    max_ms: int = 60000                     # cap growth
    multiplier: float = 1.2                 # applied after each background poll
    max_consecutive_errors: int = 5         # stop after too many errors
    jitter_ratio: float = 0.1


class StreamSettings(BaseModel):
    done_sentinel: str = "[DONE]"
    default_phase_title: str = "Thinking"


class AppSettings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=ROOT / ".env",
        env_nested_delimiter="__",
        extra="allow",
    )

    app: AppInfo = AppInfo()
    logging: LoggingSettings = LoggingSettings()
    upstream: UpstreamSettings = UpstreamSettings()
    polling: PollingSettings = PollingSettings()
    stream: StreamSettings = StreamSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource
    ) -> tuple[PydanticBaseSettingsSource, ...]:

        yaml_settings = YamlConfigSettingsSource(
            settings_cls,
            yaml_file=[YAML_PATH / "base.yaml", YAML_PATH / f"{env}.yaml",]
        )

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            yaml_settings,
            file_secret_settings
        )


settings = AppSettings().model_dump()

if __name__ == "__main__":
    print(settings)
