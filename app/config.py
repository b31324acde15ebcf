from __future__ import annotations

import os
from pathlib import Path
from typing import ClassVar, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource, YamlConfigSettingsSource

from domain.models import PLACEHOLDER_BLOCK_PREFIX, MerchantType

DEFAULT_CONFIG_PATH = Path("config/funnel/app.yaml")


class EditorSettings(BaseModel):
    placeholder_prefix: str = Field(default=PLACEHOLDER_BLOCK_PREFIX, min_length=1)
    stage_id_prefix: str = Field(default="stage_", min_length=1)
    upsell_option_text: str = "Upsell"
    downsell_option_text: str = "Downsell"
    style_seed: Optional[int] = None
    default_merchant_type: MerchantType = "qualification"

    @field_validator("upsell_option_text", "downsell_option_text", mode="before")
    @classmethod
    def normalize_option_text(cls, value: object) -> str:
        text = str(value or "").strip()
        if not text:
            msg = "editor option texts must not be blank"
            raise ValueError(msg)
        return text


class StorageSettings(BaseModel):
    flows_dir: Path = Path("data/flows")


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FUNNEL_", env_nested_delimiter="__")

    editor: EditorSettings = EditorSettings()
    storage: StorageSettings = StorageSettings()

    _yaml_path: ClassVar[Path | None] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources: list[PydanticBaseSettingsSource] = [
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        ]
        if cls._yaml_path:
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=cls._yaml_path))
        return tuple(sources)


def load_settings(config_path: Path | None = None) -> AppSettings:
    env_path = os.getenv("FUNNEL_CONFIG_PATH")
    resolved_path: Path | None = None

    if config_path is not None:
        resolved_path = config_path
    elif env_path:
        resolved_path = Path(env_path)
    elif DEFAULT_CONFIG_PATH.exists():
        resolved_path = DEFAULT_CONFIG_PATH

    previous = AppSettings._yaml_path
    try:
        if resolved_path is not None:
            if not resolved_path.exists():
                msg = f"Config file not found: {resolved_path}"
                raise FileNotFoundError(msg)
            AppSettings._yaml_path = resolved_path
        return AppSettings()
    finally:
        AppSettings._yaml_path = previous
