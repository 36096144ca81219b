from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal, get_args

import streamlit as st
from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, InitSettingsSource, PydanticBaseSettingsSource, SettingsConfigDict

CONFIG_FILE_NAME = "settings.json"
DB_FILE_NAME = "app.db"
ENV_DATA_DIR = "LOT_LEDGER_DATA_DIR"
ENV_PREFIX = "LOT_LEDGER_"

SaleNumberFormat = Literal["auto-mmyyyy", "uuid-short"]
DeliveryEditMode = Literal["note-only", "forbidden"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

SALE_NUMBER_FORMATS = get_args(SaleNumberFormat)
DELIVERY_EDIT_MODES = get_args(DeliveryEditMode)


def _default_data_dir() -> Path:
    return Path.home() / ".lot_ledger"


def _load_persisted_settings(data_dir: Path) -> dict:
    cfg = data_dir / CONFIG_FILE_NAME
    if cfg.exists():
        try:
            payload = json.loads(cfg.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return payload if isinstance(payload, dict) else {}
    return {}


class _SettingsFileSource(PydanticBaseSettingsSource):
    """Tunables saved in settings.json of the data directory being loaded."""

    def __init__(self, settings_cls: type[BaseSettings], init_settings: InitSettingsSource) -> None:
        super().__init__(settings_cls)
        data_dir = init_settings.init_kwargs.get("data_dir")
        self._values = _load_persisted_settings(Path(data_dir)) if data_dir else {}

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._values.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return {
            name: self._values[name]
            for name in self.settings_cls.model_fields
            if name != "data_dir" and name in self._values
        }


class Settings(BaseSettings):
    """
    Settings for one data directory.

    Each tunable comes from the LOT_LEDGER_<FIELD> environment variable if
    set, else from settings.json in the data directory, else the default.
    """

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, frozen=True, extra="ignore")

    data_dir: Path
    currency: str = "EUR"

    # Inventory
    min_kg_threshold: float = Field(default=5.0, ge=0)
    allow_zero_price_sales: bool = True
    delivery_edit_mode: DeliveryEditMode = "note-only"

    # Sales
    sale_number_format: SaleNumberFormat = "auto-mmyyyy"
    max_commit_retries: int = Field(default=3, ge=1)

    # Presentation
    decimals_kg: int = Field(default=3, ge=0)
    decimals_eur: int = Field(default=2, ge=0)

    # Logging
    log_level: LogLevel = "INFO"
    log_format: Literal["console", "json"] = "console"

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: Any) -> str:
        return str(v).strip().upper()

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILE_NAME

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # data_dir always comes from the caller; environment beats the file.
        return (init_settings, env_settings, _SettingsFileSource(settings_cls, init_settings))


def load_settings(data_dir: Path) -> Settings:
    """Settings for a data directory, without touching Streamlit. Invalid values raise ValueError."""
    data_dir = Path(data_dir).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)
    return Settings(data_dir=data_dir)


def persist_settings(data_dir_str: str, **tunables) -> None:
    """Write the data directory (and any given tunables) to its settings.json."""
    data_dir = Path(data_dir_str).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    unknown = set(tunables) - set(Settings.model_fields)
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}.")

    cfg = data_dir / CONFIG_FILE_NAME
    payload = _load_persisted_settings(data_dir)
    payload["data_dir"] = str(data_dir)
    payload.update(tunables)
    cfg.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def persist_data_dir(data_dir_str: str) -> None:
    persist_settings(data_dir_str)

    # Update session for immediate effect
    st.session_state["lot_ledger_data_dir"] = str(Path(data_dir_str).expanduser().resolve())


def resolve_data_dir() -> Path:
    # Priority order:
    # 1) Session state (set via Data Management page)
    # 2) Environment variable
    # 3) Persisted settings in default folder
    # 4) Default folder
    if "lot_ledger_data_dir" in st.session_state:
        return Path(st.session_state["lot_ledger_data_dir"]).expanduser().resolve()
    if os.getenv(ENV_DATA_DIR):
        return Path(os.getenv(ENV_DATA_DIR, "")).expanduser().resolve()
    default_dir = _default_data_dir()
    persisted = _load_persisted_settings(default_dir)
    return Path(persisted.get("data_dir", default_dir)).expanduser().resolve()


@st.cache_resource
def get_settings() -> Settings:
    return load_settings(resolve_data_dir())
