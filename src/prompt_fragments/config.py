"""Runtime settings for the fragment store, read from ``PROMPT_FRAGMENTS_*`` env vars."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Storage locations and lock behavior.

    Example::

        PROMPT_FRAGMENTS_DATA_DIR=/srv/prompts
        PROMPT_FRAGMENTS_LOCK_TIMEOUT=2.5
    """

    model_config = SettingsConfigDict(env_prefix="PROMPT_FRAGMENTS_", extra="ignore")

    data_dir: Path = Path("data")
    lock_timeout: float = Field(default=10.0, gt=0)
    history_filename: str = Field(default="prompt_history.json", min_length=1)
    phases_filename: str = Field(default="phases.json", min_length=1)

    @property
    def history_path(self) -> Path:
        return self.data_dir / self.history_filename

    @property
    def phases_path(self) -> Path:
        return self.data_dir / self.phases_filename


@lru_cache
def get_settings() -> Settings:
    return Settings()
