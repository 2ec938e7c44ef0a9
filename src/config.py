"""Application configuration loaded from environment variables."""

import json
import logging
import sys
from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Scope lists accept JSON (``["a", "b"]``) or a space/comma separated string.
ScopeList = Annotated[list[str] | None, NoDecode]


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    A provider is enabled when its client ID is set.
    """

    # --- App ---
    debug: bool = False
    log_level: str = "INFO"

    # --- Garmin ---
    garmin_client_id: str = ""
    garmin_client_secret: str = ""  # server-side only, never expose to client
    garmin_redirect_uri: str = "http://localhost:3000/auth/garmin/callback"
    garmin_scopes: ScopeList = None  # None = adapter defaults

    # --- Fitbit ---
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""
    fitbit_redirect_uri: str = "http://localhost:3000/auth/fitbit/callback"
    fitbit_scopes: ScopeList = None

    # --- Token storage ---
    token_store_dsn: str = ""  # postgres DSN; empty = in-memory store

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @field_validator("garmin_scopes", "fitbit_scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value):
        if not isinstance(value, str):
            return value
        text = value.strip()
        if not text:
            return None
        if text.startswith("["):
            return json.loads(text)
        return text.replace(",", " ").split()


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """Install the root log format.  Call once from the host application."""
    s = settings or get_settings()
    logging.basicConfig(
        level=logging.DEBUG if s.debug else s.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
