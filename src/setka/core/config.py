"""Configuration management for Setka Image Studio.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the SETKA_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (SETKA_* prefix)
2. .env file in the project root
3. Default values defined in SetkaConfig

Example .env file:
    SETKA_GEMINI_API_KEY=your-key
    SETKA_DATA_DIR=data
    SETKA_MAX_RETRIES=5
    SETKA_SERVER_PORT=7860

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.

Usage Example
-------------
    from setka.core.config import config

    print(config.data_dir)
    print(config.initial_retry_delay)

Retry and Batch Settings
------------------------
Remote generation calls are retried on rate-limit and transient failures:
- max_retries: retries after the first attempt (5 means 6 attempts total)
- initial_retry_delay: seconds before the first retry, doubled each time
- batch_request_delay: pause between serial requests in a multi-image batch
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SetkaConfig(BaseSettings):
    """Main configuration for Setka Image Studio.

    Values are loaded from environment variables with the SETKA_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Storage:
        data_dir : Path
            Directory holding the SQLite account database
        db_filename : str
            Database file name inside data_dir

    Admin Account:
        admin_username : str
            Username of the protected admin account
        admin_password : str | None
            Password of the admin account.  No default: while unset the admin
            account is not provisioned and admin login is refused
        admin_credits : int
            Credit balance given to the admin account on provisioning

    Remote Generation:
        gemini_api_key : str | None
            Fallback API key used when a session has no key of its own
        gemini_model : str
            Model used for text-to-image and image variation calls
        imagen_model : str
            Model used for multi-image Imagen calls
        max_retries : int
            Retries after the first attempt on retriable failures
        initial_retry_delay : float
            Seconds before the first retry (doubles per attempt)
        batch_request_delay : float
            Seconds between serial requests of one batch

    Server:
        server_host : str
            Bind address for uvicorn
        server_port : int
            Port for uvicorn (1024-65535)
        log_level : str
            Root logging level applied by the CLI entry point

    Examples
    --------
        >>> custom_config = SetkaConfig(data_dir="/tmp/setka", max_retries=2)
        >>> custom_config.db_path
        PosixPath('/tmp/setka/setka.db')
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SETKA_",
        case_sensitive=False,
    )

    # Storage
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory holding the account database",
    )
    db_filename: str = Field(
        default="setka.db",
        description="SQLite database file name inside data_dir",
    )

    # Admin account
    admin_username: str = Field(
        default="SeTkaProject",
        description="Username of the protected admin account",
    )
    admin_password: str | None = Field(
        default=None,
        description="Password of the admin account; the admin is disabled while unset",
    )
    admin_credits: int = Field(default=999999, ge=0)

    # Remote generation
    gemini_api_key: str | None = Field(
        default=None,
        description="Fallback Gemini API key when the user has none",
    )
    gemini_model: str = Field(
        default="gemini-2.5-flash-image",
        description="Gemini model for text-to-image and variations",
    )
    imagen_model: str = Field(
        default="imagen-4.0-generate-001",
        description="Imagen model for multi-image generation",
    )
    max_retries: int = Field(
        default=5,
        description="Retries after the first attempt (5 means 6 attempts)",
        ge=0,
        le=10,
    )
    initial_retry_delay: float = Field(
        default=2.0,
        description="Seconds before the first retry, doubled each attempt",
        ge=0.0,
    )
    batch_request_delay: float = Field(
        default=2.5,
        description="Seconds between serial requests in a batch",
        ge=0.0,
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=7860,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root logging level for the CLI entry point",
    )

    def __init__(self, **kwargs):
        """Initialize configuration and create the data directory.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def db_path(self) -> Path:
        """Full path of the SQLite account database."""
        return self.data_dir / self.db_filename


# Global configuration instance, loaded from SETKA_* variables and .env.
config = SetkaConfig()
