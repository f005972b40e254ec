"""Application settings using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    app_name: str = "CodeApply"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # ==========================================================================
    # API
    # ==========================================================================
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: list[str] = Field(default=["http://localhost:3000"])
    stream_format: Literal["ndjson", "sse"] = "ndjson"

    # ==========================================================================
    # Sandbox provider selection
    # ==========================================================================
    sandbox_provider: Literal["sandy", "local"] = "sandy"

    # Sandy (remote sandbox HTTP service)
    sandy_base_url: str = Field(default="")
    sandy_api_key: str = Field(default="")
    sandy_workdir: str = "/app"
    sandy_request_timeout_seconds: float = 30.0
    sandy_exec_timeout_seconds: float = 120.0
    sandy_vite_port: int = 5173
    sandy_vite_startup_delay_seconds: float = 7.0

    # Local (development backend rooted in a directory)
    local_sandbox_root: str = "~/.codeapply/sandboxes"
    sandbox_timeout_seconds: int = 60
    sandbox_allowed_commands: list[str] = Field(
        default=["npm", "npx", "node", "mkdir", "ls", "cat", "echo", "pwd", "pkill"]
    )

    # ==========================================================================
    # Sandbox lifecycle
    # ==========================================================================
    sandbox_retention_seconds: int = 60 * 60  # 1 hour
    sandbox_cleanup_interval_seconds: int = 5 * 60
    serialize_sandbox_applies: bool = True
    dev_server_restart_cooldown_seconds: float = 5.0

    # Creation retry
    sandbox_create_timeout_seconds: float = 60.0
    sandbox_setup_timeout_seconds: float = 30.0
    sandbox_create_max_attempts: int = 3
    retry_base_delay_seconds: float = 2.0
    retry_max_delay_seconds: float = 10.0

    # ==========================================================================
    # Packages
    # ==========================================================================
    package_installer_url: str = Field(default="")
    package_install_timeout_seconds: float = 60.0
    use_legacy_peer_deps: bool = True
    preinstalled_packages: list[str] = Field(default=["react", "react-dom"])

    # ==========================================================================
    # Files
    # ==========================================================================
    protected_config_files: list[str] = Field(
        default=[
            "tailwind.config.js",
            "vite.config.js",
            "package.json",
            "package-lock.json",
            "tsconfig.json",
            "postcss.config.js",
        ]
    )

    # ==========================================================================
    # Morph Fast Apply (targeted edits)
    # ==========================================================================
    morph_enabled: bool = True
    morph_api_key: str = Field(default="")
    morph_base_url: str = "https://api.morphllm.com/v1"
    morph_model: str = "morph-v3-large"
    morph_timeout_seconds: float = 60.0

    # ==========================================================================
    # Missing-import auto-completion
    # ==========================================================================
    autocomplete_url: str = Field(default="")
    autocomplete_model: str = "claude-sonnet-4-20250514"
    autocomplete_timeout_seconds: float = 120.0

    @property
    def morph_active(self) -> bool:
        """Whether targeted edits can be applied at all."""
        return self.morph_enabled and bool(self.morph_api_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
