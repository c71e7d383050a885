"""
finsync configuration management.

Supports loading from YAML files, environment variables, and keyword overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from finsync.models.connector import ConnectorType

_TRUTHY = ("1", "true", "yes")


class ConnectorConfig(BaseModel):
    """Configuration for a single connector instance."""

    id: str = Field(description="Stable connector instance id")
    type: ConnectorType
    name: str | None = None
    enabled: bool = True
    user_id: str | None = None
    bank_code: str | None = Field(default=None, description="Bank code (BLZ) for FinTS")
    options: dict[str, Any] = Field(default_factory=dict)


class FinTSConfig(BaseModel):
    """FinTS/HBCI PIN/TAN settings."""

    product_id: str = Field(
        default="9FA6681DEC0CF3046BFC2F8A6",
        description="Registered FinTS product id (or set FINSYNC_FINTS_PRODUCT_ID)",
    )
    product_version: str = "1.0.0"
    endpoints: dict[str, str] = Field(
        default_factory=dict,
        description="Bank code -> PIN/TAN URL overrides",
    )
    preferred_tan_method: str | None = None
    challenge_ttl_seconds: int = Field(default=300, ge=30)
    decoupled_message_phrases: list[str] = Field(
        default_factory=lambda: [
            "app freigeben",
            "in ihrer app",
            "pushtan",
            "s-pushtan",
            "bestätigen sie",
            "freigabe in der app",
        ]
    )
    decoupled_method_phrases: list[str] = Field(
        default_factory=lambda: ["push", "decoupled", "s-pushtan"]
    )


class N26Config(BaseModel):
    """Settings for the N26 mobile API."""

    base_url: str = "https://api.tech26.de"
    client_id: str = "android"
    client_secret: str = "secret"
    page_size: int = Field(default=500, ge=1)
    max_pages: int = Field(default=10, ge=1)
    refresh_margin_seconds: int = Field(default=300, ge=0)
    challenge_ttl_seconds: int = Field(default=300, ge=30)
    timeout: float = 30.0


class BrowserConfig(BaseModel):
    """Playwright browser settings for portal connectors."""

    headless: bool = False
    user_data_dir: str = Field(
        default_factory=lambda: str(Path.home() / ".finsync" / "browser-profile"),
        description="Persistent profile directory so portal sessions stay warm",
    )
    slow_mo_ms: int = 50
    default_timeout_ms: int = 30_000
    login_timeout_seconds: int = Field(default=120, ge=60, le=120)
    max_pagination: int = Field(default=10, ge=1)
    min_delay_ms: int = 500
    max_delay_ms: int = 1500
    locale: str = "de-DE"


class PollingConfig(BaseModel):
    """Decoupled challenge polling."""

    interval_seconds: float = Field(default=3.0, gt=0)
    jitter_seconds: float = Field(default=1.0, ge=0)
    timeout_seconds: float = Field(default=300.0, gt=0)


class ImportConfig(BaseModel):
    max_reported_errors: int = Field(default=50, ge=20)
    default_currency: str = "EUR"


class FinSyncConfig(BaseModel):
    """Root configuration for finsync."""

    connectors: list[ConnectorConfig] = Field(default_factory=list)
    fints: FinTSConfig = Field(default_factory=FinTSConfig)
    n26: N26Config = Field(default_factory=N26Config)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    imports: ImportConfig = Field(default_factory=ImportConfig)

    @classmethod
    def load(cls, config_path: str | None = None, **overrides: Any) -> FinSyncConfig:
        """Load configuration from file, env vars, and overrides.

        Priority: overrides > env vars > config file > defaults.
        """
        data: dict[str, Any] = {}

        # 1. Load from YAML file if provided
        if config_path:
            path = Path(config_path)
            if path.exists():
                with open(path) as f:
                    data = yaml.safe_load(f) or {}

        # 2. Override from environment variables
        env_product = os.environ.get("FINSYNC_FINTS_PRODUCT_ID")
        env_headless = os.environ.get("FINSYNC_HEADLESS")
        env_profile = os.environ.get("FINSYNC_BROWSER_PROFILE")

        if env_product:
            fints = data.get("fints", {})
            fints["product_id"] = env_product
            data["fints"] = fints

        if env_headless or env_profile:
            browser = data.get("browser", {})
            if env_headless:
                browser["headless"] = env_headless.lower() in _TRUTHY
            if env_profile:
                browser["user_data_dir"] = env_profile
            data["browser"] = browser

        # 3. Apply keyword overrides
        data.update(overrides)

        return cls.model_validate(data)
