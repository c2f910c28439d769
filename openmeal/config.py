"""
Configuration management for meal stores.

The configuration is stored as a TOML file in the store directory.
It specifies which providers to use, their parameters, and the store's
retention and analysis settings.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import tomli_w

from .record_store import DEFAULT_RETENTION_CAP
from .views import DailyGoals


CONFIG_FILENAME = "openmeal.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIRNAME = ".openmeal"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    retention_cap: int = DEFAULT_RETENTION_CAP

    # Analysis pipeline
    expiry_hours: float = 24
    resume_delay_seconds: float = 1.0

    # Provider configurations
    inference: ProviderConfig = field(default_factory=lambda: ProviderConfig("none"))
    health: ProviderConfig = field(default_factory=lambda: ProviderConfig("none"))

    goals: DailyGoals = field(default_factory=DailyGoals)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def meals_dir(self) -> Path:
        return self.path / "meals"

    @property
    def health_state_path(self) -> Path:
        return self.path / "health_sync.json"

    @property
    def expiry(self) -> timedelta:
        return timedelta(hours=self.expiry_hours)

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory: OPENMEAL_STORE_PATH, else ~/.openmeal."""
    env = os.environ.get("OPENMEAL_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / DEFAULT_STORE_DIRNAME


def detect_default_providers() -> dict[str, ProviderConfig]:
    """
    Detect the best default providers for the current environment.

    Inference uses Gemini when an API key (or a Vertex AI project) is
    available, otherwise "none" (meals stay in the error state until a
    provider is configured). The health datastore is opt-in.
    """
    providers = {}

    has_gemini = bool(
        os.environ.get("GEMINI_API_KEY")
        or os.environ.get("GOOGLE_API_KEY")
        or os.environ.get("GOOGLE_CLOUD_PROJECT")
    )
    if has_gemini:
        providers["inference"] = ProviderConfig("gemini", {"model": "gemini-2.5-flash"})
    else:
        providers["inference"] = ProviderConfig("none")

    providers["health"] = ProviderConfig("none")
    return providers


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with auto-detected defaults."""
    providers = detect_default_providers()

    return StoreConfig(
        path=store_path,
        inference=providers["inference"],
        health=providers["health"],
    )


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config {config_path}: {e}") from e

    store = data.get("store", {})
    analysis = data.get("analysis", {})

    # Validate version
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    retention_cap = store.get("retention_cap", DEFAULT_RETENTION_CAP)
    if not isinstance(retention_cap, int) or retention_cap < 1:
        raise ValueError(f"retention_cap must be a positive integer, got {retention_cap!r}")

    # Parse provider configs
    def parse_provider(section: dict) -> ProviderConfig:
        return ProviderConfig(
            name=section.get("name", ""),
            params={k: v for k, v in section.items() if k != "name"},
        )

    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        retention_cap=retention_cap,
        expiry_hours=float(analysis.get("expiry_hours", 24)),
        resume_delay_seconds=float(analysis.get("resume_delay_seconds", 1.0)),
        inference=parse_provider(data.get("inference", {"name": "none"})),
        health=parse_provider(data.get("health", {"name": "none"})),
        goals=DailyGoals.from_dict(data.get("goals", {})),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    # Ensure directory exists
    config.path.mkdir(parents=True, exist_ok=True)

    # Build TOML structure
    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "retention_cap": config.retention_cap,
        },
        "analysis": {
            "expiry_hours": config.expiry_hours,
            "resume_delay_seconds": config.resume_delay_seconds,
        },
        "inference": provider_to_dict(config.inference),
        "health": provider_to_dict(config.health),
        "goals": config.goals.to_dict(),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    else:
        config = create_default_config(store_path)
        save_config(config)
        return config
