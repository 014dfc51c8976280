"""
Configuration management for library-sync.

This module handles loading, validating, and providing access to the
application configuration stored in config.yaml.

The configuration file contains:
    - Spotify API credentials (client_id, client_secret) and OAuth settings
    - Output directory for the SQLite database and log files
    - Sync engine tuning: rate ceiling, batch sizes, retry policy and the
      staleness threshold used to re-enrich artists and albums

Credentials may also come from the environment (SPOTIFY_CLIENT_ID,
SPOTIFY_CLIENT_SECRET, SPOTIFY_REDIRECT_URI), including a .env file in the
working directory. Environment values take precedence over the file.

Configuration File Location:
    The config.yaml file must be in the current working directory
    when running the application, unless --config is given.

Example config.yaml:
    spotify:
      client_id: "your_client_id_here"
      client_secret: "your_client_secret_here"
      redirect_uri: "http://127.0.0.1:8888/callback"

    output:
      directory: "~/.library-sync"

    sync:
      requests_per_window: 30
      window_seconds: 60
      staleness_days: 7
      batch_sizes:
        tracks: 50
        artists: 100
        albums: 100
        playlists: 50
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from library_sync.core.exceptions import ConfigError


# Default configuration file name (always in current working directory)
CONFIG_FILENAME = "config.yaml"

DEFAULT_REDIRECT_URI = "http://127.0.0.1:8888/callback"

# Environment variables that override the spotify section
ENV_OVERRIDES = {
    "SPOTIFY_CLIENT_ID": "client_id",
    "SPOTIFY_CLIENT_SECRET": "client_secret",
    "SPOTIFY_REDIRECT_URI": "redirect_uri",
}

DEFAULT_BATCH_SIZES = {
    "tracks": 50,
    "artists": 100,
    "albums": 100,
    "playlists": 50,
}


@dataclass(frozen=True)
class SpotifyConfig:
    """
    Spotify API credentials configuration.

    These credentials are obtained from the Spotify Developer Dashboard:
    https://developer.spotify.com/dashboard

    Attributes:
        client_id: The Spotify application client ID.
        client_secret: The Spotify application client secret.
        redirect_uri: OAuth redirect URI registered for the application.
        cache_path: Where spotipy caches the OAuth token. None lets the
                    client place it in the output directory.
    """
    client_id: str
    client_secret: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    cache_path: Path | None = None


@dataclass(frozen=True)
class OutputConfig:
    """
    Output directory configuration.

    Attributes:
        directory: Absolute path holding library.db and the logs/ folder.
                   Path expansion is performed (~ is expanded to home directory).
    """
    directory: Path

    @property
    def database_path(self) -> Path:
        return self.directory / "library.db"


@dataclass(frozen=True)
class SyncConfig:
    """
    Sync engine configuration.

    Attributes:
        requests_per_window: Sliding-window request cap (N).
        window_seconds: Sliding-window duration (T).
        staleness_days: Enriched artists/albums older than this are refreshed.
        batch_sizes: Orchestrator batch size per entity type.
        max_attempts: Attempts per remote call for transient failures.
        retry_base_delay: First transient retry delay in seconds (doubles).
        rate_limit_retries: In-batch retries on HTTP 429 before the batch
                            reports rate_limited to the orchestrator.
        default_rate_limit_wait_hours: Wait assumed when a 429 carries no
                                       Retry-After header.
    """
    requests_per_window: int = 30
    window_seconds: float = 60.0
    staleness_days: float = 7.0
    batch_sizes: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_BATCH_SIZES))
    max_attempts: int = 3
    retry_base_delay: float = 2.0
    rate_limit_retries: int = 3
    default_rate_limit_wait_hours: float = 24.0

    @property
    def staleness(self) -> timedelta:
        return timedelta(days=self.staleness_days)

    @property
    def default_rate_limit_wait(self) -> timedelta:
        return timedelta(hours=self.default_rate_limit_wait_hours)

    def batch_size_for(self, entity_type: str) -> int:
        return self.batch_sizes.get(entity_type, DEFAULT_BATCH_SIZES.get(entity_type, 50))


@dataclass(frozen=True)
class Config:
    """
    Complete application configuration.

    Created by load_config() and treated as immutable.

    Attributes:
        spotify: Spotify API credentials.
        output: Output directory settings.
        sync: Sync engine settings.

    Example:
        config = load_config()
        print(f"Database: {config.output.database_path}")
        print(f"Staleness: {config.sync.staleness_days} days")
    """
    spotify: SpotifyConfig
    output: OutputConfig
    sync: SyncConfig


def load_config(config_path: Path | None = None) -> Config:
    """
    Load and validate configuration from config.yaml.

    Args:
        config_path: Optional explicit path to config file.
                     If None, looks for config.yaml in current working directory.

    Returns:
        Config: A frozen dataclass containing all configuration values.

    Raises:
        ConfigError: If the config file is not found, has invalid YAML syntax,
                     is missing required fields, or contains invalid values.

    Behavior:
        1. Load .env (if present) into the environment
        2. Locate config file (explicit path or CWD/config.yaml)
        3. Read and parse YAML content
        4. Apply SPOTIFY_* environment overrides to the spotify section
        5. Validate structure and parse each section
        6. Create and return frozen Config object

    Thread Safety:
        This function is NOT thread-safe. It should be called once at
        application startup, before any threads are created.
    """
    load_dotenv()

    # Resolve config path
    if config_path is None:
        config_path = Path.cwd() / CONFIG_FILENAME

    # Check file exists
    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found: {config_path}",
            details={"file_path": str(config_path)}
        )

    # Read file content
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            content = f.read()
    except IOError as e:
        raise ConfigError(
            f"Failed to read configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    # Parse YAML
    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML syntax in configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    # Validate raw config is a dictionary
    if not isinstance(raw_config, dict):
        raise ConfigError(
            "Configuration file must contain a YAML dictionary",
            details={"file_path": str(config_path)}
        )

    _apply_env_overrides(raw_config)
    _validate_config(raw_config)

    return Config(
        spotify=_parse_spotify_config(raw_config["spotify"]),
        output=_parse_output_config(raw_config["output"]),
        sync=_parse_sync_config(raw_config.get("sync"))
    )


def _apply_env_overrides(raw_config: dict[str, Any]) -> None:
    """Copy SPOTIFY_* environment variables into the spotify section."""
    overrides = {
        key: os.environ[env_var]
        for env_var, key in ENV_OVERRIDES.items()
        if os.environ.get(env_var)
    }
    if not overrides:
        return

    spotify_section = raw_config.get("spotify")
    if spotify_section is None:
        spotify_section = {}
        raw_config["spotify"] = spotify_section
    if isinstance(spotify_section, dict):
        spotify_section.update(overrides)


def _validate_config(raw_config: dict[str, Any]) -> None:
    """
    Validate the raw configuration dictionary structure.

    Raises:
        ConfigError: If a required section is missing or is not a mapping.
    """
    required_sections = ["spotify", "output"]

    for section in required_sections:
        if section not in raw_config:
            raise ConfigError(
                f"Missing required section: '{section}'",
                details={"missing_section": section}
            )

        if not isinstance(raw_config[section], dict):
            raise ConfigError(
                f"Section '{section}' must be a dictionary",
                details={"section": section}
            )

    if raw_config.get("sync") is not None and not isinstance(raw_config["sync"], dict):
        raise ConfigError(
            "Section 'sync' must be a dictionary",
            details={"section": "sync"}
        )


def _parse_spotify_config(spotify_section: dict[str, Any]) -> SpotifyConfig:
    """
    Parse and validate the Spotify configuration section.

    Raises:
        ConfigError: If client_id or client_secret is missing or empty.
    """
    client_id = spotify_section.get("client_id", "")
    client_secret = spotify_section.get("client_secret", "")

    if not isinstance(client_id, str) or not client_id.strip():
        raise ConfigError(
            "'spotify.client_id' must be a non-empty string",
            details={"field": "spotify.client_id"}
        )

    if not isinstance(client_secret, str) or not client_secret.strip():
        raise ConfigError(
            "'spotify.client_secret' must be a non-empty string",
            details={"field": "spotify.client_secret"}
        )

    redirect_uri = spotify_section.get("redirect_uri") or DEFAULT_REDIRECT_URI
    if not isinstance(redirect_uri, str):
        raise ConfigError(
            "'spotify.redirect_uri' must be a string",
            details={"field": "spotify.redirect_uri"}
        )

    cache_path = None
    raw_cache = spotify_section.get("cache_path")
    if raw_cache is not None:
        if not isinstance(raw_cache, str) or not raw_cache.strip():
            raise ConfigError(
                "'spotify.cache_path' must be a non-empty string or null",
                details={"field": "spotify.cache_path"}
            )
        cache_path = Path(raw_cache.strip()).expanduser().resolve()

    return SpotifyConfig(
        client_id=client_id.strip(),
        client_secret=client_secret.strip(),
        redirect_uri=redirect_uri.strip(),
        cache_path=cache_path
    )


def _parse_output_config(output_section: dict[str, Any]) -> OutputConfig:
    """
    Parse and validate the output configuration section.

    Expands ~ to home directory and converts to absolute Path.
    Does NOT create the directory (the CLI does that at startup).

    Raises:
        ConfigError: If directory is missing or empty.
    """
    directory = output_section.get("directory", "")

    if not isinstance(directory, str) or not directory.strip():
        raise ConfigError(
            "'output.directory' must be a non-empty string",
            details={"field": "output.directory"}
        )

    return OutputConfig(directory=Path(directory.strip()).expanduser().resolve())


def _parse_sync_config(sync_section: dict[str, Any] | None) -> SyncConfig:
    """
    Parse and validate the sync configuration section.

    Applies defaults if the section is missing or fields are not specified.

    Raises:
        ConfigError: If any value has the wrong type or is out of range.
    """
    if sync_section is None:
        return SyncConfig()

    values: dict[str, Any] = {}

    for name in ("requests_per_window", "max_attempts"):
        raw = sync_section.get(name)
        if raw is not None:
            values[name] = _require_positive_int(raw, f"sync.{name}")

    raw_retries = sync_section.get("rate_limit_retries")
    if raw_retries is not None:
        if isinstance(raw_retries, bool) or not isinstance(raw_retries, int) or raw_retries < 0:
            raise ConfigError(
                "'sync.rate_limit_retries' must be a non-negative integer",
                details={"field": "sync.rate_limit_retries", "value": raw_retries}
            )
        values["rate_limit_retries"] = raw_retries

    for name in ("window_seconds", "staleness_days", "retry_base_delay",
                 "default_rate_limit_wait_hours"):
        raw = sync_section.get(name)
        if raw is not None:
            values[name] = _require_positive_number(raw, f"sync.{name}")

    raw_sizes = sync_section.get("batch_sizes")
    if raw_sizes is not None:
        if not isinstance(raw_sizes, dict):
            raise ConfigError(
                "'sync.batch_sizes' must be a dictionary",
                details={"field": "sync.batch_sizes"}
            )
        batch_sizes = dict(DEFAULT_BATCH_SIZES)
        for entity_type, size in raw_sizes.items():
            if entity_type not in DEFAULT_BATCH_SIZES:
                raise ConfigError(
                    f"Unknown entity type in 'sync.batch_sizes': {entity_type}",
                    details={"field": "sync.batch_sizes", "value": entity_type}
                )
            batch_sizes[entity_type] = _require_positive_int(
                size, f"sync.batch_sizes.{entity_type}"
            )
        values["batch_sizes"] = batch_sizes

    return SyncConfig(**values)


def _require_positive_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(
            f"'{field_name}' must be a positive integer",
            details={"field": field_name, "value": value}
        )
    return value


def _require_positive_number(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(
            f"'{field_name}' must be a positive number",
            details={"field": field_name, "value": value}
        )
    return float(value)
