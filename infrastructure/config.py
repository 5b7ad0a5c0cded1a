"""
Threadline configuration.

Loaded once at startup from config/threadline.toml into frozen msgspec
structs, then handed to the components that need it.

Resolution order: explicit path -> config/threadline.toml -> defaults,
then environment overrides:
    THREADLINE_STORAGE_PATH       storage.path
    THREADLINE_AUTOSAVE_INTERVAL  autosave.interval_seconds
    THREADLINE_LOG_LEVEL          logging.level

Usage:
    from infrastructure.config import load_config, configure_logging

    config = load_config()
    configure_logging(config.logging)
"""
from typing import Any, Dict, Optional
from pathlib import Path
import logging
import os
import tomllib
import warnings

import msgspec


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "threadline.toml"


# =============================================================================
# CONFIGURATION SECTIONS
# =============================================================================

class StorageConfig(msgspec.Struct, kw_only=True, frozen=True):
    """Where snapshots live."""
    path: str = "data/threadline.db"              # SQLite file
    key: str = "threadline-app-state"             # working snapshot slot
    default_key: str = "threadline-default-state"  # template snapshot slot


class AutoSaveConfig(msgspec.Struct, kw_only=True, frozen=True):
    enabled: bool = True
    interval_seconds: float = 30.0


class PreviewConfig(msgspec.Struct, kw_only=True, frozen=True):
    """Timings for the preview's scheduled tasks (milliseconds)."""
    frame_interval_ms: float = 16.0
    scroll_delay_ms: float = 100.0     # test-mode entry waits for layout
    scroll_min_ms: float = 300.0
    scroll_max_ms: float = 800.0
    flash_ms: float = 2000.0           # highlight after scrollToMessage


class LoggingConfig(msgspec.Struct, kw_only=True, frozen=True):
    level: str = "INFO"
    journal_size: int = 1000
    journal_path: Optional[str] = None  # JSONL event journal directory


class ThreadlineConfig(msgspec.Struct, kw_only=True, frozen=True):
    storage: StorageConfig = msgspec.field(default_factory=StorageConfig)
    autosave: AutoSaveConfig = msgspec.field(default_factory=AutoSaveConfig)
    preview: PreviewConfig = msgspec.field(default_factory=PreviewConfig)
    logging: LoggingConfig = msgspec.field(default_factory=LoggingConfig)


# =============================================================================
# LOADING
# =============================================================================

def load_toml_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Read the raw TOML table.

    Returns:
        Dict with all configuration sections ({} if unreadable)
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        if path is not None:
            warnings.warn(f"Config file not found: {config_path}")
        return {}
    except (OSError, tomllib.TOMLDecodeError) as e:
        warnings.warn(f"Failed to load config from TOML: {e}")
        return {}


def apply_env_overrides(config: ThreadlineConfig, env: Optional[Dict[str, str]] = None) -> ThreadlineConfig:
    """Overlay THREADLINE_* environment variables."""
    env = os.environ if env is None else env
    replace = msgspec.structs.replace

    storage_path = env.get("THREADLINE_STORAGE_PATH")
    if storage_path:
        config = replace(config, storage=replace(config.storage, path=storage_path))

    interval = env.get("THREADLINE_AUTOSAVE_INTERVAL")
    if interval:
        try:
            config = replace(config, autosave=replace(config.autosave, interval_seconds=float(interval)))
        except ValueError:
            warnings.warn(f"Ignoring THREADLINE_AUTOSAVE_INTERVAL={interval!r}")

    level = env.get("THREADLINE_LOG_LEVEL")
    if level:
        config = replace(config, logging=replace(config.logging, level=level.upper()))

    return config


def load_config(path: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> ThreadlineConfig:
    """
    Load configuration with TOML -> defaults fallback and env overrides.

    A TOML table that fails validation (wrong types, unknown shapes) falls
    back to defaults with a warning.
    """
    raw = load_toml_config(path)
    try:
        config = msgspec.convert(raw, type=ThreadlineConfig)
    except msgspec.ValidationError as e:
        warnings.warn(f"Invalid configuration, using defaults: {e}")
        config = ThreadlineConfig()
    return apply_env_overrides(config, env)


def configure_logging(config: LoggingConfig) -> None:
    """Root logging setup for CLI entry points."""
    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - [%(name)s] - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
