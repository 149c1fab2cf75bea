# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Configuration management for livecue.
Handles loading and saving settings from a YAML config file.
"""

import logging
from pathlib import Path
from typing import Any, TypedDict

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME: str = ".livecue.yaml"


class ServerSettings(TypedDict):
    """Type definition for the HTTP host settings."""
    host: str
    port: int
    sink_size: int  # Frames queued per subscriber before it is evicted


class StreamSettings(TypedDict):
    """Type definition for client stream settings."""
    url: str  # Base URL of the livecue server
    transport: str  # "sse" or "ws"
    auto_reconnect: bool
    reconnect_interval_ms: int
    max_reconnect_attempts: int
    buffer_size: int | None  # Max transcripts kept in history (None = unbounded)


class AlignmentSettings(TypedDict):
    """Type definition for alignment settings."""
    match_threshold: float


class AgentSettings(TypedDict):
    """Type definition for the capture agent settings."""
    room: str
    participant_identity: str
    source: str  # "scripted" or "microphone"
    model_id: str  # Vosk model identifier (e.g., "vosk-en-us-small")
    audio_device: int | None
    chunk_ms: int
    auto_start: bool


class Config(TypedDict):
    """Type definition for the complete configuration."""
    server: ServerSettings
    stream: StreamSettings
    alignment: AlignmentSettings
    agent: AgentSettings
    # Script shown by the terminal teleprompter (optional)
    script_file: str | None


# Default configuration values
DEFAULT_CONFIG: Config = {
    "server": {
        "host": "127.0.0.1",
        "port": 8000,
        "sink_size": 256,
    },

    "stream": {
        "url": "http://127.0.0.1:8000",
        "transport": "sse",
        "auto_reconnect": True,
        # Fixed delay between reconnect attempts
        "reconnect_interval_ms": 3000,
        "max_reconnect_attempts": 5,
        "buffer_size": None,
    },

    "alignment": {
        "match_threshold": 0.5,
    },

    "agent": {
        "room": "default",
        "participant_identity": "livecue-agent",
        "source": "microphone",
        "model_id": "vosk-en-us-small",
        "audio_device": None,
        "chunk_ms": 100,
        # Start transcribing as soon as the server is up
        "auto_start": False,
    },

    "script_file": None,
}


def get_config_path() -> Path:
    """Get the path to the config file in the current working directory."""
    return Path.cwd() / CONFIG_FILENAME


def _deep_merge(base, override):
    """
    Deep merge two dictionaries, with override taking precedence.
    Returns a new dictionary without modifying the originals.

    Args:
        base: Base dictionary to merge from.
        override: Dictionary with values that take precedence over base.

    Returns:
        New dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        elif isinstance(value, dict):
            result[key] = _deep_merge({}, value)
        else:
            result[key] = value
    return result


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file, merged with defaults.

    Args:
        config_path: Optional path to config file. If None, uses default location.

    Returns:
        Configuration dictionary with all values (defaults + overrides from file).
    """
    if config_path is None:
        config_path = get_config_path()

    # Start with defaults
    config: dict[str, Any] = _deep_merge({}, DEFAULT_CONFIG)

    # Load from file if it exists
    if config_path.exists():
        try:
            with open(config_path, encoding='utf-8') as f:
                file_config: Any = yaml.safe_load(f)
            if isinstance(file_config, dict):
                config = _deep_merge(config, file_config)
            elif file_config is not None:
                logger.warning("Ignoring config %s: top level is not a mapping",
                               config_path)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Could not load config from %s: %s", config_path, e)

    return config  # type: ignore[return-value]


def save_config(config: Config, config_path: Path | None = None) -> bool:
    """
    Save configuration to file.

    Args:
        config: Configuration dictionary to save.
        config_path: Optional path to config file. If None, uses default location.

    Returns:
        True if save was successful, False otherwise.
    """
    if config_path is None:
        config_path = get_config_path()

    try:
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(dict(config), f, default_flow_style=False, sort_keys=False)
        return True
    except (OSError, yaml.YAMLError) as e:
        logger.error("Error saving config to %s: %s", config_path, e)
        return False


def get_server_settings(config: Config) -> ServerSettings:
    """Extract HTTP host settings from config."""
    return config.get("server", DEFAULT_CONFIG["server"]).copy()  # type: ignore[return-value]


def get_stream_settings(config: Config) -> StreamSettings:
    """
    Extract client stream settings from config.

    Args:
        config: Configuration dictionary.

    Returns:
        Stream settings dictionary.
    """
    return config.get("stream", DEFAULT_CONFIG["stream"]).copy()  # type: ignore[return-value]


def get_alignment_settings(config: Config) -> AlignmentSettings:
    """Extract alignment settings from config."""
    return config.get("alignment", DEFAULT_CONFIG["alignment"]).copy()  # type: ignore[return-value]


def get_agent_settings(config: Config) -> AgentSettings:
    """
    Extract capture agent settings from config.

    Args:
        config: Configuration dictionary.

    Returns:
        Agent settings dictionary.
    """
    return config.get("agent", DEFAULT_CONFIG["agent"]).copy()  # type: ignore[return-value]
