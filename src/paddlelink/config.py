"""Configuration management for paddlelink."""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, TypeVar

import yaml

logger = logging.getLogger(__name__)

T = TypeVar("T")


DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


@dataclass
class RelayConfig:
    """Signaling relay transport configuration."""

    heartbeat_interval: float = 25.0  # WebSocket ping interval, seconds
    poll_timeout: float = 60.0  # Expire polling sessions idle this long
    long_poll_wait: float = 25.0  # Max time a GET poll is held open
    max_message_size: int = 65536  # bytes, larger messages get an error reply
    max_frame_size: int = 1048576  # bytes, larger WebSocket frames close the socket
    reconnect_attempts: int = 3  # Client reconnects after losing the relay
    reconnect_delay: float = 2.0  # First backoff delay, doubled per attempt
    reconnect_delay_max: float = 10.0


@dataclass
class NegotiationConfig:
    """Peer negotiation configuration."""

    timeout: float | None = None  # None = stall forever, relay carries control
    channel_label: str = "paddle-control"


@dataclass
class Config:
    """paddlelink configuration."""

    host: str = "0.0.0.0"
    port: int = 3000
    path: str = "/api/socket"
    log_level: str = "INFO"
    log_file: str | None = None
    cors_origin: str = "*"
    stun_servers: list[str] = field(default_factory=lambda: DEFAULT_STUN_SERVERS.copy())
    relay: RelayConfig = field(default_factory=RelayConfig)
    negotiation: NegotiationConfig = field(default_factory=NegotiationConfig)

    @property
    def relay_url(self) -> str:
        """WebSocket URL a local client uses to reach the relay."""
        host = "127.0.0.1" if self.host in ("0.0.0.0", "::") else self.host
        return f"ws://{host}:{self.port}{self.path}/ws"


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "paddlelink" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        data = yaml.safe_load(content)
    except yaml.YAMLError:
        return None
    if not isinstance(data, dict):
        return None
    return data


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.
    """
    data = (file_reader or _default_file_reader)(get_config_path(path))
    if data is None:
        return Config()

    relay = _section(RelayConfig, data.get("relay"))
    negotiation = _section(NegotiationConfig, data.get("negotiation"))
    top = {k: v for k, v in data.items() if k not in ("relay", "negotiation")}
    config = _section(Config, top)
    config.relay = relay
    config.negotiation = negotiation
    return config


def _section(cls: type[T], data: Any) -> T:
    """Build one config dataclass from a YAML mapping.

    Keys the dataclass does not know are logged and skipped; missing keys
    keep their defaults.
    """
    if not isinstance(data, dict):
        return cls()
    known = {f.name for f in fields(cls)}
    for key in data.keys() - known:
        logger.warning(f"Ignoring unknown config key {key!r} for {cls.__name__}")
    return cls(**{k: v for k, v in data.items() if k in known})
