"""
Logging channel definitions and configuration for the IG gateway.
Provides multi-channel logging with dedicated files for different components.
"""

from enum import Enum
from typing import Dict
from pathlib import Path
from dataclasses import dataclass


class LogChannel(str, Enum):
    """Logging channels for different components."""

    APPLICATION = "application"  # General application logs
    API = "api"                  # Broker REST requests/responses
    AUTH = "auth"                # Login, refresh, account switch
    DATABASE = "database"        # Database operations
    AUDIT = "audit"              # Session lifecycle audit trail
    ERROR = "error"              # Error logs


@dataclass
class ChannelConfig:
    """Configuration for a logging channel."""

    name: str
    filename: str
    level: str = "INFO"
    max_bytes: str = "50MB"
    backup_count: int = 5

    def get_file_path(self, logs_dir: str) -> Path:
        """Get the full file path for this channel."""
        return Path(logs_dir) / self.filename


# Channel configurations
CHANNEL_CONFIGS: Dict[LogChannel, ChannelConfig] = {
    LogChannel.APPLICATION: ChannelConfig(
        name="application",
        filename="application.log",
        backup_count=10,
    ),
    LogChannel.API: ChannelConfig(
        name="api",
        filename="api.log",
        max_bytes="100MB",
        backup_count=10,
    ),
    LogChannel.AUTH: ChannelConfig(
        name="auth",
        filename="auth.log",
        backup_count=10,
    ),
    LogChannel.DATABASE: ChannelConfig(
        name="database",
        filename="database.log",
        level="WARNING",    # Only warnings and errors
    ),
    LogChannel.AUDIT: ChannelConfig(
        name="audit",
        filename="audit.log",
        max_bytes="100MB",
        backup_count=50,
    ),
    LogChannel.ERROR: ChannelConfig(
        name="error",
        filename="error.log",
        level="ERROR",
        backup_count=20,
    ),
}


def get_channel_for_component(component: str) -> LogChannel:
    """Get the appropriate logging channel for a component."""
    component_mapping = {
        "transport": LogChannel.API,
        "orchestrator": LogChannel.API,
        "client": LogChannel.API,
        "rate_limiter": LogChannel.API,
        "authenticator": LogChannel.AUTH,
        "session_holder": LogChannel.AUTH,
        "refresher": LogChannel.AUTH,
        "database": LogChannel.DATABASE,
        "market_data": LogChannel.DATABASE,
        "audit": LogChannel.AUDIT,
        "error": LogChannel.ERROR,
    }

    return component_mapping.get(component, LogChannel.APPLICATION)


def get_channel_config(channel: LogChannel) -> ChannelConfig:
    """Get configuration for a specific channel."""
    return CHANNEL_CONFIGS[channel]


def create_log_directory_structure(logs_dir: str) -> None:
    """Create the logs directory."""
    Path(logs_dir).mkdir(parents=True, exist_ok=True)
