"""
Configuration management and validation for Parley.

Provides configuration loading, validation, and management for the chat
transport core, the backend adapter, logging and observability.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from parley.models.connection_state import TransportMode


class ObservabilityConfig(BaseModel):
    """Configuration for observability settings."""
    enabled: bool = False
    service_name: str = "parley-chat-client"
    service_version: str = "1.0.0"
    environment: str = "development"
    otlp_endpoint: str = "http://localhost:4317"
    trace_sampling_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    export_timeout: int = Field(default=30, gt=0)
    resource_attributes: Dict[str, str] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    """Configuration for logging settings."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="structured", pattern="^(structured|simple)$")
    directory: str = "~/.parley/logs"
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    backup_count: int = Field(default=5, ge=1)
    include_trace: bool = True
    environment: str = "development"
    file_logging: bool = True


class ChatTransportConfig(BaseModel):
    """Tuning for the persistent/polling transports of one chat session.

    All intervals and timeouts are milliseconds.
    """
    mode: TransportMode = TransportMode.AUTO

    # Polling intervals
    base_poll_interval_ms: int = Field(default=3000, gt=0)
    idle_poll_interval_ms: int = Field(default=10000, gt=0)
    active_poll_interval_ms: int = Field(default=2000, gt=0)
    typing_window_ms: int = Field(default=5000, ge=0)
    active_window_ms: int = Field(default=30000, ge=0)
    idle_after_ms: int = Field(default=30000, ge=0)
    min_poll_timeout_ms: int = Field(default=2000, gt=0)

    # Polling failures
    max_consecutive_poll_failures: int = Field(default=3, ge=1)
    poll_backoff_base_ms: int = Field(default=1000, gt=0)
    poll_backoff_max_ms: int = Field(default=30000, gt=0)

    # Persistent connection
    connect_timeout_ms: int = Field(default=10000, gt=0)
    max_reconnect_attempts: int = Field(default=3, ge=1)
    reconnect_delay_ms: int = Field(default=1000, ge=0)

    # Recovery probes while polling
    recovery_probe_interval_ms: int = Field(default=60000, gt=0)
    max_recovery_probes: int = Field(default=5, ge=0)

    # Message sends
    send_timeout_ms: int = Field(default=10000, gt=0)
    send_max_retries: int = Field(default=4, ge=0)
    send_retry_base_ms: int = Field(default=1000, ge=0)
    send_retry_max_ms: int = Field(default=8000, ge=0)

    # Reconciliation of unechoed server copies
    reconcile_window_ms: int = Field(default=30000, ge=0)

    @model_validator(mode='after')
    def validate_interval_order(self):
        """Active polling must be at least as fast as base, base at least as fast as idle."""
        if not (self.active_poll_interval_ms <= self.base_poll_interval_ms <= self.idle_poll_interval_ms):
            raise ValueError(
                "Polling intervals must satisfy active <= base <= idle "
                f"({self.active_poll_interval_ms}, {self.base_poll_interval_ms}, {self.idle_poll_interval_ms})"
            )
        if self.poll_backoff_base_ms > self.poll_backoff_max_ms:
            raise ValueError("poll_backoff_base_ms cannot exceed poll_backoff_max_ms")
        return self


class BackendConfig(BaseModel):
    """Configuration for the HTTP/WebSocket chat backend."""
    base_url: str = "http://localhost:8061"
    messages_path: str = "/api/v1/admin/chat/messages"
    websocket_path: str = "/api/v1/admin/chat/ws"
    auth_token: Optional[str] = None
    request_timeout_s: float = Field(default=10.0, gt=0)
    page_limit: int = Field(default=100, ge=1, le=1000)
    websocket_ping_interval_s: float = Field(default=30.0, gt=0)
    websocket_ping_timeout_s: float = Field(default=10.0, gt=0)

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, v):
        """Only http(s) base URLs are supported."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must start with http:// or https://: {v}")
        return v.rstrip("/")


class ParleyConfig(BaseModel):
    """Main Parley configuration."""
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    transport: ChatTransportConfig = Field(default_factory=ChatTransportConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)

    # Global settings
    debug: bool = False
    config_file_path: Optional[str] = None


class ConfigurationManager:
    """Manages Parley configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.config: Optional[ParleyConfig] = None

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        # Check environment variable first
        if "PARLEY_CONFIG_PATH" in os.environ:
            return os.environ["PARLEY_CONFIG_PATH"]

        # Check standard locations
        candidates = [
            "~/.parley/config.yaml",
            "./config/parley.yaml",
            "./parley.yaml"
        ]

        for candidate in candidates:
            path = Path(candidate).expanduser()
            if path.exists():
                return str(path)

        # Return default location
        return "~/.parley/config.yaml"

    def load_config(self, config_path: Optional[str] = None) -> ParleyConfig:
        """Load and validate configuration from file."""
        if config_path:
            self.config_path = config_path

        config_file = Path(self.config_path).expanduser()

        if not config_file.exists():
            # Create default configuration
            self._create_default_config(config_file)

        try:
            with open(config_file, 'r') as f:
                config_data = yaml.safe_load(f) or {}

            # Merge with environment variables
            config_data = self._merge_environment_config(config_data)

            # Validate and create configuration object
            self.config = ParleyConfig(**config_data)
            self.config.config_file_path = str(config_file)

            return self.config

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_file}: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error loading configuration: {e}")

    def _create_default_config(self, config_file: Path) -> None:
        """Create a default configuration file."""
        config_file.parent.mkdir(parents=True, exist_ok=True)

        default_config = {
            "observability": {
                "enabled": False,
                "service_name": "parley-chat-client",
                "environment": "development",
                "otlp_endpoint": os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
            },
            "logging": {
                "level": os.getenv("PARLEY_LOG_LEVEL", "INFO"),
                "directory": "~/.parley/logs"
            },
            "transport": {
                "mode": "auto",
                "base_poll_interval_ms": 3000,
                "idle_poll_interval_ms": 10000,
                "active_poll_interval_ms": 2000,
                "max_reconnect_attempts": 3,
                "recovery_probe_interval_ms": 60000,
                "max_recovery_probes": 5
            },
            "backend": {
                "base_url": os.getenv("PARLEY_API_URL", "http://localhost:8061"),
                "messages_path": "/api/v1/admin/chat/messages",
                "websocket_path": "/api/v1/admin/chat/ws"
            }
        }

        with open(config_file, 'w') as f:
            yaml.dump(default_config, f, default_flow_style=False, indent=2)

    def _merge_environment_config(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration with environment variables."""
        env_mappings = {
            "PARLEY_LOG_LEVEL": ["logging", "level"],
            "PARLEY_CHAT_MODE": ["transport", "mode"],
            "PARLEY_API_URL": ["backend", "base_url"],
            "PARLEY_AUTH_TOKEN": ["backend", "auth_token"],
            "PARLEY_DEBUG": ["debug"],
            "OTEL_EXPORTER_OTLP_ENDPOINT": ["observability", "otlp_endpoint"]
        }

        for env_var, config_path in env_mappings.items():
            if env_var in os.environ:
                value = os.environ[env_var]

                # Type conversion for specific fields
                if env_var == "PARLEY_DEBUG":
                    value = value.lower() in ("true", "1", "yes")
                elif env_var == "PARLEY_CHAT_MODE":
                    value = value.lower()

                # Set nested configuration value
                current = config_data
                for key in config_path[:-1]:
                    current = current.setdefault(key, {})
                current[config_path[-1]] = value

        return config_data

    def get_config(self) -> ParleyConfig:
        """Get the loaded configuration."""
        if self.config is None:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self.config

    def validate_config(self) -> List[str]:
        """Validate the current configuration and return any warnings."""
        warnings = []
        config = self.get_config()

        # Check for common configuration issues
        if config.debug and config.observability.environment == "production":
            warnings.append("Debug mode enabled in production environment")

        if not config.backend.auth_token:
            warnings.append("No backend auth token configured; requests will be unauthenticated")

        if config.backend.base_url.startswith("http://") and config.observability.environment == "production":
            warnings.append("Backend base_url uses plain http in production")

        transport = config.transport
        if transport.mode == TransportMode.POLLING:
            warnings.append("Transport mode forced to polling; automatic recovery probes are disabled")
        elif transport.max_recovery_probes == 0:
            warnings.append("max_recovery_probes is 0; only manual retry can restore the persistent channel")

        if transport.connect_timeout_ms >= transport.recovery_probe_interval_ms:
            warnings.append("connect_timeout_ms is not shorter than recovery_probe_interval_ms")

        return warnings


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors."""
    pass


def initialize_config(config_path: Optional[str] = None) -> ConfigurationManager:
    """Create a configuration manager and load its file."""
    config_manager = ConfigurationManager(config_path)
    config_manager.load_config()
    return config_manager
