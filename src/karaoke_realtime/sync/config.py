"""Configuration for the real-time synchronization transport."""

import os
from dataclasses import dataclass, asdict, replace
from typing import Tuple, Dict, Any
from pathlib import Path


LOAD_BALANCE_STRATEGIES = ("health-based", "round-robin", "least-connections")


@dataclass
class RealtimeConfig:
    """Configuration settings for the real-time transport layer."""

    # Endpoint settings
    server_url: str = "ws://localhost:3001/realtime"
    connect_timeout_seconds: float = 20.0
    handshake_timeout_seconds: float = 15.0

    # Reconnection settings
    max_reconnect_attempts: int = 8
    base_reconnect_delay_seconds: float = 1.0
    max_reconnect_delay_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.25

    # Heartbeat settings
    heartbeat_interval_seconds: float = 10.0
    heartbeat_timeout_seconds: float = 30.0

    # Codec settings
    compression_enabled: bool = True
    compression_threshold_bytes: int = 1024
    compression_min_ratio: float = 0.8
    max_payload_bytes: int = 1024 * 1024

    # Connection pool settings
    pool_enabled: bool = False
    pool_size: int = 3
    load_balance_strategy: str = "health-based"
    pool_health_check_interval_seconds: float = 30.0
    pool_probe_timeout_seconds: float = 5.0
    pool_usable_health: int = 50
    pool_retire_health: int = 30
    pool_switch_margin: int = 20
    pool_replace_delay_seconds: float = 5.0

    # Offline queue settings
    offline_queue_capacity: int = 100
    offline_max_attempts: int = 3
    drain_interval_seconds: float = 0.1

    # Synchronization audit settings
    sync_check_enabled: bool = True
    sync_check_interval_seconds: float = 60.0
    sync_stale_after_seconds: float = 300.0
    sync_check_timeout_seconds: float = 5.0
    sync_failure_threshold: int = 5
    sync_cooldown_seconds: float = 600.0
    resync_timeout_seconds: float = 120.0

    # Retry and fallback settings
    retry_max_attempts: int = 5
    retry_min_interval_seconds: float = 5.0
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    fallback_threshold: int = 10
    fallback_poll_interval_seconds: float = 30.0

    # Domain update events merged by topic key
    topic_events: Tuple[str, ...] = ("request_update", "event_update", "queue_update")

    # Logging settings
    log_level: str = "INFO"

    def validate(self) -> None:
        """Validate configuration parameters."""
        errors = []

        if not self.server_url.startswith(("ws://", "wss://")):
            errors.append(f"Server URL must use ws:// or wss://, got {self.server_url}")

        # Validate timeouts
        for name in (
            "connect_timeout_seconds", "handshake_timeout_seconds",
            "heartbeat_interval_seconds", "heartbeat_timeout_seconds",
            "pool_health_check_interval_seconds", "pool_probe_timeout_seconds",
            "sync_check_interval_seconds", "sync_check_timeout_seconds",
            "fallback_poll_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive, got {getattr(self, name)}")

        if self.heartbeat_timeout_seconds < self.heartbeat_interval_seconds:
            errors.append(
                f"Heartbeat timeout ({self.heartbeat_timeout_seconds}) must not be shorter "
                f"than the heartbeat interval ({self.heartbeat_interval_seconds})"
            )

        # Validate reconnection settings
        if self.max_reconnect_attempts < 0:
            errors.append(f"Max reconnect attempts must be non-negative, got {self.max_reconnect_attempts}")

        if self.base_reconnect_delay_seconds <= 0:
            errors.append(f"Base reconnect delay must be positive, got {self.base_reconnect_delay_seconds}")

        if self.max_reconnect_delay_seconds < self.base_reconnect_delay_seconds:
            errors.append(
                f"Max reconnect delay ({self.max_reconnect_delay_seconds}) must be >= "
                f"base delay ({self.base_reconnect_delay_seconds})"
            )

        if not (0.0 <= self.reconnect_jitter_ratio < 1.0):
            errors.append(f"Reconnect jitter ratio must be in [0, 1), got {self.reconnect_jitter_ratio}")

        # Validate codec settings
        if self.compression_threshold_bytes < 0:
            errors.append(f"Compression threshold must be non-negative, got {self.compression_threshold_bytes}")

        if not (0.0 < self.compression_min_ratio <= 1.0):
            errors.append(f"Compression ratio must be in (0, 1], got {self.compression_min_ratio}")

        if self.max_payload_bytes <= 0:
            errors.append(f"Max payload size must be positive, got {self.max_payload_bytes}")

        # Validate pool settings
        if not (1 <= self.pool_size <= 10):
            errors.append(f"Pool size must be between 1-10, got {self.pool_size}")

        if self.load_balance_strategy not in LOAD_BALANCE_STRATEGIES:
            errors.append(
                f"Load balance strategy must be one of {LOAD_BALANCE_STRATEGIES}, "
                f"got {self.load_balance_strategy}"
            )

        for name in ("pool_usable_health", "pool_retire_health", "pool_switch_margin"):
            if not (0 <= getattr(self, name) <= 100):
                errors.append(f"{name} must be between 0-100, got {getattr(self, name)}")

        # Validate queue settings
        if self.offline_queue_capacity <= 0:
            errors.append(f"Offline queue capacity must be positive, got {self.offline_queue_capacity}")

        if self.offline_max_attempts <= 0:
            errors.append(f"Offline max attempts must be positive, got {self.offline_max_attempts}")

        if self.drain_interval_seconds < 0:
            errors.append(f"Drain interval must be non-negative, got {self.drain_interval_seconds}")

        # Validate fallback settings
        if self.sync_failure_threshold <= 0:
            errors.append(f"Sync failure threshold must be positive, got {self.sync_failure_threshold}")

        if self.fallback_threshold <= 0:
            errors.append(f"Fallback threshold must be positive, got {self.fallback_threshold}")

        # Validate log level
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            errors.append(f"Log level must be one of {valid_log_levels}, got {self.log_level}")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        data = asdict(self)
        data["topic_events"] = list(self.topic_events)
        return data

    @classmethod
    def from_env(cls) -> "RealtimeConfig":
        """Create configuration from environment variables with validation."""
        def flag(name: str, default: str) -> bool:
            return os.getenv(name, default).lower() == "true"

        try:
            topic_events = os.getenv("KARAOKE_RT_TOPIC_EVENTS")
            config = cls(
                server_url=os.getenv("KARAOKE_RT_SERVER_URL", "ws://localhost:3001/realtime"),
                connect_timeout_seconds=float(os.getenv("KARAOKE_RT_CONNECT_TIMEOUT", "20.0")),
                handshake_timeout_seconds=float(os.getenv("KARAOKE_RT_HANDSHAKE_TIMEOUT", "15.0")),

                max_reconnect_attempts=int(os.getenv("KARAOKE_RT_MAX_RECONNECT_ATTEMPTS", "8")),
                base_reconnect_delay_seconds=float(os.getenv("KARAOKE_RT_BASE_RECONNECT_DELAY", "1.0")),
                max_reconnect_delay_seconds=float(os.getenv("KARAOKE_RT_MAX_RECONNECT_DELAY", "30.0")),

                heartbeat_interval_seconds=float(os.getenv("KARAOKE_RT_HEARTBEAT_INTERVAL", "10.0")),
                heartbeat_timeout_seconds=float(os.getenv("KARAOKE_RT_HEARTBEAT_TIMEOUT", "30.0")),

                compression_enabled=flag("KARAOKE_RT_COMPRESSION_ENABLED", "true"),
                compression_threshold_bytes=int(os.getenv("KARAOKE_RT_COMPRESSION_THRESHOLD", "1024")),

                pool_enabled=flag("KARAOKE_RT_POOL_ENABLED", "false"),
                pool_size=int(os.getenv("KARAOKE_RT_POOL_SIZE", "3")),
                load_balance_strategy=os.getenv("KARAOKE_RT_LOAD_BALANCE_STRATEGY", "health-based"),

                offline_queue_capacity=int(os.getenv("KARAOKE_RT_OFFLINE_QUEUE_CAPACITY", "100")),

                sync_check_enabled=flag("KARAOKE_RT_SYNC_CHECK_ENABLED", "true"),
                sync_check_interval_seconds=float(os.getenv("KARAOKE_RT_SYNC_CHECK_INTERVAL", "60.0")),

                topic_events=(
                    tuple(e.strip() for e in topic_events.split(",") if e.strip())
                    if topic_events else cls.topic_events
                ),

                log_level=os.getenv("KARAOKE_RT_LOG_LEVEL", "INFO"),
            )

            # Validate the configuration
            config.validate()
            return config

        except ValueError as e:
            if "could not convert" in str(e) or "invalid literal" in str(e):
                raise ValueError(f"Invalid environment variable format: {e}")
            raise

    @classmethod
    def from_file(cls, config_path: str) -> "RealtimeConfig":
        """Load configuration from a .env file."""
        from dotenv import load_dotenv

        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        # Load environment variables from file
        load_dotenv(config_file, override=True)

        return cls.from_env()

    @classmethod
    def for_testing(cls, **overrides) -> "RealtimeConfig":
        """Configuration with short timers, suitable for tests."""
        config = cls(
            log_level="DEBUG",
            connect_timeout_seconds=1.0,
            handshake_timeout_seconds=1.0,
            max_reconnect_attempts=3,
            base_reconnect_delay_seconds=0.01,
            max_reconnect_delay_seconds=0.05,
            heartbeat_interval_seconds=0.05,
            heartbeat_timeout_seconds=0.2,
            pool_health_check_interval_seconds=0.1,
            pool_probe_timeout_seconds=0.05,
            pool_replace_delay_seconds=0.01,
            drain_interval_seconds=0.01,
            sync_check_interval_seconds=0.05,
            sync_stale_after_seconds=0.0,
            sync_check_timeout_seconds=0.1,
            sync_cooldown_seconds=0.5,
            resync_timeout_seconds=5.0,
            retry_min_interval_seconds=0.0,
            retry_base_delay_seconds=0.01,
            retry_max_delay_seconds=0.05,
            fallback_poll_interval_seconds=0.05,
        )
        config = replace(config, **overrides)
        config.validate()
        return config
