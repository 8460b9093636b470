"""
Audited database configuration management.

Configuration is assembled from three sources with a clear priority order:

    1. Environment variables (highest priority) - for containerized deployments
    2. Config file (config/audited_db.ini) - for static deployments
    3. Built-in defaults (lowest priority) - sensible fallbacks

There is no module-level configuration singleton: every
:class:`~audited_db.database.AuditedDatabase` owns the
:class:`AuditedDbConfig` it was constructed with (or one produced by
:func:`load_config` at construction time).

Usage:
    from audited_db.config import load_config

    cfg = load_config()
    print(cfg.database.path)
    print(cfg.ledger.transport)

Environment Variable Mapping:
    AUDITDB_DB_PATH               -> database.path
    AUDITDB_POOL_SIZE             -> database.pool_size
    AUDITDB_LEDGER_TRANSPORT      -> ledger.transport
    AUDITDB_LEDGER_ROOT           -> ledger.root
    AUDITDB_LEDGER_URL            -> ledger.base_url
    AUDITDB_LEDGER_OPERATOR_ID    -> ledger.operator_id
    AUDITDB_LEDGER_OPERATOR_KEY   -> ledger.operator_key
    AUDITDB_LEDGER_CHANNEL_ID     -> ledger.channel_id
    AUDITDB_LEDGER_INCLUDE_PAYLOAD -> ledger.include_payload
    AUDITDB_SYNC_ENABLED          -> sync.enabled
    AUDITDB_LOG_LEVEL             -> logging.level
    AUDITDB_LOG_FORMAT            -> logging.format
"""

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from audited_db.errors import ConfigurationError

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/, data/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Config file paths
CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "audited_db.ini"
CONFIG_EXAMPLE = CONFIG_DIR / "audited_db.example.ini"


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


def _absolute(path: str) -> Path:
    p = Path(path)
    if p.is_absolute():
        return p
    return PROJECT_ROOT / p


@dataclass
class DatabaseSettings:
    """Relational store configuration."""

    path: str = "data/audited.db"
    pool_size: int = 20
    pool_timeout_seconds: float = 10.0
    busy_timeout_ms: int = 5000

    @property
    def absolute_path(self) -> Path:
        """Get absolute path to database file."""
        return _absolute(self.path)


@dataclass
class LedgerSettings:
    """External channel configuration."""

    transport: Literal["file", "http"] = "file"
    root: str = "data/channels"
    base_url: str = ""
    operator_id: str = ""
    operator_key: str = ""
    channel_id: str = ""
    timeout_seconds: float = 30.0
    max_attempts: int = 5
    backoff_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    include_payload: bool = True

    @property
    def absolute_root(self) -> Path:
        """Get absolute path to the file-channel directory."""
        return _absolute(self.root)


@dataclass
class SyncSettings:
    """Sync/replay engine configuration."""

    enabled: bool = True
    poll_interval_seconds: float = 0.5
    retry_interval_seconds: float = 5.0
    verify_hashes: bool = True


@dataclass
class EventSettings:
    """Change-notification configuration."""

    queue_size: int = 1000


@dataclass
class LoggingSettings:
    """Logging configuration.

    Applied only when the embedding application calls
    :func:`audited_db.configure_logging`; the library never installs handlers
    on its own.
    """

    level: str = "INFO"
    format: Literal["simple", "detailed", "json"] = "detailed"


@dataclass
class AuditedDbConfig:
    """
    Complete audited database configuration.

    Aggregates all settings sections.  Instances are plain data; pass one to
    :class:`~audited_db.database.AuditedDatabase` or let it call
    :func:`load_config` itself.
    """

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    events: EventSettings = field(default_factory=EventSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_bool(value: str) -> bool:
    """Parse a string value to boolean."""
    return value.lower() in ("true", "yes", "1", "on", "enabled")


def _load_from_ini(parser: configparser.ConfigParser, cfg: AuditedDbConfig) -> None:
    """Load configuration from parsed INI file into AuditedDbConfig."""
    # Database section
    if parser.has_section("database"):
        if parser.has_option("database", "path"):
            cfg.database.path = parser.get("database", "path")
        if parser.has_option("database", "pool_size"):
            cfg.database.pool_size = parser.getint("database", "pool_size")
        if parser.has_option("database", "pool_timeout_seconds"):
            cfg.database.pool_timeout_seconds = parser.getfloat("database", "pool_timeout_seconds")
        if parser.has_option("database", "busy_timeout_ms"):
            cfg.database.busy_timeout_ms = parser.getint("database", "busy_timeout_ms")

    # Ledger section
    if parser.has_section("ledger"):
        if parser.has_option("ledger", "transport"):
            val = parser.get("ledger", "transport").lower()
            if val in ("file", "http"):
                cfg.ledger.transport = val  # type: ignore[assignment]
        for name in ("root", "base_url", "operator_id", "operator_key", "channel_id"):
            if parser.has_option("ledger", name):
                setattr(cfg.ledger, name, parser.get("ledger", name))
        if parser.has_option("ledger", "timeout_seconds"):
            cfg.ledger.timeout_seconds = parser.getfloat("ledger", "timeout_seconds")
        if parser.has_option("ledger", "max_attempts"):
            cfg.ledger.max_attempts = parser.getint("ledger", "max_attempts")
        if parser.has_option("ledger", "backoff_seconds"):
            cfg.ledger.backoff_seconds = parser.getfloat("ledger", "backoff_seconds")
        if parser.has_option("ledger", "backoff_max_seconds"):
            cfg.ledger.backoff_max_seconds = parser.getfloat("ledger", "backoff_max_seconds")
        if parser.has_option("ledger", "include_payload"):
            cfg.ledger.include_payload = _parse_bool(parser.get("ledger", "include_payload"))

    # Sync section
    if parser.has_section("sync"):
        if parser.has_option("sync", "enabled"):
            cfg.sync.enabled = _parse_bool(parser.get("sync", "enabled"))
        if parser.has_option("sync", "poll_interval_seconds"):
            cfg.sync.poll_interval_seconds = parser.getfloat("sync", "poll_interval_seconds")
        if parser.has_option("sync", "retry_interval_seconds"):
            cfg.sync.retry_interval_seconds = parser.getfloat("sync", "retry_interval_seconds")
        if parser.has_option("sync", "verify_hashes"):
            cfg.sync.verify_hashes = _parse_bool(parser.get("sync", "verify_hashes"))

    # Events section
    if parser.has_section("events"):
        if parser.has_option("events", "queue_size"):
            cfg.events.queue_size = parser.getint("events", "queue_size")

    # Logging section
    if parser.has_section("logging"):
        if parser.has_option("logging", "level"):
            cfg.logging.level = parser.get("logging", "level").upper()
        if parser.has_option("logging", "format"):
            val = parser.get("logging", "format").lower()
            if val in ("simple", "detailed", "json"):
                cfg.logging.format = val  # type: ignore[assignment]


def _apply_env_overrides(cfg: AuditedDbConfig) -> None:
    """Apply environment variable overrides to configuration."""
    # Database settings
    if env_db := os.getenv("AUDITDB_DB_PATH"):
        cfg.database.path = env_db
    if env_pool := os.getenv("AUDITDB_POOL_SIZE"):
        try:
            cfg.database.pool_size = int(env_pool)
        except ValueError as exc:
            raise ConfigurationError(f"AUDITDB_POOL_SIZE must be an integer, got {env_pool!r}") from exc

    # Ledger settings
    if env_transport := os.getenv("AUDITDB_LEDGER_TRANSPORT"):
        if env_transport.lower() in ("file", "http"):
            cfg.ledger.transport = env_transport.lower()  # type: ignore[assignment]
    if env_root := os.getenv("AUDITDB_LEDGER_ROOT"):
        cfg.ledger.root = env_root
    if env_url := os.getenv("AUDITDB_LEDGER_URL"):
        cfg.ledger.base_url = env_url
    if env_operator := os.getenv("AUDITDB_LEDGER_OPERATOR_ID"):
        cfg.ledger.operator_id = env_operator
    if env_key := os.getenv("AUDITDB_LEDGER_OPERATOR_KEY"):
        cfg.ledger.operator_key = env_key
    if env_channel := os.getenv("AUDITDB_LEDGER_CHANNEL_ID"):
        cfg.ledger.channel_id = env_channel
    if env_payload := os.getenv("AUDITDB_LEDGER_INCLUDE_PAYLOAD"):
        cfg.ledger.include_payload = _parse_bool(env_payload)

    # Sync settings
    if env_sync := os.getenv("AUDITDB_SYNC_ENABLED"):
        cfg.sync.enabled = _parse_bool(env_sync)

    # Logging settings
    if env_log := os.getenv("AUDITDB_LOG_LEVEL"):
        cfg.logging.level = env_log.upper()
    if env_format := os.getenv("AUDITDB_LOG_FORMAT"):
        if env_format.lower() in ("simple", "detailed", "json"):
            cfg.logging.format = env_format.lower()  # type: ignore[assignment]


def load_config(config_file: Path | None = None) -> AuditedDbConfig:
    """
    Load configuration from all sources with proper priority.

    Priority (highest wins):
        1. Environment variables
        2. *config_file*, or config/audited_db.ini
        3. config/audited_db.example.ini (fallback for development)
        4. Built-in defaults

    Returns:
        AuditedDbConfig: Fully populated configuration object.

    Raises:
        ConfigurationError: If a numeric setting in the file or the
            environment does not parse.
    """
    cfg = AuditedDbConfig()

    if config_file is None:
        if CONFIG_FILE.exists():
            config_file = CONFIG_FILE
        elif CONFIG_EXAMPLE.exists():
            # Use example as fallback for development
            config_file = CONFIG_EXAMPLE

    if config_file is not None:
        parser = configparser.ConfigParser()
        parser.read(config_file)
        try:
            _load_from_ini(parser, cfg)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid value in {config_file}: {exc}") from exc

    # Apply environment variable overrides (highest priority)
    _apply_env_overrides(cfg)

    return cfg


def validate_config(cfg: AuditedDbConfig) -> None:
    """
    Check that everything needed to open the store and the channel is present.

    Raises:
        ConfigurationError: On a missing database path, a non-positive pool
            size, a file transport without a root directory, or an HTTP
            transport without its endpoint and operator credentials.
    """
    if not cfg.database.path or not cfg.database.path.strip():
        raise ConfigurationError("Database configuration missing: path required")
    if cfg.database.path.strip() == ":memory:":
        raise ConfigurationError("Database path must be a file; ':memory:' cannot be pooled")
    if cfg.database.pool_size < 1:
        raise ConfigurationError("Database pool_size must be at least 1")

    if cfg.ledger.transport == "file":
        if not cfg.ledger.root or not cfg.ledger.root.strip():
            raise ConfigurationError("Ledger configuration missing: root required for file transport")
    elif cfg.ledger.transport == "http":
        missing = [
            name
            for name in ("base_url", "operator_id", "operator_key")
            if not getattr(cfg.ledger, name).strip()
        ]
        if missing:
            raise ConfigurationError(
                "Ledger configuration missing: " + ", ".join(missing) + " required"
            )
    else:
        raise ConfigurationError(f"Unknown ledger transport: {cfg.ledger.transport!r}")

    if cfg.ledger.max_attempts < 1:
        raise ConfigurationError("Ledger max_attempts must be at least 1")


# =============================================================================
# TEST HELPERS
# =============================================================================


class use_test_database:
    """
    Context manager pointing a config at a temporary database and channel root.

    Usage:
        from audited_db.config import AuditedDbConfig, use_test_database

        def test_something(tmp_path):
            cfg = AuditedDbConfig()
            with use_test_database(cfg, tmp_path):
                db = AuditedDatabase(cfg)

    Args:
        cfg: The configuration object to modify in place.
        root: Directory that will hold ``audited.db`` and ``channels/``.
    """

    def __init__(self, cfg: AuditedDbConfig, root: Path | str):
        self.cfg = cfg
        self.root = Path(root)
        self.original: tuple[str, str, str] | None = None

    def __enter__(self) -> AuditedDbConfig:
        """Set up test database and channel paths."""
        self.original = (self.cfg.database.path, self.cfg.ledger.root, self.cfg.ledger.transport)
        self.cfg.database.path = str(self.root / "audited.db")
        self.cfg.ledger.root = str(self.root / "channels")
        self.cfg.ledger.transport = "file"
        return self.cfg

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Restore original paths."""
        if self.original is not None:
            self.cfg.database.path, self.cfg.ledger.root, self.cfg.ledger.transport = self.original
        return None
