"""Tests for audited_db.config loading, overrides and validation."""

import configparser

import pytest

from audited_db.config import (
    PROJECT_ROOT,
    AuditedDbConfig,
    _load_from_ini,
    load_config,
    use_test_database,
    validate_config,
)
from audited_db.errors import ConfigurationError


@pytest.mark.unit
def test_defaults():
    cfg = AuditedDbConfig()

    assert cfg.database.pool_size == 20
    assert cfg.ledger.transport == "file"
    assert cfg.ledger.max_attempts == 5
    assert cfg.ledger.include_payload is True
    assert cfg.sync.enabled is True
    assert cfg.events.queue_size == 1000
    assert cfg.database.absolute_path == PROJECT_ROOT / "data" / "audited.db"


@pytest.mark.unit
def test_ini_sections_are_loaded():
    parser = configparser.ConfigParser()
    parser.read_dict(
        {
            "database": {"path": "/var/lib/audit.db", "pool_size": "4", "busy_timeout_ms": "250"},
            "ledger": {
                "transport": "HTTP",
                "base_url": "https://ledger.example.org",
                "operator_id": "0.0.1001",
                "operator_key": "k",
                "max_attempts": "3",
                "backoff_seconds": "0.1",
                "include_payload": "no",
            },
            "sync": {"enabled": "off", "retry_interval_seconds": "1.5", "verify_hashes": "false"},
            "events": {"queue_size": "10"},
            "logging": {"level": "debug", "format": "JSON"},
        }
    )

    cfg = AuditedDbConfig()
    _load_from_ini(parser, cfg)

    assert cfg.database.path == "/var/lib/audit.db"
    assert cfg.database.pool_size == 4
    assert cfg.database.busy_timeout_ms == 250
    assert cfg.ledger.transport == "http"
    assert cfg.ledger.base_url == "https://ledger.example.org"
    assert cfg.ledger.max_attempts == 3
    assert cfg.ledger.backoff_seconds == 0.1
    assert cfg.ledger.include_payload is False
    assert cfg.sync.enabled is False
    assert cfg.sync.retry_interval_seconds == 1.5
    assert cfg.sync.verify_hashes is False
    assert cfg.events.queue_size == 10
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.format == "json"


@pytest.mark.unit
def test_unknown_enum_values_are_ignored():
    parser = configparser.ConfigParser()
    parser.read_dict({"ledger": {"transport": "carrier-pigeon"}, "logging": {"format": "xml"}})

    cfg = AuditedDbConfig()
    _load_from_ini(parser, cfg)

    assert cfg.ledger.transport == "file"
    assert cfg.logging.format == "detailed"


@pytest.mark.unit
def test_config_file_argument(tmp_path):
    path = tmp_path / "custom.ini"
    path.write_text("[database]\npath = custom.db\n[sync]\nenabled = false\n", encoding="utf-8")

    cfg = load_config(path)

    assert cfg.database.path == "custom.db"
    assert cfg.sync.enabled is False


@pytest.mark.unit
def test_env_overrides_beat_the_config_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.ini"
    path.write_text("[database]\npath = from_file.db\n", encoding="utf-8")
    monkeypatch.setenv("AUDITDB_DB_PATH", "from_env.db")
    monkeypatch.setenv("AUDITDB_POOL_SIZE", "7")
    monkeypatch.setenv("AUDITDB_LEDGER_TRANSPORT", "http")
    monkeypatch.setenv("AUDITDB_LEDGER_URL", "https://ledger.example.org")
    monkeypatch.setenv("AUDITDB_LEDGER_OPERATOR_ID", "0.0.7")
    monkeypatch.setenv("AUDITDB_LEDGER_OPERATOR_KEY", "key")
    monkeypatch.setenv("AUDITDB_LEDGER_CHANNEL_ID", "0.0.42")
    monkeypatch.setenv("AUDITDB_LEDGER_INCLUDE_PAYLOAD", "false")
    monkeypatch.setenv("AUDITDB_SYNC_ENABLED", "0")
    monkeypatch.setenv("AUDITDB_LOG_LEVEL", "warning")
    monkeypatch.setenv("AUDITDB_LOG_FORMAT", "simple")

    cfg = load_config(path)

    assert cfg.database.path == "from_env.db"
    assert cfg.database.pool_size == 7
    assert cfg.ledger.transport == "http"
    assert cfg.ledger.base_url == "https://ledger.example.org"
    assert cfg.ledger.operator_id == "0.0.7"
    assert cfg.ledger.operator_key == "key"
    assert cfg.ledger.channel_id == "0.0.42"
    assert cfg.ledger.include_payload is False
    assert cfg.sync.enabled is False
    assert cfg.logging.level == "WARNING"
    assert cfg.logging.format == "simple"
    validate_config(cfg)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda cfg: setattr(cfg.database, "path", " "), "path required"),
        (lambda cfg: setattr(cfg.database, "path", ":memory:"), "memory"),
        (lambda cfg: setattr(cfg.database, "pool_size", 0), "pool_size"),
        (lambda cfg: setattr(cfg.ledger, "root", ""), "root required"),
        (lambda cfg: setattr(cfg.ledger, "transport", "http"), "base_url, operator_id, operator_key"),
        (lambda cfg: setattr(cfg.ledger, "transport", "smoke"), "Unknown ledger transport"),
        (lambda cfg: setattr(cfg.ledger, "max_attempts", 0), "max_attempts"),
    ],
)
def test_validate_config_reports_missing_settings(mutate, message):
    cfg = AuditedDbConfig()
    mutate(cfg)

    with pytest.raises(ConfigurationError, match=message):
        validate_config(cfg)


@pytest.mark.unit
def test_use_test_database_restores_paths(tmp_path):
    cfg = AuditedDbConfig()
    cfg.ledger.transport = "http"

    with use_test_database(cfg, tmp_path) as inner:
        assert inner is cfg
        assert cfg.database.path == str(tmp_path / "audited.db")
        assert cfg.ledger.root == str(tmp_path / "channels")
        assert cfg.ledger.transport == "file"

    assert cfg.database.path == "data/audited.db"
    assert cfg.ledger.root == "data/channels"
    assert cfg.ledger.transport == "http"


@pytest.mark.unit
def test_non_integer_pool_size_from_env_is_a_configuration_error(tmp_path, monkeypatch):
    path = tmp_path / "empty.ini"
    path.write_text("", encoding="utf-8")
    monkeypatch.setenv("AUDITDB_POOL_SIZE", "lots")

    with pytest.raises(ConfigurationError, match="AUDITDB_POOL_SIZE"):
        load_config(path)


@pytest.mark.unit
def test_non_numeric_ini_value_is_a_configuration_error(tmp_path):
    path = tmp_path / "bad.ini"
    path.write_text("[ledger]\nmax_attempts = several\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Invalid value"):
        load_config(path)
