"""
Tests for settings loading and logging setup
"""

import logging

import pytest

from shelfcast.config import Settings, load_settings
from shelfcast.logging_config import setup_logging


def test_defaults():
    settings = load_settings(environ={}, load_env_file=False)

    assert isinstance(settings, Settings)
    assert settings.engine.cold_start_threshold == 0.3
    assert settings.engine.cold_start_algorithms == {"default": "popular", "trending": "trending"}
    assert settings.tracker.batch_size == 100
    assert settings.tracker.behavior_thresholds == {"click": 5}
    assert settings.service.retention_days == 30
    assert settings.cache.default_ttl_s == 300
    assert settings.port == 8000


def test_yaml_file_is_merged(tmp_path):
    config_file = tmp_path / "shelfcast.yaml"
    config_file.write_text(
        "engine:\n"
        "  cold_start_threshold: 0.4\n"
        "  cold_start_algorithms:\n"
        "    default: trending\n"
        "tracker:\n"
        "  batch_size: 50\n"
        "  behavior_thresholds:\n"
        "    click: 8\n"
        "    view: 30\n"
        "port: 9000\n"
    )

    settings = load_settings(str(config_file), environ={})

    assert settings.engine.cold_start_threshold == 0.4
    assert settings.engine.cold_start_algorithms == {"default": "trending"}
    assert settings.tracker.batch_size == 50
    assert settings.tracker.behavior_thresholds == {"click": 8, "view": 30}
    assert settings.tracker.flush_interval_s == 5.0
    assert settings.port == 9000


def test_config_path_from_environment(tmp_path):
    config_file = tmp_path / "settings.yaml"
    config_file.write_text("service:\n  retention_days: 14\n")

    settings = load_settings(environ={"SHELFCAST_CONFIG": str(config_file)})

    assert settings.service.retention_days == 14


def test_unknown_keys_are_ignored(tmp_path, caplog):
    config_file = tmp_path / "shelfcast.yaml"
    config_file.write_text("engine:\n  warp_speed: 9\nport: 8100\n")

    with caplog.at_level(logging.WARNING, logger="shelfcast.config"):
        settings = load_settings(str(config_file), environ={})

    assert settings.port == 8100
    assert not hasattr(settings.engine, "warp_speed")
    assert "warp_speed" in caplog.text


def test_environment_overrides_file(tmp_path):
    config_file = tmp_path / "shelfcast.yaml"
    config_file.write_text("tracker:\n  batch_size: 50\n")

    settings = load_settings(str(config_file), environ={
        "SHELFCAST_TRACKER__BATCH_SIZE": "200",
        "SHELFCAST_ENGINE__COLD_START_THRESHOLD": "0.5",
        "SHELFCAST_SERVICE__ENABLE_MAINTENANCE": "false",
        "SHELFCAST_LOG_LEVEL": "DEBUG",
        "SHELFCAST_NOT_A_SECTION__FIELD": "1",
        "UNRELATED": "x",
    })

    assert settings.tracker.batch_size == 200
    assert settings.engine.cold_start_threshold == 0.5
    assert settings.service.enable_maintenance is False
    assert settings.log_level == "DEBUG"


def test_invalid_environment_value():
    with pytest.raises(ValueError, match="SHELFCAST_TRACKER__BATCH_SIZE"):
        load_settings(environ={"SHELFCAST_TRACKER__BATCH_SIZE": "lots"})


def test_file_must_hold_a_mapping(tmp_path):
    config_file = tmp_path / "shelfcast.yaml"
    config_file.write_text("- just\n- a list\n")

    with pytest.raises(ValueError):
        load_settings(str(config_file), environ={})


def test_setup_logging_quiets_noisy_loggers():
    setup_logging("INFO")
    assert logging.getLogger("uvicorn.access").level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING
