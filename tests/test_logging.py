import json
import logging

from sandbox_provisioner.logging import (
    APP_LOGGER,
    CompactJSONRenderer,
    add_timestamp,
    configure_logging,
)


def test_compact_json_renderer():
    """Test compact JSON rendering of an event"""
    renderer = CompactJSONRenderer()
    output = renderer(
        None,
        "info",
        {
            "timestamp": "2024-01-01T00:00:00+00:00",
            "level": "info",
            "event": "cache_acquired",
            "key": "jdk-21",
        },
    )

    data = json.loads(output)
    assert data["ts"] == "2024-01-01T00:00:00+00:00"
    assert data["lvl"] == "info"
    assert data["msg"] == "cache_acquired"
    assert data["data"] == {"key": "jdk-21"}
    assert "\n" not in output


def test_compact_json_renderer_without_data():
    renderer = CompactJSONRenderer()
    data = json.loads(renderer(None, "info", {"level": "debug", "event": "done"}))
    assert "data" not in data


def test_add_timestamp_keeps_existing():
    """Test timestamps are added only when missing"""
    assert add_timestamp(None, None, {"timestamp": "fixed"})["timestamp"] == "fixed"
    assert "timestamp" in add_timestamp(None, None, {})


def test_configure_logging_installs_one_handler():
    """Test repeated configuration reuses the stderr handler"""
    app_logger = logging.getLogger(APP_LOGGER)

    configure_logging("DEBUG", json_output=True)
    assert app_logger.level == logging.DEBUG
    handlers = list(app_logger.handlers)
    assert len(handlers) == 1

    configure_logging("WARNING", json_output=True)
    assert app_logger.level == logging.WARNING
    assert app_logger.handlers == handlers
    assert app_logger.propagate is False
