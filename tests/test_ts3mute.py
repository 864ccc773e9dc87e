import json
import logging
import socket
import threading

import pytest

from conftest import FakeBridge
from errors import TransportFailure
from ts3mute import LOGGER_NAME, Ts3MuteStatusApp, main, setup_logging


@pytest.fixture(autouse=True)
def reset_app_logger():
    yield
    app_logger = logging.getLogger(LOGGER_NAME)
    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)
        handler.close()


def unused_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "ts3_address": f"127.0.0.1:{unused_port()}",
        "ts3_api_key": "ABCD-1234",
        "ha_base_url": "http://hass.local:8123",
        "ha_token": "long-lived-token",
        "ha_entity_id": "input_boolean.ts3_mic",
        "operation_timeout_seconds": 1,
        "poll_interval_seconds": 0.05,
        "log_file": str(tmp_path / "ts3_mute_status.log"),
    }), encoding="utf-8")
    return str(path)


def make_app(config_path, bridge):
    app = Ts3MuteStatusApp(config_path)
    app.bridge = bridge
    app.monitor.bridge = bridge
    return app


def test_setup_logging_replaces_handlers(tmp_path):
    setup_logging("INFO")
    logger = setup_logging("debug", str(tmp_path / "app.log"))
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 2
    logger.info("hello")
    for handler in logger.handlers:
        handler.flush()
    assert "hello" in (tmp_path / "app.log").read_text(encoding="utf-8")


def test_main_exits_1_and_writes_default_when_config_missing(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    monkeypatch.setenv("TS3MUTE_CFG", str(path))
    with pytest.raises(SystemExit) as excinfo:
        main()
    assert excinfo.value.code == 1
    assert path.exists()


def test_seed_failure_exits(config_path):
    class DownBridge(FakeBridge):
        def get_state(self):
            raise TransportFailure("GET returned 401", 401)

    app = make_app(config_path, DownBridge())
    with pytest.raises(SystemExit) as excinfo:
        app.seed_state()
    assert excinfo.value.code == 2


def test_shutdown_switches_entity_off_once(config_path):
    bridge = FakeBridge(state="on")
    app = make_app(config_path, bridge)
    app.shutdown()
    app.shutdown()
    assert bridge.actions == ["turn_off"]
    assert bridge.closed


def test_shutdown_tolerates_failed_final_push(config_path):
    bridge = FakeBridge(state="on", fail_sets=1)
    app = make_app(config_path, bridge)
    app.shutdown()
    assert bridge.actions == []
    assert bridge.closed


def test_run_until_stop_event(config_path, monkeypatch):
    bridge = FakeBridge(state="off")
    app = make_app(config_path, bridge)
    monkeypatch.setattr(app, "register_signals", lambda: None)

    timer = threading.Timer(0.3, app.stop_event.set)
    timer.start()
    try:
        app.run()
    finally:
        timer.cancel()
    assert not app.monitor_thread.is_alive()
    assert bridge.actions == ["turn_off"]
    assert bridge.closed
