#!/usr/bin/env python3
"""
TS3 Mute Status – mirrors the TeamSpeak 3 microphone state into Home Assistant

Key features
------------
* Polls the local TS3 ClientQuery interface (auth apikey, whoami, clientvariable).
* Mic is "active" only when neither input nor output is muted.
* Switches an input_boolean (turn_on / turn_off) only when the state changes.
* Every protocol step is bounded by a timeout; a failed cycle is dropped and
  retried after the poll interval, forever, until shutdown.
* On SIGINT/SIGTERM the entity is switched off one last time.
"""

import asyncio
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from config_loader import load_config, validate_config
from errors import ConfigurationFailure, TransportFailure
from ha_client import HaApiClient
from monitor import MonitoringLoop, MonitorState

LOGGER_NAME = "ts3_mute_status"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DEFAULT_CONFIG_PATH = "config.json"


def setup_logging(level: str, log_file: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logger.setLevel(numeric_level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    sh = logging.StreamHandler()
    sh.setLevel(numeric_level)
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    if log_file:
        # Rotating file handler: 5 files × 2 MB
        lh = RotatingFileHandler(log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
        lh.setLevel(numeric_level)
        lh.setFormatter(formatter)
        logger.addHandler(lh)
    return logger


class Ts3MuteStatusApp:
    """Loads configuration, runs the monitoring loop in the background and cleans up on exit."""

    def __init__(self, config_path: str):
        self.logger = setup_logging("INFO")
        self.config_path = Path(config_path)
        self.logger.info("--------------------")
        self.logger.info("Application starting")
        cfg = load_config(str(self.config_path), self.logger)
        self.cfg = validate_config(cfg, self.logger)
        self.logger = setup_logging(self.cfg["log_level"], self.cfg["log_file"])
        self.logger.info(f"Loaded configuration from {self.config_path}")
        self.logger.info(f"Ts3Address read from config: {self.cfg['endpoint']}")
        self.stop_event = threading.Event()
        self.bridge = HaApiClient(
            self.cfg["ha_base_url"],
            self.cfg["ha_token"],
            self.cfg["ha_entity_id"],
            self.logger,
        )
        self.monitor = MonitoringLoop(
            self.cfg["endpoint"],
            self.cfg["ts3_api_key"],
            self.bridge,
            self.logger,
            operation_timeout=self.cfg["operation_timeout_seconds"],
            poll_interval=self.cfg["poll_interval_seconds"],
        )
        self.monitor_thread: Optional[threading.Thread] = None
        self._shut_down = False

    def register_signals(self):
        def handler(signum, frame):
            self.logger.info("Shutdown signal received. Exiting...")
            self.stop_event.set()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)

    def seed_state(self) -> MonitorState:
        try:
            return asyncio.run(self.monitor.seed_state())
        except TransportFailure as exc:
            self.logger.critical(f"Unable to read initial HA state: {exc}")
            sys.exit(2)

    def _monitor_worker(self, state: MonitorState):
        try:
            asyncio.run(self.monitor.run(state))
        except Exception as exc:
            self.logger.critical(f"Monitoring loop crashed: {type(exc).__name__}: {exc}")
        finally:
            self.stop_event.set()

    def start_monitor(self, state: MonitorState):
        self.monitor_thread = threading.Thread(
            target=self._monitor_worker,
            args=(state,),
            name="ts3-monitor",
            daemon=True,
        )
        self.monitor_thread.start()

    def shutdown(self):
        if self._shut_down:
            return
        self._shut_down = True
        self.logger.info("Application exiting")
        self.monitor.request_stop()
        if self.monitor_thread is not None:
            self.monitor_thread.join(timeout=self.cfg["operation_timeout_seconds"])
            if self.monitor_thread.is_alive():
                self.logger.warning("Monitoring thread did not stop in time.")
        try:
            self.bridge.set_state("turn_off")
            self.logger.info("Final HA state updated to: turn_off")
        except TransportFailure as exc:
            self.logger.error(f"Error setting final HA state: {exc}")
        self.bridge.close()
        self.logger.info("Shutdown complete.")
        for handler in self.logger.handlers:
            handler.flush()

    def run(self):
        self.register_signals()
        state = self.seed_state()
        self.start_monitor(state)
        try:
            while not self.stop_event.wait(1):
                pass
        finally:
            self.shutdown()


def main():
    config_path = os.getenv("TS3MUTE_CFG", DEFAULT_CONFIG_PATH)
    try:
        app = Ts3MuteStatusApp(config_path)
    except ConfigurationFailure as exc:
        logging.getLogger(LOGGER_NAME).critical(f"Error: {exc}")
        sys.exit(1)
    app.run()


if __name__ == "__main__":
    main()
