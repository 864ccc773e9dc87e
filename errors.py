from typing import Optional


class Ts3MuteError(Exception):
    """Base class for every failure raised by the bridge."""


class ConnectionFailure(Ts3MuteError):
    """Stream could not be opened, greeted wrongly, or closed mid-response."""


class CommandError(Ts3MuteError):
    """ClientQuery answered a command with a non-zero error id."""

    def __init__(self, command: str, error_id: int, message: str):
        super().__init__(f"'{command}' failed with error id={error_id} msg={message}")
        self.command = command
        self.error_id = error_id
        self.message = message


class ProtocolParseFailure(Ts3MuteError):
    """Malformed status line, or status reached without the expected value."""


class TransportFailure(Ts3MuteError):
    """Home Assistant request failed or returned an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigurationFailure(Ts3MuteError):
    """Startup configuration is missing or invalid. Fatal."""
