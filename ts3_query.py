import asyncio
from dataclasses import dataclass
from typing import List, Optional, Tuple

from errors import CommandError, ConnectionFailure, ProtocolParseFailure, Ts3MuteError

GREETING_PREFIX = "TS3 Client"
STATUS_PREFIX = "error "
INPUT_MUTED_FLAG = "client_input_muted"
OUTPUT_MUTED_FLAG = "client_output_muted"
LINE_ENCODING = "utf-8"

_SESSION_FAILURES = (Ts3MuteError, OSError)


def find_token(line: str, key: str) -> Optional[str]:
    """Return the value of the first ``key=value`` token of a line, or None."""
    prefix = f"{key}="
    for part in line.split(" "):
        if part.startswith(prefix):
            return part[len(prefix):]
    return None


def parse_status_line(line: str) -> Tuple[int, str]:
    """Split an ``error id=<code> msg=<text>`` line into (code, text)."""
    raw_id = find_token(line, "id")
    if raw_id is None or not raw_id.lstrip("-").isdigit():
        raise ProtocolParseFailure(f"Malformed status line: {line!r}")
    return int(raw_id), find_token(line, "msg") or ""


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    @classmethod
    def parse(cls, address: str) -> "Endpoint":
        """
        Parse a ``host:port`` address.
        Raises ValueError on anything else.
        """
        if not address:
            raise ValueError("Address cannot be empty")
        parts = address.strip().split(":")
        if len(parts) != 2:
            raise ValueError(f"Invalid address format '{address}'. Expected format: 'hostname:port'")
        host, port_str = parts
        if not host:
            raise ValueError(f"Invalid address '{address}': hostname is empty")
        if not port_str.isdigit():
            raise ValueError(f"Invalid address '{address}': port must be numeric")
        port = int(port_str)
        if not 0 < port < 65536:
            raise ValueError(f"Invalid address '{address}': port out of range")
        return cls(host, port)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class CommandResponse:
    """Informational lines of one reply plus its terminal status."""

    def __init__(self, lines: List[str], error_id: int, message: str):
        self.lines = lines
        self.error_id = error_id
        self.message = message

    @property
    def ok(self) -> bool:
        return self.error_id == 0

    def value(self, key: str) -> Optional[str]:
        for line in self.lines:
            found = find_token(line, key)
            if found is not None:
                return found
        return None


class ProtocolSession:
    """
    One ClientQuery connection: connect, authenticate, query, close.

    Every command is answered by zero or more informational lines and a
    single ``error id=<code> msg=<text>`` status line. Nothing is read past
    the status line. Failures are logged and reported as False/None; only
    misuse (commands before connect) raises.
    """

    def __init__(self, endpoint: Endpoint, logger, greeting_prefix: str = GREETING_PREFIX):
        self.endpoint = endpoint
        self.logger = logger
        self.greeting_prefix = greeting_prefix
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._closed = False

    async def __aenter__(self) -> "ProtocolSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def connect(self) -> bool:
        if self._closed:
            raise RuntimeError("Cannot connect. Session is already closed.")
        try:
            self._reader, self._writer = await asyncio.open_connection(self.endpoint.host, self.endpoint.port)
            greeting = await self._read_line()
        except _SESSION_FAILURES as exc:
            self.logger.error(f"Error connecting to TS3 client at {self.endpoint}: {exc}")
            return False
        if greeting is None or not greeting.startswith(self.greeting_prefix):
            self.logger.error(f"Failed to connect to TS3 client. Unexpected welcome message: {greeting!r}")
            return False
        self.logger.debug(f"Connected to TS3 client at {self.endpoint}")
        return True

    async def authenticate(self, api_key: str) -> bool:
        try:
            await self._command(f"auth apikey={api_key}")
        except _SESSION_FAILURES as exc:
            self.logger.error(f"Error during authentication: {exc}")
            return False
        return True

    async def resolve_self(self) -> Optional[str]:
        try:
            return await self._query_value("whoami", "clid")
        except _SESSION_FAILURES as exc:
            self.logger.error(f"Error retrieving clid: {exc}")
            return None

    async def query_client_flag(self, clid: str, flag_name: str) -> Optional[str]:
        try:
            return await self._query_value(f"clientvariable clid={clid} {flag_name}", flag_name)
        except _SESSION_FAILURES as exc:
            self.logger.error(f"Error retrieving {flag_name} status: {exc}")
            return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is not None:
            writer.close()

    async def _query_value(self, command: str, key: str) -> str:
        response = await self._command(command)
        value = response.value(key)
        if value is None:
            raise ProtocolParseFailure(f"'{command.split(' ', 1)[0]}' completed without a {key} value")
        return value

    async def _command(self, command: str) -> CommandResponse:
        if self._reader is None or self._writer is None:
            raise RuntimeError("Cannot send command. Connection is not established.")
        # keep arguments (the api key) out of error messages
        name = command.split(" ", 1)[0]
        self._writer.write(f"{command}\r\n".encode(LINE_ENCODING))
        await self._writer.drain()
        lines: List[str] = []
        while True:
            line = await self._read_line()
            if line is None:
                raise ConnectionFailure(f"Stream closed before '{name}' completed")
            if line.startswith(STATUS_PREFIX):
                error_id, message = parse_status_line(line)
                if error_id != 0:
                    raise CommandError(name, error_id, message)
                return CommandResponse(lines, error_id, message)
            if line:
                lines.append(line)

    async def _read_line(self) -> Optional[str]:
        """Next line without its terminator, or None at end of stream."""
        try:
            raw = await self._reader.readline()
        except ValueError as exc:
            raise ProtocolParseFailure(f"Line exceeds stream limit: {exc}") from exc
        if not raw:
            return None
        # ClientQuery terminates lines with "\n\r", so the CR lands at the front
        return raw.decode(LINE_ENCODING, errors="replace").strip("\r\n")
