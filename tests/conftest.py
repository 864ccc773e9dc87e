import asyncio
import logging

import pytest

from errors import TransportFailure
from ts3_query import Endpoint

OK = "error id=0 msg=ok"
CLOSE = object()
DEFAULT_GREETING = (
    "TS3 Client",
    'Welcome to the TeamSpeak 3 ClientQuery interface, type "help" for a list of commands.',
    'Use the "auth" command to authenticate yourself. Type "help auth" for details.',
    "selected schandlerid=1",
)


class ScriptedTs3Server:
    """
    Local stand-in for the ClientQuery interface.

    ``replies`` maps a command name (first word) to the lines sent back.
    A ``CLOSE`` item drops the connection at that point. A reply without a
    status line leaves the client waiting forever.
    """

    def __init__(self, replies=None, greeting=DEFAULT_GREETING):
        self.greeting = list(greeting)
        self.replies = dict(replies or {})
        self.received = []
        self.connections = 0
        self._writers = []
        self.server = None
        self.endpoint = None

    async def _send(self, writer, lines):
        for line in lines:
            writer.write(f"{line}\n\r".encode("utf-8"))
        await writer.drain()

    async def _handle(self, reader, writer):
        self.connections += 1
        self._writers.append(writer)
        try:
            for line in self.greeting:
                if line is CLOSE:
                    return
                await self._send(writer, [line])
            while True:
                raw = await reader.readline()
                if not raw:
                    return
                command = raw.decode("utf-8").strip()
                self.received.append(command)
                reply = self.replies.get(command.split(" ", 1)[0], ["error id=256 msg=command\\snot\\sfound"])
                if callable(reply):
                    reply = reply(command)
                for line in reply:
                    if line is CLOSE:
                        return
                    await self._send(writer, [line])
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def __aenter__(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        port = self.server.sockets[0].getsockname()[1]
        self.endpoint = Endpoint("127.0.0.1", port)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        for writer in self._writers:
            writer.close()
        self.server.close()


def client_replies(clid="7", input_muted="0", output_muted="0"):
    return {
        "auth": [OK],
        "whoami": [f"clid={clid} cid=1", OK],
        "clientvariable": lambda command: [
            f"clid={clid} client_input_muted={input_muted}"
            if command.endswith("client_input_muted")
            else f"clid={clid} client_output_muted={output_muted}",
            OK,
        ],
    }


class FakeBridge:
    """Records hub calls; ``fail_sets`` makes the next N set_state calls fail."""

    def __init__(self, state="off", fail_sets=0):
        self.state = state
        self.fail_sets = fail_sets
        self.actions = []
        self.closed = False

    def get_state(self):
        return self.state

    def set_state(self, action):
        if self.fail_sets:
            self.fail_sets -= 1
            raise TransportFailure("POST returned 500", 500)
        self.actions.append(action)
        self.state = "on" if action == "turn_on" else "off"

    def close(self):
        self.closed = True


@pytest.fixture
def logger():
    return logging.getLogger("tests.ts3_mute_status")


@pytest.fixture
def bridge():
    return FakeBridge()
