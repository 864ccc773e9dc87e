import asyncio
from dataclasses import dataclass
from typing import Optional

from errors import TransportFailure
from ha_client import HaApiClient
from timeout_guard import run_with_deadline
from ts3_query import INPUT_MUTED_FLAG, OUTPUT_MUTED_FLAG, Endpoint, ProtocolSession

OPERATION_TIMEOUT_SECONDS = 10.0
POLL_INTERVAL_SECONDS = 1.0


@dataclass
class MonitorState:
    """Last known mic state plus cycle counters, owned by one MonitoringLoop."""

    mic_active: bool
    cycles: int = 0
    failed_cycles: int = 0
    consecutive_failures: int = 0
    pushes: int = 0

    @classmethod
    def from_hub_state(cls, hub_state: str) -> "MonitorState":
        return cls(mic_active=hub_state == "on")


def compute_mic_active(input_muted: str, output_muted: str) -> bool:
    return input_muted == "0" and output_muted == "0"


class MonitoringLoop:
    """
    Polls the local TS3 client and mirrors "mic active" into Home Assistant.

    Each cycle opens a fresh session, walks connect -> auth -> whoami ->
    input flag -> output flag, and releases the session before pushing.
    Any failed step abandons the cycle; the loop sleeps and starts over.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        api_key: str,
        bridge: HaApiClient,
        logger,
        operation_timeout: float = OPERATION_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        session_factory=ProtocolSession,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.bridge = bridge
        self.logger = logger
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval
        self.session_factory = session_factory
        self.stopping = False
        self._stop = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def request_stop(self) -> None:
        """Ask the loop to finish. Safe to call from any thread."""
        self.stopping = True
        loop = self._loop
        if loop is None or loop.is_closed():
            self._stop.set()
            return
        try:
            loop.call_soon_threadsafe(self._stop.set)
        except RuntimeError:
            # loop closed between the check and the call
            self._stop.set()

    async def seed_state(self) -> MonitorState:
        hub_state = await asyncio.to_thread(self.bridge.get_state)
        self.logger.info(f"Initial HA state: {hub_state}")
        return MonitorState.from_hub_state(hub_state)

    async def run(self, state: MonitorState) -> MonitorState:
        self._loop = asyncio.get_running_loop()
        self.logger.info(f"Starting monitoring loop against {self.endpoint}.")
        while not self._stop.is_set():
            state.cycles += 1
            try:
                ok = await self.run_cycle(state)
            except Exception as exc:
                self._log_failure(f"Exception occurred: {type(exc).__name__}: {exc}")
                ok = False
            if ok:
                if state.consecutive_failures:
                    self.logger.info(f"Recovered after {state.consecutive_failures} failed cycle(s).")
                state.consecutive_failures = 0
            else:
                state.failed_cycles += 1
                state.consecutive_failures += 1
            if self._stop.is_set():
                break
            await self._sleep()
        self.logger.info(
            f"Monitoring loop stopped after {state.cycles} cycle(s), "
            f"{state.failed_cycles} failed, {state.pushes} push(es)."
        )
        return state

    async def run_cycle(self, state: MonitorState) -> bool:
        async with self.session_factory(self.endpoint, self.logger) as session:
            if not await self._guard(session.connect(), "connect"):
                self._log_failure("Failed to connect to TS3 client.")
                return False
            if not await self._guard(session.authenticate(self.api_key), "auth"):
                self._log_failure("Failed to authenticate with TS3 client.")
                return False
            clid = await self._guard(session.resolve_self(), "whoami")
            if clid is None:
                self._log_failure("Failed to retrieve clid.")
                return False
            input_muted = await self._guard(session.query_client_flag(clid, INPUT_MUTED_FLAG), INPUT_MUTED_FLAG)
            if input_muted is None:
                self._log_failure("Failed to retrieve muted status.")
                return False
            output_muted = await self._guard(session.query_client_flag(clid, OUTPUT_MUTED_FLAG), OUTPUT_MUTED_FLAG)
            if output_muted is None:
                self._log_failure("Failed to retrieve muted status.")
                return False

        mic_active = compute_mic_active(input_muted, output_muted)
        await self.publish(state, mic_active)
        return True

    async def publish(self, state: MonitorState, mic_active: bool) -> bool:
        """Push the mic state if it changed. Returns True when a push succeeded."""
        if mic_active == state.mic_active:
            return False
        action = "turn_on" if mic_active else "turn_off"
        try:
            await asyncio.to_thread(self.bridge.set_state, action)
        except TransportFailure as exc:
            self._log_failure(f"[HA] Failed to push {action}: {exc}")
            return False
        state.mic_active = mic_active
        state.pushes += 1
        self.logger.info(f"mic_status: {mic_active}")
        self.logger.info(f"HA state updated to: {action}")
        return True

    async def _guard(self, operation, name: str):
        return await run_with_deadline(operation, self.operation_timeout, self.logger, self._stop, name)

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    def _log_failure(self, message: str) -> None:
        if not self.stopping:
            self.logger.error(message)
