from typing import Optional

import requests

from errors import TransportFailure

API_TIMEOUT_SECONDS = 5
ALLOWED_ACTIONS = ("turn_on", "turn_off")


class HaApiClient:
    """Reads and switches one Home Assistant input_boolean over the REST API."""

    def __init__(self, base_url: str, token: str, entity_id: str, logger, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.entity_id = entity_id
        self.logger = logger
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    def get_state(self) -> str:
        url = f"{self.base_url}/api/states/{self.entity_id}"
        try:
            resp = self.session.get(url, headers=self._headers(), timeout=API_TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            raise TransportFailure(f"GET {url} failed: {exc}") from exc
        self.logger.debug(f"[HA] GET /api/states/{self.entity_id} -> {resp.status_code}")
        if not 200 <= resp.status_code < 300:
            raise TransportFailure(f"GET {url} returned {resp.status_code}", resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransportFailure(f"GET {url} returned a non-JSON body", resp.status_code) from exc
        if not isinstance(data, dict) or "state" not in data:
            raise TransportFailure("State not found in the response", resp.status_code)
        state = data["state"]
        return "unknown" if state is None else str(state)

    def set_state(self, action: str) -> None:
        if action not in ALLOWED_ACTIONS:
            raise ValueError(f"Unknown input_boolean action '{action}'")
        url = f"{self.base_url}/api/services/input_boolean/{action}"
        try:
            resp = self.session.post(
                url,
                json={"entity_id": self.entity_id},
                headers=self._headers(),
                timeout=API_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise TransportFailure(f"POST {url} failed: {exc}") from exc
        self.logger.debug(f"[HA] POST /api/services/input_boolean/{action} -> {resp.status_code}")
        if not 200 <= resp.status_code < 300:
            raise TransportFailure(f"POST {url} returned {resp.status_code}", resp.status_code)

    def close(self) -> None:
        self.session.close()
