"""
Trello task-board gateway.

All outbound HTTP calls to the Trello REST API go through this class.
Services never call ``requests`` directly.

  - Credentials: app-wide API key + token, sent as query parameters.
  - Reads (GET) are retried with backoff; card creation is never retried,
    so a timeout can never produce a duplicate card.
  - Failures raise TrelloApiError with a small, stable code set.

Testability: pass a mock ``session`` to TrelloGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import requests

logger = logging.getLogger(__name__)

BASE_URL = "https://api.trello.com/1"

AUTH_ERROR = "AUTH_ERROR"
NOT_FOUND = "NOT_FOUND"
RATE_LIMITED = "RATE_LIMITED"
NETWORK_ERROR = "NETWORK_ERROR"
UNKNOWN = "UNKNOWN"

_GET_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 2]
_RETRYABLE_CODES = frozenset({RATE_LIMITED, NETWORK_ERROR})

_DEFAULT_TIMEOUT = 15


class TrelloApiError(Exception):
    """A failed Trello call.

    Attributes:
        code: AUTH_ERROR | NOT_FOUND | RATE_LIMITED | NETWORK_ERROR | UNKNOWN
        http_status: HTTP status, or 0 for network-level failures.
    """

    def __init__(self, message: str, code: str = UNKNOWN, http_status: int = 0) -> None:
        self.code = code
        self.http_status = http_status
        super().__init__(message)


def classify_status(status: int) -> str:
    if status in (401, 403):
        return AUTH_ERROR
    if status == 404:
        return NOT_FOUND
    if status == 429:
        return RATE_LIMITED
    return UNKNOWN


class TrelloGateway:
    """Trello REST API v1 gateway.

    Usage:
        gateway = TrelloGateway.from_config(app.config)
        card = gateway.create_card(list_id, "Write tests", "desc")
    """

    def __init__(
        self,
        api_key: str | None,
        token: str | None,
        session: requests.Session | None = None,
        *,
        timeout: int = _DEFAULT_TIMEOUT,
        backoff_seconds: list[float] | None = None,
    ) -> None:
        self.api_key = api_key or ""
        self.token = token or ""
        self.timeout = timeout
        self.backoff_seconds = _RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self._session: requests.Session | None = session

    @classmethod
    def from_config(cls, config, session: requests.Session | None = None) -> "TrelloGateway":
        return cls(
            config.get("TRELLO_API_KEY"),
            config.get("TRELLO_TOKEN"),
            session,
            backoff_seconds=[] if config.get("TESTING") else None,
        )

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.token)

    # ── Core request ─────────────────────────────────────────────────────────

    def _request_once(self, method: str, path: str, *, params: dict | None = None,
                      json_body: dict | None = None) -> Any:
        if not self.is_configured:
            raise TrelloApiError("TRELLO_API_KEY and TRELLO_TOKEN must be set", AUTH_ERROR, 0)

        query = {"key": self.api_key, "token": self.token, **(params or {})}
        kwargs: dict[str, Any] = {"params": query, "timeout": self.timeout}
        if json_body is not None:
            kwargs["json"] = json_body

        try:
            resp = self.session.request(method, f"{BASE_URL}{path}", **kwargs)
        except requests.RequestException as exc:
            raise TrelloApiError(f"Network error reaching Trello: {exc}", NETWORK_ERROR, 0) from exc

        if not resp.ok:
            raise TrelloApiError(
                f"Trello API error {resp.status_code}: {resp.text[:500]}",
                classify_status(resp.status_code),
                resp.status_code,
            )
        try:
            return resp.json() if resp.content else {}
        except ValueError:
            return {}

    def _get(self, path: str, params: dict | None = None) -> Any:
        """GET with retries on rate limiting and network errors."""
        for attempt in range(_GET_RETRY_MAX + 1):
            try:
                return self._request_once("GET", path, params=params)
            except TrelloApiError as exc:
                if exc.code not in _RETRYABLE_CODES or attempt >= _GET_RETRY_MAX:
                    raise
                logger.warning(
                    "Trello GET failed attempt=%d/%d path=%s code=%s",
                    attempt + 1, _GET_RETRY_MAX + 1, path, exc.code,
                )
                if attempt < len(self.backoff_seconds):
                    time.sleep(self.backoff_seconds[attempt])

    # ── Cards ────────────────────────────────────────────────────────────────

    def create_card(
        self,
        list_id: str,
        name: str,
        desc: str,
        id_members: list[str] | None = None,
        due: str | None = None,
    ) -> dict:
        """Create one card. Single attempt; the caller decides what a failure means."""
        payload: dict[str, Any] = {"idList": list_id, "name": name, "desc": desc}
        if id_members:
            payload["idMembers"] = list(id_members)
        if due:
            payload["due"] = due
        card = self._request_once("POST", "/cards", json_body=payload)
        logger.info("Created Trello card id=%s list=%s", card.get("id"), list_id)
        return card

    def get_board_lists(self, board_id: str) -> list[dict]:
        return self._get(f"/boards/{board_id}/lists", {"filter": "open"}) or []

    def get_list_name_map(self, board_id: str) -> dict[str, str]:
        """list id → list name for the board's open lists."""
        return {lst["id"]: lst["name"] for lst in self.get_board_lists(board_id)}

    def find_list_id(self, board_id: str, list_name: str) -> str | None:
        """Id of the open list called *list_name* (case-insensitive), if any."""
        wanted = list_name.strip().lower()
        for list_id, name in self.get_list_name_map(board_id).items():
            if name.strip().lower() == wanted:
                return list_id
        return None

    def list_cards(self, board_id: str) -> list[dict]:
        """
        Cards on a board with their status resolved to the list name.

        Returns:
            [{"id", "title", "status", "due", "id_members"}]
        """
        names = self.get_list_name_map(board_id)
        cards = self._get(f"/boards/{board_id}/cards") or []
        return [
            {
                "id": c["id"],
                "title": c.get("name", ""),
                "status": names.get(c.get("idList"), "Unknown"),
                "due": c.get("due"),
                "id_members": c.get("idMembers") or [],
            }
            for c in cards
        ]
