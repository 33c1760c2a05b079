"""Unit tests for groupcopilot.integrations.trello_gateway.

All outbound HTTP goes through a MagicMock ``requests.Session`` injected
into TrelloGateway, so no real Trello board is needed.
"""

from unittest.mock import MagicMock

import pytest
import requests

from groupcopilot.integrations.trello_gateway import (
    AUTH_ERROR,
    BASE_URL,
    NETWORK_ERROR,
    NOT_FOUND,
    RATE_LIMITED,
    UNKNOWN,
    TrelloApiError,
    TrelloGateway,
)


def _response(status=200, payload=None, text=""):
    resp = MagicMock()
    resp.ok = 200 <= status < 300
    resp.status_code = status
    resp.text = text
    resp.content = b"x" if payload is not None else b""
    resp.json.return_value = payload
    return resp


def _gateway(*responses):
    session = MagicMock(spec=requests.Session)
    session.request.side_effect = list(responses)
    return TrelloGateway("key123", "tok456", session, backoff_seconds=[]), session


# ═════════════════════════════════════════════════════════════════════════
# ERRORS
# ═════════════════════════════════════════════════════════════════════════

class TestTrelloApiError:
    def test_shape(self):
        err = TrelloApiError("Unauthorized", AUTH_ERROR, 401)
        assert isinstance(err, Exception)
        assert err.code == AUTH_ERROR
        assert err.http_status == 401


class TestStatusClassification:
    @pytest.mark.parametrize("status, code", [
        (401, AUTH_ERROR),
        (403, AUTH_ERROR),
        (404, NOT_FOUND),
        (429, RATE_LIMITED),
        (500, UNKNOWN),
    ])
    def test_get_board_lists_error_codes(self, status, code):
        gw, _ = _gateway(*[_response(status, text="error body")] * 3)
        with pytest.raises(TrelloApiError) as exc:
            gw.get_board_lists("board123")
        assert exc.value.code == code
        assert exc.value.http_status == status

    def test_network_failure(self):
        gw, _ = _gateway(*[requests.ConnectionError("boom")] * 3)
        with pytest.raises(TrelloApiError) as exc:
            gw.get_board_lists("board123")
        assert exc.value.code == NETWORK_ERROR
        assert exc.value.http_status == 0

    def test_unconfigured_gateway_never_calls_out(self):
        session = MagicMock(spec=requests.Session)
        gw = TrelloGateway("", "", session)
        assert not gw.is_configured
        with pytest.raises(TrelloApiError) as exc:
            gw.get_board_lists("board123")
        assert exc.value.code == AUTH_ERROR
        session.request.assert_not_called()


# ═════════════════════════════════════════════════════════════════════════
# RETRIES
# ═════════════════════════════════════════════════════════════════════════

class TestRetries:
    def test_get_retries_rate_limit_then_succeeds(self):
        gw, session = _gateway(
            _response(429), _response(200, [{"id": "l1", "name": "To Do"}]),
        )
        assert gw.get_board_lists("b1") == [{"id": "l1", "name": "To Do"}]
        assert session.request.call_count == 2

    def test_get_does_not_retry_auth_errors(self):
        gw, session = _gateway(_response(401), _response(200, []))
        with pytest.raises(TrelloApiError):
            gw.get_board_lists("b1")
        assert session.request.call_count == 1

    def test_create_card_is_single_attempt(self):
        gw, session = _gateway(_response(429), _response(200, {"id": "c1"}))
        with pytest.raises(TrelloApiError) as exc:
            gw.create_card("list1", "Task", "desc")
        assert exc.value.code == RATE_LIMITED
        assert session.request.call_count == 1


# ═════════════════════════════════════════════════════════════════════════
# OPERATIONS
# ═════════════════════════════════════════════════════════════════════════

class TestOperations:
    def test_create_card_payload(self):
        gw, session = _gateway(_response(200, {"id": "c1"}))
        card = gw.create_card("list1", "Task", "desc", ["m1"], "2026-10-23T00:00:00Z")
        assert card == {"id": "c1"}

        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        assert method == "POST"
        assert url == f"{BASE_URL}/cards"
        assert kwargs["params"] == {"key": "key123", "token": "tok456"}
        assert kwargs["json"] == {
            "idList": "list1", "name": "Task", "desc": "desc",
            "idMembers": ["m1"], "due": "2026-10-23T00:00:00Z",
        }

    def test_create_card_omits_empty_optional_fields(self):
        gw, session = _gateway(_response(200, {"id": "c1"}))
        gw.create_card("list1", "Task", "desc")
        assert session.request.call_args.kwargs["json"] == {"idList": "list1", "name": "Task", "desc": "desc"}

    def test_find_list_id_is_case_insensitive(self):
        gw, _ = _gateway(_response(200, [{"id": "l1", "name": "Backlog"}, {"id": "l2", "name": "To Do"}]))
        assert gw.find_list_id("b1", "to do") == "l2"

    def test_find_list_id_missing(self):
        gw, _ = _gateway(_response(200, [{"id": "l1", "name": "Backlog"}]))
        assert gw.find_list_id("b1", "To Do") is None

    def test_list_cards_resolves_status_names(self):
        gw, _ = _gateway(
            _response(200, [{"id": "l1", "name": "Doing"}]),
            _response(200, [
                {"id": "c1", "name": "Login", "idList": "l1", "due": None, "idMembers": ["m1"]},
                {"id": "c2", "name": "Orphan", "idList": "gone"},
            ]),
        )
        cards = gw.list_cards("b1")
        assert cards[0] == {"id": "c1", "title": "Login", "status": "Doing", "due": None, "id_members": ["m1"]}
        assert cards[1]["status"] == "Unknown"

    def test_from_config(self):
        gw = TrelloGateway.from_config({"TRELLO_API_KEY": "k", "TRELLO_TOKEN": "t", "TESTING": True})
        assert gw.is_configured
        assert gw.backoff_seconds == []
