"""
Tests for the hosted backend REST client.

Run with: pytest tests/test_backend_client.py -v
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from backend_client import (
    BackendAuthError,
    BackendClient,
    BackendError,
    NotFoundError,
    RpcNotFoundError,
    eq,
    gt,
    gte,
    in_,
    is_null,
    lt,
    lte,
    neq,
)


def _response(status_code=200, body=None, headers=None, text=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    if body is None:
        response.content = b""
        response.json.side_effect = ValueError("no body")
        response.text = text or ""
    else:
        encoded = json.dumps(body)
        response.content = encoded.encode()
        response.json.return_value = body
        response.text = text or encoded
    return response


class TestFilterHelpers:
    """Tests for PostgREST filter builders."""

    def test_eq(self):
        assert eq("status", "draft") == ("status", "eq.draft")

    def test_eq_booleans(self):
        assert eq("is_active", True) == ("is_active", "eq.true")
        assert eq("locked", False) == ("locked", "eq.false")

    def test_eq_none_is_null(self):
        assert eq("archived_at", None) == ("archived_at", "is.null")
        assert is_null("archived_at") == ("archived_at", "is.null")

    def test_comparisons(self):
        assert neq("id", "q-1") == ("id", "neq.q-1")
        assert gte("created_at", "2025-01-01") == ("created_at", "gte.2025-01-01")
        assert lte("created_at", "2025-12-31") == ("created_at", "lte.2025-12-31")
        assert gt("balance_due", 0) == ("balance_due", "gt.0")
        assert lt("due_date", "2025-06-01") == ("due_date", "lt.2025-06-01")

    def test_in_list(self):
        assert in_("status", ["draft", "sent"]) == ("status", "in.(draft,sent)")

    def test_in_quotes_special_characters(self):
        assert in_("name", ["Smith, Inc", "Acme"]) == ("name", 'in.("Smith, Inc",Acme)')


class TestBackendClient:
    """Tests for BackendClient requests and error mapping."""

    @pytest.fixture
    def client(self):
        """Create client instance."""
        return BackendClient(
            base_url="https://db.example.com/",
            api_key="anon-key",
            access_token="user-token",
        )

    @pytest.fixture
    def mock_session(self, client):
        """Mock the requests session."""
        mock = MagicMock()
        client._session = mock
        return mock

    def test_init(self, client):
        assert client.rest_url == "https://db.example.com/rest/v1"
        assert client.auth_url == "https://db.example.com/auth/v1"

    def test_from_credentials(self):
        client = BackendClient.from_credentials({
            "FIELDOPS_BACKEND_URL": "https://db.example.com",
            "FIELDOPS_BACKEND_KEY": "anon-key",
        })
        assert client.api_key == "anon-key"
        assert client.access_token is None

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("FIELDOPS_BACKEND_URL", "https://env.example.com")
        monkeypatch.setenv("FIELDOPS_BACKEND_KEY", "env-key")
        monkeypatch.delenv("FIELDOPS_ACCESS_TOKEN", raising=False)
        client = BackendClient.from_env()
        assert client.rest_url == "https://env.example.com/rest/v1"

    def test_headers_use_access_token(self, client):
        headers = client._headers(prefer="return=representation")
        assert headers["apikey"] == "anon-key"
        assert headers["Authorization"] == "Bearer user-token"
        assert headers["Prefer"] == "return=representation"

    def test_headers_fall_back_to_api_key(self):
        client = BackendClient("https://db.example.com", "anon-key")
        assert client._headers()["Authorization"] == "Bearer anon-key"

    def test_select_builds_params(self, client, mock_session):
        mock_session.request.return_value = _response(body=[{"id": "q-1"}])

        rows = client.select(
            "quotes",
            columns="*, client:clients(id,   name)",
            filters=[eq("status", "draft")],
            order="created_at",
            ascending=False,
            limit=10,
        )

        assert rows == [{"id": "q-1"}]
        method, url = mock_session.request.call_args.args
        params = mock_session.request.call_args.kwargs["params"]
        assert method == "GET"
        assert url == "https://db.example.com/rest/v1/quotes"
        assert ("select", "*, client:clients(id, name)") in params
        assert ("status", "eq.draft") in params
        assert ("order", "created_at.desc") in params
        assert ("limit", "10") in params

    def test_select_preformatted_order(self, client, mock_session):
        mock_session.request.return_value = _response(body=[])
        client.select("jobs", order="phase_number.asc,created_at.asc")
        params = mock_session.request.call_args.kwargs["params"]
        assert ("order", "phase_number.asc,created_at.asc") in params

    def test_select_one_returns_row(self, client, mock_session):
        mock_session.request.return_value = _response(body=[{"id": "q-1"}])
        assert client.select_one("quotes", filters=[eq("id", "q-1")]) == {"id": "q-1"}

    def test_select_one_not_found(self, client, mock_session):
        mock_session.request.return_value = _response(body=[])
        with pytest.raises(NotFoundError):
            client.select_one("quotes", filters=[eq("id", "missing")])

    def test_select_one_maybe_returns_none(self, client, mock_session):
        mock_session.request.return_value = _response(body=[])
        assert client.select_one("quotes", filters=[eq("id", "missing")], maybe=True) is None

    def test_select_one_multiple_rows(self, client, mock_session):
        mock_session.request.return_value = _response(body=[{"id": "a"}, {"id": "b"}])
        with pytest.raises(BackendError) as exc:
            client.select_one("quotes")
        assert exc.value.status_code == 406

    def test_insert_returns_representation(self, client, mock_session):
        mock_session.request.return_value = _response(status_code=201, body=[{"id": "j-1"}])

        row = client.insert_one("jobs", {"client_id": "c-1"})

        assert row == {"id": "j-1"}
        kwargs = mock_session.request.call_args.kwargs
        assert kwargs["headers"]["Prefer"] == "return=representation"
        assert json.loads(kwargs["data"]) == {"client_id": "c-1"}

    def test_insert_one_empty_result(self, client, mock_session):
        mock_session.request.return_value = _response(status_code=201, body=[])
        with pytest.raises(BackendError):
            client.insert_one("jobs", {"client_id": "c-1"})

    def test_update_requires_filters(self, client):
        with pytest.raises(ValueError):
            client.update("quotes", {"status": "lost"}, [])

    def test_delete_requires_filters(self, client):
        with pytest.raises(ValueError):
            client.delete("quotes", [])

    def test_delete_handles_empty_body(self, client, mock_session):
        mock_session.request.return_value = _response(status_code=204)
        client.delete("quotes", [eq("id", "q-1")])
        assert mock_session.request.call_args.args[0] == "DELETE"

    def test_upsert_merges_duplicates(self, client, mock_session):
        mock_session.request.return_value = _response(body=[{"id": "w-1", "weight": 40}])

        client.upsert("bonus_kpi_weights", {"bonus_kpi_id": "k", "user_id": "u", "weight": 40},
                      on_conflict="bonus_kpi_id,user_id")

        kwargs = mock_session.request.call_args.kwargs
        assert ("on_conflict", "bonus_kpi_id,user_id") in kwargs["params"]
        assert "resolution=merge-duplicates" in kwargs["headers"]["Prefer"]

    def test_rpc_posts_to_rpc_endpoint(self, client, mock_session):
        mock_session.request.return_value = _response(body={"ok": True})

        result = client.rpc("accept_quote", {"p_quote_id": "q-1"})

        assert result == {"ok": True}
        method, url = mock_session.request.call_args.args
        assert method == "POST"
        assert url.endswith("/rest/v1/rpc/accept_quote")

    def test_rpc_not_found(self, client, mock_session):
        mock_session.request.return_value = _response(
            status_code=404, body={"code": "PGRST202", "message": "Could not find the function"}
        )
        with pytest.raises(RpcNotFoundError) as exc:
            client.rpc("accept_quote", {})
        assert exc.value.rpc_name == "accept_quote"

    def test_rpc_undefined_function_code(self, client, mock_session):
        mock_session.request.return_value = _response(
            status_code=400, body={"code": "42883", "message": "function does not exist"}
        )
        with pytest.raises(RpcNotFoundError):
            client.rpc("transfer_custom_fields", {})

    def test_auth_error(self, client, mock_session):
        mock_session.request.return_value = _response(
            status_code=401, body={"code": "PGRST301", "message": "JWT expired"}
        )
        with pytest.raises(BackendAuthError):
            client.select("quotes")

    def test_client_error_carries_details(self, client, mock_session):
        mock_session.request.return_value = _response(
            status_code=400,
            body={"code": "23505", "message": "duplicate key", "details": "Key exists", "hint": None},
        )
        with pytest.raises(BackendError) as exc:
            client.insert("quotes", {"id": "q-1"})
        assert exc.value.code == "23505"
        assert exc.value.details == "Key exists"
        assert exc.value.recoverable is False

    @patch("backend_client.time.sleep")
    def test_get_retries_on_server_error(self, mock_sleep, client, mock_session):
        mock_session.request.side_effect = [
            _response(status_code=503, body={"message": "unavailable"}),
            _response(body=[{"id": "q-1"}]),
        ]

        rows = client.select("quotes")

        assert rows == [{"id": "q-1"}]
        assert mock_session.request.call_count == 2
        mock_sleep.assert_called_once()

    @patch("backend_client.time.sleep")
    def test_get_honors_retry_after(self, mock_sleep, client, mock_session):
        mock_session.request.side_effect = [
            _response(status_code=429, body={"message": "slow down"}, headers={"Retry-After": "2"}),
            _response(body=[]),
        ]
        client.select("quotes")
        mock_sleep.assert_called_once_with(2.0)

    @patch("backend_client.time.sleep")
    def test_get_retries_on_timeout(self, mock_sleep, client, mock_session):
        mock_session.request.side_effect = [
            requests.exceptions.Timeout(),
            _response(body=[{"id": "q-1"}]),
        ]
        assert client.select("quotes") == [{"id": "q-1"}]

    @patch("backend_client.time.sleep")
    def test_get_gives_up_after_max_retries(self, mock_sleep, client, mock_session):
        mock_session.request.return_value = _response(status_code=500, body={"message": "boom"})

        with pytest.raises(BackendError) as exc:
            client.select("quotes")

        assert exc.value.status_code == 500
        assert mock_session.request.call_count == client.max_retries + 1

    @patch("backend_client.time.sleep")
    def test_mutations_are_not_retried(self, mock_sleep, client, mock_session):
        mock_session.request.return_value = _response(status_code=503, body={"message": "unavailable"})

        with pytest.raises(BackendError):
            client.update("quotes", {"status": "sent"}, [eq("id", "q-1")])

        assert mock_session.request.call_count == 1
        mock_sleep.assert_not_called()

    def test_connection_error(self, client, mock_session):
        mock_session.request.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(BackendError) as exc:
            client.update("quotes", {"status": "sent"}, [eq("id", "q-1")])
        assert exc.value.status_code == 503


class TestCurrentUser:
    """Tests for the signed-in user lookup."""

    def test_no_token_returns_none(self):
        client = BackendClient("https://db.example.com", "anon-key")
        client._session = MagicMock()
        assert client.get_current_user() is None
        client._session.get.assert_not_called()

    def test_fetches_and_caches_user(self):
        client = BackendClient("https://db.example.com", "anon-key", access_token="tok")
        client._session = MagicMock()
        client._session.get.return_value = _response(body={"id": "user-1", "email": "a@b.com"})

        assert client.current_user_id() == "user-1"
        assert client.current_user_id() == "user-1"
        client._session.get.assert_called_once()
        assert client._session.get.call_args.args[0] == "https://db.example.com/auth/v1/user"

    def test_failed_lookup_returns_none(self):
        client = BackendClient("https://db.example.com", "anon-key", access_token="tok")
        client._session = MagicMock()
        client._session.get.return_value = _response(status_code=401, body={"msg": "bad jwt"})
        assert client.get_current_user() is None
