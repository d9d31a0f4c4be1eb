"""
Hosted backend REST client (PostgREST-style tables + RPC) with error mapping.

- Table select/insert/update/upsert/delete with query-string filters
- Stored procedure calls via /rpc/<name>
- Retry with exponential backoff for reads only
"""

import json
import logging
import os
import time
from typing import Any, Iterable

import requests

from errors import PipelineError
from utils import get_backend_config

# Configure logging
logger = logging.getLogger(__name__)

# Set up console handler if not already configured
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# PostgREST / Postgres codes for "function does not exist"
RPC_NOT_FOUND_CODES = {"PGRST202", "42883"}

Filter = tuple[str, str]


class BackendError(PipelineError):
    """Error returned by the hosted backend."""

    def __init__(
        self,
        status_code: int,
        message: str,
        code: str | None = None,
        details: str | None = None,
        hint: str | None = None,
    ):
        self.status_code = status_code
        self.code = code
        self.details = details
        self.hint = hint
        clean = " ".join(str(message).split())[:200]
        super().__init__(
            message=f"Backend error {status_code} ({code or 'no code'}): {message}",
            user_message=f"Request failed ({status_code}): {clean}",
            recoverable=status_code >= 500 or status_code == 429,
        )


class BackendAuthError(BackendError):
    """Authentication or row-level security rejected the request."""

    def __init__(self, status_code: int, message: str, code: str | None = None):
        super().__init__(status_code, message, code=code)
        self.user_message = "Not authorized. Please sign in again or check your permissions."


class NotFoundError(BackendError):
    """A single-row lookup matched no rows."""

    def __init__(self, table: str, filters: Iterable[Filter] = ()):
        self.table = table
        shown = ", ".join(f"{k}={v}" for k, v in filters)
        super().__init__(404, f"No {table} row matching {shown or 'query'}", code="PGRST116")
        self.user_message = f"Record not found in {table}."


class RpcNotFoundError(BackendError):
    """Stored procedure is not deployed on the backend."""

    def __init__(self, name: str, status_code: int = 404, code: str | None = "PGRST202"):
        self.rpc_name = name
        super().__init__(status_code, f"Function {name} not found", code=code)


# --- Filter helpers ---

def _format_value(value: Any) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)


def eq(column: str, value: Any) -> Filter:
    """column = value (None becomes IS NULL)."""
    if value is None:
        return is_null(column)
    return (column, f"eq.{_format_value(value)}")


def neq(column: str, value: Any) -> Filter:
    """column <> value."""
    return (column, f"neq.{_format_value(value)}")


def in_(column: str, values: Iterable[Any]) -> Filter:
    """column IN (values). Values containing commas or parens are quoted."""
    formatted = []
    for v in values:
        text = _format_value(v)
        if any(ch in text for ch in ',()"'):
            text = '"' + text.replace('"', '\\"') + '"'
        formatted.append(text)
    return (column, f"in.({','.join(formatted)})")


def gte(column: str, value: Any) -> Filter:
    """column >= value."""
    return (column, f"gte.{_format_value(value)}")


def lte(column: str, value: Any) -> Filter:
    """column <= value."""
    return (column, f"lte.{_format_value(value)}")


def gt(column: str, value: Any) -> Filter:
    """column > value."""
    return (column, f"gt.{_format_value(value)}")


def lt(column: str, value: Any) -> Filter:
    """column < value."""
    return (column, f"lt.{_format_value(value)}")


def is_null(column: str) -> Filter:
    """column IS NULL."""
    return (column, "is.null")


class BackendClient:
    """
    Hosted backend client with API-key auth, retries for reads, and error mapping.
    """

    def __init__(self, base_url: str, api_key: str, access_token: str | None = None):
        config = get_backend_config()
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.rest_url = f"{self.base_url}{config['rest_path']}"
        self.auth_url = f"{self.base_url}{config['auth_path']}"
        self.timeout = config["timeout_seconds"]
        self.max_retries = config["max_retries"]
        self.base_delay = config["base_delay_seconds"]
        self.max_delay = config["max_delay_seconds"]
        self._session = requests.Session()
        self._current_user: dict | None = None

    @classmethod
    def from_env(cls) -> "BackendClient":
        """Initialize from environment variables."""
        return cls(
            base_url=os.environ["FIELDOPS_BACKEND_URL"],
            api_key=os.environ["FIELDOPS_BACKEND_KEY"],
            access_token=os.getenv("FIELDOPS_ACCESS_TOKEN"),
        )

    @classmethod
    def from_credentials(cls, creds: dict) -> "BackendClient":
        """Initialize from a credentials dict (see scripts/_credentials.py)."""
        return cls(
            base_url=creds["FIELDOPS_BACKEND_URL"],
            api_key=creds["FIELDOPS_BACKEND_KEY"],
            access_token=creds.get("FIELDOPS_ACCESS_TOKEN"),
        )

    def _headers(self, prefer: str | None = None) -> dict:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _raise_for_response(self, response, endpoint: str) -> None:
        """Map an unsuccessful response onto the error hierarchy."""
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        message = body.get("message") or (response.text[:200] if response.text else "")
        code = body.get("code")
        status = response.status_code

        if code in RPC_NOT_FOUND_CODES and endpoint.startswith("rpc/"):
            raise RpcNotFoundError(endpoint[len("rpc/"):], status_code=status, code=code)
        if status in (401, 403):
            raise BackendAuthError(status, message, code=code)
        raise BackendError(
            status,
            message,
            code=code,
            details=body.get("details"),
            hint=body.get("hint"),
        )

    def _request(
        self,
        method: str,
        endpoint: str,
        params: list[Filter] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        """Make a backend request. Only GET is retried."""
        url = f"{self.rest_url}/{endpoint}"
        attempts = self.max_retries + 1 if method == "GET" else 1

        logger.info(f"Backend Request: {method} {endpoint}")
        if params:
            logger.debug(f"  Params: {params}")

        for attempt in range(attempts):
            try:
                response = self._session.request(
                    method,
                    url,
                    headers=self._headers(prefer),
                    params=params,
                    data=json.dumps(json_body) if json_body is not None else None,
                    timeout=self.timeout,
                )
            except requests.exceptions.Timeout:
                if attempt < attempts - 1:
                    delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                    logger.warning(f"  Timeout on {endpoint}, retrying in {delay:.1f}s")
                    time.sleep(delay)
                    continue
                logger.error(f"  Request timeout on {endpoint}")
                raise BackendError(504, f"Request timeout on {endpoint}")
            except requests.RequestException as e:
                logger.error(f"  Connection error on {endpoint}: {e}")
                raise BackendError(503, f"Connection error: {e}")

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < attempts - 1:
                delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                retry_after = response.headers.get("Retry-After")
                if retry_after:
                    try:
                        delay = min(float(retry_after), self.max_delay)
                    except ValueError:
                        pass
                logger.warning(f"  HTTP {response.status_code} on {endpoint}, retrying in {delay:.1f}s")
                time.sleep(delay)
                continue

            if response.status_code >= 400:
                logger.error(f"  HTTP error {response.status_code} on {endpoint}: {response.text[:200]}")
                self._raise_for_response(response, endpoint)

            if not response.content:
                return None
            return response.json()

        raise BackendError(503, f"Max retries exceeded on {endpoint}")

    # --- Tables ---

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Iterable[Filter] = (),
        order: str | None = None,
        ascending: bool = True,
        limit: int | None = None,
    ) -> list[dict]:
        """Select rows.

        `columns` accepts embedded relations (`client:clients(id, name)`).
        `order` is a column name sorted by `ascending`, or a preformatted
        multi-column spec such as "phase_number.asc,created_at.asc".
        """
        params: list[Filter] = [("select", " ".join(columns.split()))]
        params.extend(filters)
        if order and "." in order:
            params.append(("order", order))
        elif order:
            params.append(("order", f"{order}.{'asc' if ascending else 'desc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        return self._request("GET", table, params=params) or []

    def select_one(
        self,
        table: str,
        columns: str = "*",
        filters: Iterable[Filter] = (),
        maybe: bool = False,
    ) -> dict | None:
        """Select exactly one row; `maybe=True` returns None instead of raising on zero rows."""
        filters = list(filters)
        rows = self.select(table, columns=columns, filters=filters, limit=2)
        if not rows:
            if maybe:
                return None
            raise NotFoundError(table, filters)
        if len(rows) > 1:
            raise BackendError(406, f"Multiple {table} rows returned for single-row query", code="PGRST116")
        return rows[0]

    def insert(self, table: str, rows: dict | list[dict]) -> list[dict]:
        """Insert one or many rows and return the stored representation."""
        result = self._request("POST", table, json_body=rows, prefer="return=representation")
        return result or []

    def insert_one(self, table: str, row: dict) -> dict:
        """Insert a single row and return it."""
        result = self.insert(table, row)
        if not result:
            raise BackendError(500, f"Insert into {table} returned no row")
        return result[0]

    def update(self, table: str, values: dict, filters: Iterable[Filter]) -> list[dict]:
        """Update rows matching filters; returns the updated rows."""
        filters = list(filters)
        if not filters:
            raise ValueError(f"Refusing to update every row of {table}")
        result = self._request(
            "PATCH", table, params=filters, json_body=values, prefer="return=representation"
        )
        return result or []

    def upsert(self, table: str, rows: dict | list[dict], on_conflict: str) -> list[dict]:
        """Insert or merge rows on the given conflict columns."""
        result = self._request(
            "POST",
            table,
            params=[("on_conflict", on_conflict)],
            json_body=rows,
            prefer="resolution=merge-duplicates,return=representation",
        )
        return result or []

    def delete(self, table: str, filters: Iterable[Filter]) -> None:
        """Delete rows matching filters."""
        filters = list(filters)
        if not filters:
            raise ValueError(f"Refusing to delete every row of {table}")
        self._request("DELETE", table, params=filters)

    # --- RPC ---

    def rpc(self, name: str, params: dict | None = None) -> Any:
        """Call a stored procedure."""
        return self._request("POST", f"rpc/{name}", json_body=params or {})

    # --- Auth ---

    def get_current_user(self) -> dict | None:
        """Return the signed-in user, or None without a user token."""
        if not self.access_token:
            return None
        if self._current_user is not None:
            return self._current_user

        try:
            response = self._session.get(
                f"{self.auth_url}/user",
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Could not fetch current user: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"Current user lookup failed: HTTP {response.status_code}")
            return None

        self._current_user = response.json()
        return self._current_user

    def current_user_id(self) -> str | None:
        """Id of the signed-in user, or None."""
        user = self.get_current_user()
        return user.get("id") if user else None
