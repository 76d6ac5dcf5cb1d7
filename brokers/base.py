from abc import ABC, abstractmethod
import logging
import os
from typing import Any, Callable, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry
from prometheus_client import Histogram

logger = logging.getLogger(__name__)

# Default request timeout for broker HTTP calls. Gunicorn workers will be
# killed after 30s by default, so we keep a small safety margin to ensure the
# request fails before the worker does.  This value can still be overridden via
# the ``BROKER_TIMEOUT`` environment variable.
DEFAULT_TIMEOUT = int(os.environ.get("BROKER_TIMEOUT", "25"))

# Order placement must never be replayed, so only idempotent GETs are retried
# and only when explicitly enabled.
HTTP_RETRIES = int(os.environ.get("BROKER_HTTP_RETRIES", "0"))

# Prometheus metric capturing broker API HTTP request latency
BROKER_API_LATENCY = Histogram(
    "broker_api_request_duration_seconds",
    "Time spent performing broker API HTTP requests",
    ["broker", "method"],
)


class BrokerAPIError(Exception):
    """A broker answered with a non-2xx status or could not be reached.

    ``payload`` carries the broker's JSON error body verbatim so callers can
    surface it to the client.
    """

    default_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.default_status
        self.payload = payload


class BrokerAuthError(BrokerAPIError):
    """The broker rejected the stored token."""

    default_status = 401


class MissingCredentialsError(BrokerAPIError):
    """The credential bundle lacks a key the broker call needs."""

    default_status = 400


class BrokerBase(ABC):
    """
    Abstract base class for all broker adapters.

    Adapters are built from the JSON credential bundle stored on a
    ``BrokerCredential`` row. They never touch the database; tokens obtained
    through login, code exchange or refresh are returned to the caller and
    also recorded in :attr:`refreshed_tokens` so the route can persist them.
    """

    BROKER = ""
    DISPLAY_NAME = ""
    API_BASE = ""
    SUPPORTS_OAUTH = False
    # HTTP statuses that mean "the token is no longer valid"
    AUTH_STATUSES = (401,)

    def __init__(self, credentials, *, timeout=None, **kwargs):
        self.credentials: Dict[str, Any] = dict(credentials or {})
        # Use the passed timeout or fall back to the default configurable value
        self.timeout = timeout or DEFAULT_TIMEOUT
        self.api_base = (kwargs.get("api_base") or self.API_BASE).rstrip("/")
        # HTTP session shared by every call of this adapter instance
        self.session = self._create_session()
        self.refreshed_tokens: Dict[str, Any] = {}

    def _create_session(self):
        """Return a requests session; retries are opt-in and GET only."""
        session = requests.Session()
        retries = Retry(
            total=HTTP_RETRIES,
            backoff_factor=0.5,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _request(self, method, url, *, timeout=None, **kwargs):
        """Perform an HTTP request with a hard timeout.

        ``requests`` exceptions propagate so :meth:`_call` can turn them
        into :class:`BrokerAPIError`.
        """
        timeout = timeout or self.timeout
        with BROKER_API_LATENCY.labels(
            broker=self.__class__.__name__, method=method
        ).time():
            return self.session.request(method, url, timeout=timeout, **kwargs)

    # ------------------------------------------------------------------
    # credential helpers
    def credential(self, *names: str) -> Optional[str]:
        """Return the first non-empty value among ``names``."""
        for name in names:
            value = self.credentials.get(name)
            if value not in (None, ""):
                return value
        return None

    def require(self, *names: str) -> None:
        missing = [name for name in names if not self.credential(name)]
        if missing:
            raise MissingCredentialsError(
                f"Missing required {self.DISPLAY_NAME} credentials ({', '.join(missing)})"
            )

    @property
    def access_token(self) -> Optional[str]:
        return self.credential("Access Token")

    @property
    def refresh_token(self) -> Optional[str]:
        return self.credential("Refresh Token")

    def apply_tokens(self, tokens: Dict[str, Any]) -> None:
        """Merge freshly issued tokens into this adapter's credentials."""
        clean = {k: v for k, v in tokens.items() if v not in (None, "")}
        self.credentials.update(clean)
        self.refreshed_tokens.update(clean)

    # ------------------------------------------------------------------
    # HTTP plumbing
    def _auth_headers(self) -> Dict[str, str]:
        return {}

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.api_base}{path}"

    def _parse_body(self, response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {
                "message": f"Could not parse error response from {self.DISPLAY_NAME} API",
                "rawResponse": getattr(response, "text", ""),
            }

    def _error_message(self, payload: Any, default: str) -> str:
        if isinstance(payload, dict):
            for key in ("message", "error_description", "errorMessage", "error"):
                value = payload.get(key)
                if isinstance(value, str) and value:
                    return value
        return default

    def _check_payload(self, payload: Any) -> None:
        """Hook for brokers that report failures inside a 200 response."""

    def _call(self, method: str, path: str, *, auth: bool = True, headers=None, **kwargs) -> Any:
        request_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if auth:
            request_headers.update(self._auth_headers())
        if headers:
            request_headers.update(headers)

        url = self._url(path)
        try:
            response = self._request(method, url, headers=request_headers, **kwargs)
        except requests.exceptions.RequestException as exc:
            logger.warning(
                "%s request failed: %s %s", self.DISPLAY_NAME, method, url,
                extra={"broker": self.BROKER, "error": str(exc)},
            )
            raise BrokerAPIError(
                f"Failed to reach {self.DISPLAY_NAME} API: {exc}", 502
            ) from exc

        payload = self._parse_body(response)
        status = response.status_code
        if status in self.AUTH_STATUSES:
            raise BrokerAuthError(
                self._error_message(payload, f"{self.DISPLAY_NAME} rejected the access token"),
                401,
                payload,
            )
        if not 200 <= status < 300:
            raise BrokerAPIError(
                self._error_message(payload, f"{self.DISPLAY_NAME} API error"),
                status,
                payload,
            )
        self._check_payload(payload)
        return payload

    # ------------------------------------------------------------------
    # token refresh
    def with_token_refresh(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run ``func``; on an auth failure refresh once and retry once.

        When the refresh itself fails a :class:`BrokerAuthError` is raised and
        the adapter's credentials are left as they were.
        """
        try:
            return func(*args, **kwargs)
        except BrokerAuthError:
            if not self.refresh_token:
                raise BrokerAuthError(
                    "Access token expired and no refresh token available", 401
                )
            logger.info(
                "%s token rejected, refreshing", self.DISPLAY_NAME,
                extra={"broker": self.BROKER},
            )
            try:
                tokens = self.refresh_access_token()
            except BrokerAPIError as exc:
                raise BrokerAuthError(
                    "Failed to refresh token. Please re-authenticate.",
                    401,
                    exc.payload,
                ) from exc
            self.apply_tokens(tokens)

        return func(*args, **kwargs)

    @staticmethod
    def to_number(value: Any, cast: Callable[[Any], Any], field: str) -> Any:
        """Coerce an order field with ``cast``; bad input is a 400."""
        try:
            return cast(value)
        except (TypeError, ValueError):
            raise BrokerAPIError(f"Invalid {field}: {value!r}", 400)

    @staticmethod
    def extract_order_id(payload: Any) -> Optional[str]:
        """Return the order id from the first response shape that has one."""
        if not isinstance(payload, dict):
            return None
        data = payload.get("data")
        if isinstance(data, dict):
            for key in ("order_id", "orderid", "orderId", "id"):
                if data.get(key):
                    return str(data[key])
        for key in ("order_id", "orderid", "orderId", "id"):
            if payload.get(key):
                return str(payload[key])
        return None

    # ------------------------------------------------------------------
    # operations
    def authenticate(self) -> Dict[str, Any]:
        """Log in directly and return the issued tokens."""
        raise BrokerAPIError(
            f"{self.DISPLAY_NAME} uses OAuth; start with the oauth endpoint", 400
        )

    def authorize_url(self, state: str, redirect_uri: str) -> str:
        raise BrokerAPIError(f"{self.DISPLAY_NAME} does not support OAuth", 400)

    def exchange_code(self, code: str, redirect_uri: str) -> Dict[str, Any]:
        raise BrokerAPIError(f"{self.DISPLAY_NAME} does not support OAuth", 400)

    @abstractmethod
    def verify(self) -> Any:
        """Call an authenticated read-only endpoint to prove the token works."""

    @abstractmethod
    def refresh_access_token(self) -> Dict[str, Any]:
        """Exchange the stored refresh token for a new token set."""

    @abstractmethod
    def place_order(self, order_details: Dict[str, Any]) -> Any:
        pass

    @abstractmethod
    def cancel_order(self, order_id, **kwargs) -> Any:
        pass

    @abstractmethod
    def get_funds(self) -> Any:
        pass

    @abstractmethod
    def get_positions(self) -> Any:
        pass
