"""HTTP client with retry logic for the GlobalLeaderboards API."""

import logging
from typing import Callable, Optional

import requests

from .. import __version__
from ..errors import AuthError, GlobalLeaderboardsError
from .retry import RetryConfig, RetryExhausted, retry_with_backoff

__all__ = ["ApiClient"]

logger = logging.getLogger(__name__)

# Statuses worth retrying besides 5xx
RETRYABLE_STATUSES = frozenset({408, 429})


class _TransientError(Exception):
    """Internal: Marks an error as transient/retryable."""

    def __init__(self, error: GlobalLeaderboardsError):
        super().__init__(str(error))
        self.error = error


class ApiClient:
    """Authenticated HTTP client with retry.

    Handles:
    - Session management
    - Bearer authentication
    - Timeouts
    - Retry with exponential backoff on 5xx/408/429, timeouts and
      connection failures
    - Mapping error responses to ``GlobalLeaderboardsError``
    """

    DEFAULT_RETRY_CONFIG = RetryConfig(
        max_retries=3,
        base_delay=1.0,
        max_delay=10.0,
        exponential_base=2.0,
        jitter=True,
    )

    USER_AGENT = f"globalleaderboards-python/{__version__}"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: int = 30,
        auto_retry: bool = True,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """Initialize API client.

        Args:
            api_url: API base URL
            api_key: API key sent as a bearer token
            timeout: Request timeout in seconds
            auto_retry: Retry transient failures
            retry_config: Configuration for retry with exponential backoff
            session: Optional requests session (for dependency injection/testing)
            sleep: Optional sleep function used between retries (for testing)
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.auto_retry = auto_retry
        self.retry_config = retry_config or self.DEFAULT_RETRY_CONFIG
        self._sleep = sleep
        self._session = session or requests.Session()
        self._owns_session = session is None

    def _get_headers(self, authenticated: bool = True) -> dict:
        """Get request headers."""
        headers = {
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        if authenticated:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
        retry: bool = True,
    ) -> dict:
        """Make an authenticated request to the API.

        Args:
            method: HTTP method
            path: API path (e.g. ``/v1/scores``)
            body: JSON request body
            params: Query string parameters; ``None`` values are dropped
            retry: Whether to retry on transient failures

        Returns:
            Response data as dict

        Raises:
            AuthError: For 401/403 responses (not retried)
            GlobalLeaderboardsError: For other errors
        """
        url = f"{self.api_url}/{path.lstrip('/')}"
        kwargs: dict = {"timeout": self.timeout, "headers": self._get_headers()}
        if body is not None:
            kwargs["json"] = body
        if params:
            kwargs["params"] = {k: v for k, v in params.items() if v is not None}

        def do_request() -> dict:
            try:
                response = self._session.request(method, url, **kwargs)
            except requests.exceptions.Timeout:
                raise _TransientError(
                    GlobalLeaderboardsError(
                        "Request timeout", "TIMEOUT", details={"timeout": self.timeout}
                    )
                )
            except requests.exceptions.ConnectionError as e:
                raise _TransientError(
                    GlobalLeaderboardsError(
                        f"Cannot connect to GlobalLeaderboards API: {e}", "REQUEST_ERROR"
                    )
                )
            except requests.exceptions.RequestException as e:
                raise GlobalLeaderboardsError(str(e), "REQUEST_ERROR") from e

            if response.ok:
                return self._decode(response)

            error = self._error_from_response(response)
            if response.status_code >= 500 or response.status_code in RETRYABLE_STATUSES:
                raise _TransientError(error)
            raise error

        if not (retry and self.auto_retry):
            try:
                return do_request()
            except _TransientError as e:
                raise e.error from None

        retry_kwargs = {"sleep": self._sleep} if self._sleep else {}
        try:
            return retry_with_backoff(
                do_request,
                config=self.retry_config,
                retryable_exceptions=(_TransientError,),
                **retry_kwargs,
            )
        except RetryExhausted as e:
            if isinstance(e.last_error, _TransientError):
                raise e.last_error.error from e
            raise GlobalLeaderboardsError("Request failed after retries", "REQUEST_ERROR") from e

    def request_public(self, path: str, error_code: str, label: str) -> dict:
        """GET an unauthenticated endpoint without retry.

        Args:
            path: API path
            error_code: Code used when the server answers with an error status
            label: Human readable name used in error messages

        Raises:
            GlobalLeaderboardsError: ``TIMEOUT``, ``<error_code>`` or
                ``<label>_ERROR`` style failures
        """
        url = f"{self.api_url}/{path.lstrip('/')}"
        try:
            response = self._session.get(
                url, headers=self._get_headers(authenticated=False), timeout=self.timeout
            )
        except requests.exceptions.Timeout:
            raise GlobalLeaderboardsError(f"{label} timeout", "TIMEOUT") from None
        except requests.exceptions.RequestException as e:
            raise GlobalLeaderboardsError(str(e), error_code.replace("_FAILED", "_ERROR")) from e

        if not response.ok:
            raise GlobalLeaderboardsError(
                f"{label} failed: HTTP {response.status_code}",
                error_code,
                response.status_code,
            )
        return self._decode(response)

    @staticmethod
    def _decode(response: requests.Response) -> dict:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise GlobalLeaderboardsError(
                "Invalid JSON in API response", "INVALID_RESPONSE", response.status_code
            ) from e

    @staticmethod
    def _error_from_response(response: requests.Response) -> GlobalLeaderboardsError:
        """Build an SDK error from an error response body.

        The API answers ``{"error": {"code", "message", "details"}}`` but older
        deployments send ``{"error": "<code>", "message": "..."}``.
        """
        status = response.status_code
        code = "HTTP_ERROR"
        message = f"HTTP {status}"
        details = None
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                code = error.get("code") or code
                message = error.get("message") or message
                details = error.get("details")
            elif isinstance(error, str):
                code = error
                message = data.get("message") or message
                details = data.get("details")
            elif data.get("message"):
                message = data["message"]

        error_cls = AuthError if status in (401, 403) else GlobalLeaderboardsError
        return error_cls(message, code, status, details)

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
