"""Base HTTP client for the Grifo API."""

import gzip
import json
import logging
from typing import Optional

import requests

__all__ = [
    "BaseApiClient",
    "GrifoClientError",
    "GrifoAuthError",
    "GrifoPayloadError",
    "GrifoTransientError",
]

logger = logging.getLogger(__name__)


class GrifoClientError(Exception):
    """Grifo client error."""

    pass


class GrifoAuthError(GrifoClientError):
    """Authentication error."""

    pass


class GrifoPayloadError(GrifoClientError):
    """Request rejected by the server (4xx). Sending it again will not help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GrifoTransientError(GrifoClientError):
    """Timeout, connection failure or 5xx. Safe to retry idempotent calls."""

    pass


class BaseApiClient:
    """Base HTTP client.

    Handles:
    - Session management
    - Authentication and tenant headers
    - Gzip compression
    - Per-request timeout
    - Error classification (transient vs. permanent)

    Every call makes exactly one attempt; retrying is left to the caller so
    that a single retry budget applies per inspection.
    """

    USER_AGENT = "Grifo-Sync/1.0.0"

    def __init__(
        self,
        api_url: str,
        token: Optional[str] = None,
        empresa_id: Optional[str] = None,
        compress: bool = True,
        timeout: int = 15,
        session: Optional[requests.Session] = None,
    ):
        """Initialize base API client.

        Args:
            api_url: Grifo API base URL
            token: Bearer token for authentication
            empresa_id: Tenant the device works for
            compress: Use gzip compression for payloads
            timeout: Request timeout in seconds (per attempt)
            session: Optional requests session (for dependency injection/testing)
        """
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.empresa_id = empresa_id
        self.compress = compress
        self.timeout = timeout
        self._session = session or requests.Session()
        self._owns_session = session is None  # Track if we created the session

    def _get_headers(self) -> dict:
        """Get request headers with authentication."""
        headers = {
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if self.empresa_id:
            headers["X-Empresa-ID"] = self.empresa_id
        return headers

    def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[dict] = None,
        params: Optional[dict] = None,
        files: Optional[dict] = None,
        compress: bool = False,
        timeout: Optional[float] = None,
    ) -> dict:
        """Make request to the Grifo API.

        Args:
            method: HTTP method
            endpoint: API endpoint (relative to api_url)
            data: Request data (JSON body, or form fields with ``files``)
            params: Query string parameters
            files: Multipart files
            compress: Whether to gzip compress the payload
            timeout: Override of the default timeout

        Returns:
            Response data as dict

        Raises:
            GrifoAuthError: For 401/403 responses
            GrifoTransientError: For timeouts, connection failures and 5xx
            GrifoPayloadError: For other 4xx responses
            GrifoClientError: For unreadable responses
        """
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        headers = self._get_headers()
        kwargs: dict = {"timeout": timeout or self.timeout, "headers": headers}

        if params:
            kwargs["params"] = params

        if files:
            kwargs["files"] = files
            if data:
                kwargs["data"] = data
        elif data:
            if compress and self.compress:
                json_data = json.dumps(data).encode("utf-8")
                compressed = gzip.compress(json_data)
                headers["Content-Type"] = "application/json"
                headers["Content-Encoding"] = "gzip"
                kwargs["data"] = compressed
            else:
                kwargs["json"] = data

        try:
            response = self._session.request(method, url, **kwargs)
        except requests.exceptions.ConnectionError as e:
            raise GrifoTransientError("Cannot connect to Grifo API") from e
        except requests.exceptions.Timeout as e:
            raise GrifoTransientError("Request timed out") from e

        if response.status_code == 401:
            raise GrifoAuthError("Invalid or expired API token")
        if response.status_code == 403:
            raise GrifoAuthError("Device not authorized for this company")

        # Server errors (5xx) are retryable
        if response.status_code >= 500:
            raise GrifoTransientError(f"Server error: {response.status_code}")

        if response.status_code >= 400:
            raise GrifoPayloadError(
                f"API error ({response.status_code}): "
                f"{self._error_detail(response) or response.reason}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise GrifoClientError("Invalid JSON in API response") from e

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        """Extract the server's error message, if any."""
        try:
            body = response.json()
        except ValueError:
            return ""
        if not isinstance(body, dict):
            return ""
        return body.get("message") or body.get("error") or ""

    def set_credentials(self, token: str, empresa_id: str) -> None:
        """Set authentication credentials."""
        self.token = token
        self.empresa_id = empresa_id

    def clear_credentials(self) -> None:
        """Clear authentication credentials."""
        self.token = None
        self.empresa_id = None

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __del__(self) -> None:
        try:
            self.close()
        except Exception:
            pass

    def __enter__(self) -> "BaseApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
