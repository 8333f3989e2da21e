from __future__ import annotations

import asyncio
import json
import logging
import os
import platform
import re
import threading
from typing import Any, Dict, Optional, Union, cast, TYPE_CHECKING

import httpx

from wsapiclient._httpx import (
    SecurityTokenCache,
    SecurityTokenState,
    TokenStatus,
    WsapiBasicAuth,
    WsapiConnectionParameters,
    WsapiCredentials,
)
from wsapiclient.decorators import use_client_session
from wsapiclient.exceptions import WsapiClientClosed, WsapiUriConstructionError, wsapi_errors

if TYPE_CHECKING:  # pragma: no cover
    import ssl


# Constants
CONTENT_TYPE_JSON = "application/json"

DEFAULT_WSAPI_VERSION = "v2.0"

WSAPI_PATH = "/slm/webservice/"

SECURITY_TOKEN_PATH = "/security/authorize"
SECURITY_TOKEN_PARAM_KEY = "key"
OPERATION_RESULT_KEY = "OperationResult"
SECURITY_TOKEN_KEY = "SecurityToken"

# Major version 1 of the WSAPI predates security tokens
LEGACY_WSAPI_VERSION = re.compile(r"v?1[.]\d+")

USER_AGENT_STRING = "wsapiclient (Python)"

INTEGRATION_LIBRARY = "wsapiclient for Python"

# Legacy timeout constant, overall timeout in seconds
try:
    timeout_str = os.environ.get("WSAPICLIENT_HTTP_TIMEOUT")
    HTTPX_TIMEOUT = float(timeout_str) if timeout_str is not None else None
except (TypeError, ValueError):
    HTTPX_TIMEOUT = None

# Set up logger
logger = logging.getLogger("WsapiClient")


# Sentinel value for detecting unset timeout parameter
class _TimeoutUnsetType:
    def __repr__(self):
        return "_TIMEOUT_UNSET"


_TIMEOUT_UNSET = _TimeoutUnsetType()


def _get_timeout_config() -> dict:
    """Get timeout configuration from environment variables or defaults.

    Returns:
        dict: Timeout configuration dictionary with connect, read, write, and pool timeouts.
    """
    return {
        "connect": float(os.environ["WSAPICLIENT_CONNECT_TIMEOUT"])
        if "WSAPICLIENT_CONNECT_TIMEOUT" in os.environ
        else None,
        "read": float(os.environ["WSAPICLIENT_READ_TIMEOUT"])
        if "WSAPICLIENT_READ_TIMEOUT" in os.environ
        else None,
        "write": float(os.environ["WSAPICLIENT_WRITE_TIMEOUT"])
        if "WSAPICLIENT_WRITE_TIMEOUT" in os.environ
        else None,
        "pool": float(os.environ["WSAPICLIENT_POOL_TIMEOUT"])
        if "WSAPICLIENT_POOL_TIMEOUT" in os.environ
        else None,
    }


TIMEOUT_CONFIG = _get_timeout_config()


class WsapiClient:
    """A Python client for the WSAPI

    Every request sent through this client carries a preemptive HTTP Basic
    Authorization header. Requests that modify data (anything but GET) also
    carry a security token in the ``key`` query parameter when the WSAPI
    version requires one. The token is fetched once from
    ``<wsapi root>/security/authorize`` on first need and reused for the
    lifetime of the client. Servers without that endpoint are detected on
    the first attempt, after which requests are sent without a token.

    Initialization:
        WsapiClient is designed to be used as a context manager

        >>> from wsapiclient import WsapiClient
        >>> with WsapiClient(
        ...     "https://rally1.rallydev.com",
        ...     "user@company.com",
        ...     "password",
        ... ) as wsapi_client:
        ...     body = wsapi_client.wsapi_post("defect/create", {"Defect": {"Name": "Broken"}})
        ...

    Parameters:
        server_url (str): The base URL of the server.
        username (str): The username for authentication.
        password (str): The password for authentication.
        wsapi_version (str, optional), keyword-only: WSAPI version tag. Defaults to the
            WSAPICLIENT_WSAPI_VERSION environment variable, or "v2.0".
        ssl_verify (bool | ssl.SSLContext), keyword-only: Whether to verify SSL certificates,
            or a custom SSL context. Default is True.
        timeout (float | dict | httpx.Timeout | None, optional), keyword-only: Timeout
            configuration for HTTP requests.
        http_client (httpx.Client, optional), keyword-only: Preconfigured client used as the
            transport. It is not closed by WsapiClient.
        async_http_client (httpx.AsyncClient, optional), keyword-only: Preconfigured async
            client used as the transport. It is not closed by WsapiClient.
    """

    def __init__(
        self,
        server_url: str,
        username: str,
        password: str,
        *,
        wsapi_version: str | None = None,
        ssl_verify: bool | ssl.SSLContext = True,
        timeout: float | dict | httpx.Timeout | None | _TimeoutUnsetType = _TIMEOUT_UNSET,
        http_client: httpx.Client | None = None,
        async_http_client: httpx.AsyncClient | None = None,
    ):
        server = httpx.URL(server_url)
        if server.scheme not in ("http", "https"):
            raise httpx.UnsupportedProtocol(
                f"Request URL has an unsupported protocol '{server.scheme}://'."
            )

        if timeout is _TIMEOUT_UNSET:
            timeout_value: httpx.Timeout = WsapiClient._construct_timeout_from_env()
        elif timeout is None:
            timeout_value = httpx.Timeout(None)
        else:
            timeout_value = WsapiClient._construct_timeout(
                cast(Union[float, dict, httpx.Timeout], timeout)
            )

        self.wsapi_parameters: WsapiConnectionParameters = WsapiConnectionParameters(
            server_url=server_url.rstrip("/"),
            wsapi_version=wsapi_version
            or os.environ.get("WSAPICLIENT_WSAPI_VERSION")
            or DEFAULT_WSAPI_VERSION,
            credentials=WsapiCredentials(
                username=username, password=password, target_host=server.host
            ),
            ssl_verify=ssl_verify,
            timeout=timeout_value,
        )
        self.wsapi_auth: WsapiBasicAuth = WsapiBasicAuth(self.wsapi_parameters.credentials)
        self._security_token: SecurityTokenCache = SecurityTokenCache()
        self.base_headers = {
            "accept": CONTENT_TYPE_JSON,
            "user-agent": USER_AGENT_STRING,
        }
        self._application_name: str | None = None
        self._application_vendor: str | None = None
        self._application_version: str | None = None

        self.httpx_client: httpx.Client | None = http_client
        self.async_httpx_client: httpx.AsyncClient | None = async_http_client
        self._owns_http_client = http_client is None
        self._owns_async_http_client = async_http_client is None
        self._session_lock = threading.Lock()
        self.is_closed = False

    def __repr__(self) -> str:
        return f"WsapiClient for {self.wsapi_url} as {self.username}"

    def __enter__(self):
        """Context manager entry for WsapiClient.

        Returns:
            WsapiClient: The WsapiClient instance.

        Note:
            Opens an httpx.Client for the WSAPI using `self.get_wsapi_http_client()`
            unless a preconfigured client was supplied.
        """
        self.validate_client_open()
        if not self.httpx_client or self.httpx_client.is_closed:
            self.httpx_client = self.get_wsapi_http_client()
            self._owns_http_client = True
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    async def __aenter__(self):
        """Asynchronous context manager entry for WsapiClient.

        Returns:
            WsapiClient: The WsapiClient instance.
        """
        self.validate_client_open()
        if not self.async_httpx_client or self.async_httpx_client.is_closed:
            self.async_httpx_client = self.get_wsapi_http_client_async()
            self._owns_async_http_client = True
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.async_close()

    @staticmethod
    def _construct_timeout_from_env() -> httpx.Timeout:
        """Construct httpx.Timeout object from environment variables only.

        Returns:
            httpx.Timeout: Configured timeout object from environment variables.
                          If no environment configuration is found, returns httpx.Timeout(None).
        """
        default_timeout_config = {k: v for k, v in TIMEOUT_CONFIG.items() if v is not None}

        if not default_timeout_config and HTTPX_TIMEOUT is None:
            return httpx.Timeout(None)

        return httpx.Timeout(HTTPX_TIMEOUT, **default_timeout_config)

    @staticmethod
    def _construct_timeout(timeout: float | dict | httpx.Timeout) -> httpx.Timeout:
        """Construct httpx.Timeout object from user-provided timeout parameter.

        If timeout is a dict, any unspecified values will be replaced by the environment
        default values.

        Args:
            timeout: Timeout configuration - can be float, dict, or httpx.Timeout.

        Returns:
            httpx.Timeout: Configured timeout object.
        """
        if isinstance(timeout, httpx.Timeout):
            return timeout
        elif isinstance(timeout, dict):
            default_timeout_config = {k: v for k, v in TIMEOUT_CONFIG.items() if v is not None}
            merged_timeout = {**default_timeout_config, **timeout}
            return httpx.Timeout(HTTPX_TIMEOUT, **merged_timeout)
        else:
            return httpx.Timeout(timeout)

    def close(self) -> None:
        """Close the WsapiClient and any httpx clients it opened.

        Preconfigured clients passed in by the caller are left open. An
        httpx.AsyncClient opened by an async request is closed here too, as
        long as no event loop is running in this thread. From inside a running
        loop, use `async_close()` instead.
        """
        if self._owns_http_client and self.httpx_client and not self.httpx_client.is_closed:
            logger.debug("Closing httpx.Client session")
            self.httpx_client.close()
        if (
            self._owns_async_http_client
            and self.async_httpx_client
            and not self.async_httpx_client.is_closed
        ):
            self._close_async_http_client(self.async_httpx_client)
        self.is_closed = True

    @staticmethod
    def _close_async_http_client(async_client: httpx.AsyncClient) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Closing httpx.AsyncClient session")
            try:
                asyncio.run(async_client.aclose())
            except Exception as e:
                # Pooled connections may belong to a loop that has since closed
                logger.error(f"Error during httpx.AsyncClient cleanup: {e}")
            return
        logger.warning(
            "close() called from a running event loop; "
            "use async_close() to release the httpx.AsyncClient session"
        )

    async def async_close(self) -> None:
        """Close the WsapiClient and any httpx clients it opened, asynchronously."""
        if (
            self._owns_async_http_client
            and self.async_httpx_client
            and not self.async_httpx_client.is_closed
        ):
            logger.debug("Closing httpx.AsyncClient session")
            await self.async_httpx_client.aclose()
        self.close()

    def validate_client_open(self):
        if self.is_closed:
            raise WsapiClientClosed()

    @property
    def server_url(self) -> str:
        return self.wsapi_parameters.server_url

    @property
    def wsapi_version(self) -> str:
        return self.wsapi_parameters.wsapi_version

    @property
    def username(self) -> str:
        return self.wsapi_parameters.credentials.username

    @property
    def wsapi_url(self) -> str:
        """Root URL of the WSAPI, e.g. https://rally1.rallydev.com/slm/webservice/v2.0"""
        return self.server_url + WSAPI_PATH + self.wsapi_version

    @property
    def security_token_url(self) -> str:
        return self.wsapi_url + SECURITY_TOKEN_PATH

    @property
    def is_legacy_wsapi_version(self) -> bool:
        """True for WSAPI 1.x, which has no security tokens."""
        return LEGACY_WSAPI_VERSION.fullmatch(self.wsapi_version) is not None

    @property
    def security_token_state(self) -> SecurityTokenState:
        """Current state of the security token for this client."""
        return self._security_token.state

    def set_application_name(self, name: str) -> None:
        """Set the name reported in the X-RallyIntegrationName header."""
        self._application_name = name

    def set_application_vendor(self, vendor: str) -> None:
        """Set the vendor reported in the X-RallyIntegrationVendor header."""
        self._application_vendor = vendor

    def set_application_version(self, version: str) -> None:
        """Set the version reported in the X-RallyIntegrationVersion header."""
        self._application_version = version

    @property
    def integration_headers(self) -> Dict[str, str]:
        """Headers identifying this integration to the server."""
        headers = {
            "X-RallyIntegrationLibrary": INTEGRATION_LIBRARY,
            "X-RallyIntegrationOS": " ".join(
                part for part in (platform.system(), platform.release(), platform.machine()) if part
            ),
            "X-RallyIntegrationPlatform": f"Python {platform.python_version()}",
        }
        if self._application_name:
            headers["X-RallyIntegrationName"] = self._application_name
        if self._application_vendor:
            headers["X-RallyIntegrationVendor"] = self._application_vendor
        if self._application_version:
            headers["X-RallyIntegrationVersion"] = self._application_version
        return headers

    def requires_security_token(self, request: httpx.Request) -> bool:
        """Whether the request must carry a security token.

        Reads (GET) never do, and neither does anything sent to a 1.x WSAPI.
        """
        return request.method != "GET" and not self.is_legacy_wsapi_version

    def build_url(self, path: str) -> str:
        """Build complete URL from the WSAPI root and path.

        Args:
            path (str): The API endpoint path, e.g. "defect/create".

        Returns:
            str: The complete URL.
        """
        return self.wsapi_url + "/" + path.lstrip("/")

    def _prepare_request(self, request: httpx.Request) -> None:
        # httpx only merges client default headers in build_request, not in send
        self.wsapi_auth.authenticate(request)
        for name, value in {**self.base_headers, **self.integration_headers}.items():
            request.headers.setdefault(name, value)

    @staticmethod
    def _attach_security_token(request: httpx.Request, state: SecurityTokenState) -> None:
        if state.status is not TokenStatus.RESOLVED:
            return
        try:
            request.url = request.url.copy_set_param(SECURITY_TOKEN_PARAM_KEY, state.token)
        except httpx.InvalidURL as e:
            raise WsapiUriConstructionError(f"Unable to build URI with security token: {e}") from e

    @staticmethod
    def parse_security_token(body: str) -> str:
        """Extract the token from a security endpoint response.

        Response Structure:
            {"OperationResult": {"SecurityToken": "UUID"}}

        Raises:
            ValueError: If the body is not JSON or lacks a string token.
        """
        try:
            token = json.loads(body)[OPERATION_RESULT_KEY][SECURITY_TOKEN_KEY]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed security token response: {e!r}") from e
        if not isinstance(token, str):
            raise ValueError(f"Malformed security token response: token is {type(token).__name__}")
        return token

    def _fetch_security_token(self) -> str:
        logger.debug(f"Requesting security token from {self.security_token_url}")
        token = self.parse_security_token(
            self.execute(httpx.Request("GET", self.security_token_url))
        )
        logger.info("Obtained WSAPI security token")
        return token

    async def _fetch_security_token_async(self) -> str:
        logger.debug(f"Requesting security token from {self.security_token_url}")
        token = self.parse_security_token(
            await self.async_execute(httpx.Request("GET", self.security_token_url))
        )
        logger.info("Obtained WSAPI security token")
        return token

    @wsapi_errors
    @use_client_session
    def execute(self, request: httpx.Request) -> str:
        """Execute a request against the WSAPI.

        Always attaches the Basic Authentication header, since every WSAPI
        resource is protected. Non-GET requests to a WSAPI that supports
        security tokens also get the ``key`` query parameter.

        Args:
            request (httpx.Request): The request to execute. It is modified in place.

        Returns:
            str: The raw response body.

        Raises:
            WsapiHTTPError: For non-success responses (a subclass per status code).
            WsapiConnectionError: For network connectivity issues.
            WsapiUriConstructionError: If the token cannot be added to the request URI.
            WsapiClientClosed: If the client has been closed.
        """
        self._prepare_request(request)
        if self.requires_security_token(request):
            state = self._security_token.resolve(self._fetch_security_token)
            self._attach_security_token(request, state)
        response = self.httpx_client.send(request)
        response.raise_for_status()
        return response.text

    @wsapi_errors
    @use_client_session
    async def async_execute(self, request: httpx.Request) -> str:
        """Asynchronously execute a request against the WSAPI.

        Same behavior as `execute`, using the httpx.AsyncClient transport.
        """
        self._prepare_request(request)
        if self.requires_security_token(request):
            state = await self._security_token.async_resolve(self._fetch_security_token_async)
            self._attach_security_token(request, state)
        response = await self.async_httpx_client.send(request)
        response.raise_for_status()
        return response.text

    def _build_request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        query_params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Request:
        if isinstance(payload, (str, bytes)):
            return httpx.Request(
                method,
                self.build_url(path),
                params=query_params,
                content=payload,
                headers={"content-type": CONTENT_TYPE_JSON},
            )
        return httpx.Request(method, self.build_url(path), params=query_params, json=payload)

    def wsapi_get(self, path, query_params: Optional[Dict[str, Any]] = None) -> str:
        """Fetch a WSAPI resource.

        Args:
            path (str): WSAPI endpoint path, relative to the WSAPI root.
            query_params (dict, optional): Query parameters. Defaults to None.

        Returns:
            str: The raw response body.
        """
        return self.execute(self._build_request("GET", path, query_params=query_params))

    def wsapi_post(self, path, payload, query_params: Optional[Dict[str, Any]] = None) -> str:
        """Create data through the WSAPI.

        Args:
            path (str): WSAPI endpoint path, relative to the WSAPI root.
            payload (str | bytes | dict): Serialized JSON, or a value passed to httpx as json.
            query_params (dict, optional): Query parameters. Defaults to None.

        Returns:
            str: The raw response body.
        """
        return self.execute(self._build_request("POST", path, payload, query_params))

    def wsapi_put(self, path, payload, query_params: Optional[Dict[str, Any]] = None) -> str:
        """Update data through the WSAPI. Arguments as for `wsapi_post`."""
        return self.execute(self._build_request("PUT", path, payload, query_params))

    def wsapi_delete(self, path, query_params: Optional[Dict[str, Any]] = None) -> str:
        """Delete a WSAPI resource. Arguments as for `wsapi_get`."""
        return self.execute(self._build_request("DELETE", path, query_params=query_params))

    async def wsapi_get_async(self, path, query_params: Optional[Dict[str, Any]] = None) -> str:
        return await self.async_execute(
            self._build_request("GET", path, query_params=query_params)
        )

    async def wsapi_post_async(
        self, path, payload, query_params: Optional[Dict[str, Any]] = None
    ) -> str:
        return await self.async_execute(self._build_request("POST", path, payload, query_params))

    async def wsapi_put_async(
        self, path, payload, query_params: Optional[Dict[str, Any]] = None
    ) -> str:
        return await self.async_execute(self._build_request("PUT", path, payload, query_params))

    async def wsapi_delete_async(
        self, path, query_params: Optional[Dict[str, Any]] = None
    ) -> str:
        return await self.async_execute(
            self._build_request("DELETE", path, query_params=query_params)
        )

    def get_wsapi_http_client(self) -> httpx.Client:
        """Returns a httpx client for use in WSAPI communication.

        Returns:
            httpx.Client: HTTP client configured with authentication, timeout,
                SSL verification and default headers.
        """
        return httpx.Client(
            timeout=self.wsapi_parameters.timeout,
            verify=self.wsapi_parameters.ssl_verify,
            auth=self.wsapi_auth,
            headers=self.base_headers,
        )

    def get_wsapi_http_client_async(self) -> httpx.AsyncClient:
        """Returns an async httpx client for use in WSAPI communication."""
        return httpx.AsyncClient(
            timeout=self.wsapi_parameters.timeout,
            verify=self.wsapi_parameters.ssl_verify,
            auth=self.wsapi_auth,
            headers=self.base_headers,
        )
