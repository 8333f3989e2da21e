"""wsapiclient is a Python client for authenticating against a WSAPI server.

It applies HTTP Basic credentials to every request and manages the
server-issued security token that non-GET requests require, falling back
to token-less requests on servers that predate the token endpoint.
"""

import importlib.metadata

from wsapiclient.exceptions import (
    # Base exceptions
    WsapiError,
    WsapiClientClosed,
    WsapiUriConstructionError,
    # Connection errors
    WsapiConnectionError,
    WsapiSystemUnavailableError,
    WsapiTimeoutError,
    WsapiProtocolError,
    WsapiNetworkError,
    # HTTP errors
    WsapiHTTPError,
    # 4xx client errors
    WsapiClientError,
    WsapiBadRequestError,
    WsapiAuthenticationError,
    WsapiPermissionError,
    WsapiResourceNotFoundError,
    WsapiRateLimitError,
    # 5xx server errors
    WsapiServerError,
    WsapiInternalServerError,
    WsapiBadGatewayError,
    WsapiServiceUnavailableError,
    WsapiGatewayTimeoutError,
)
from wsapiclient.WsapiClient import WsapiClient
from wsapiclient._httpx import (
    SecurityTokenCache,
    SecurityTokenState,
    TokenStatus,
    WsapiBasicAuth,
    WsapiConnectionParameters,
    WsapiCredentials,
)

__version__ = importlib.metadata.version("wsapiclient")
__all__ = [
    # Core client
    "WsapiClient",
    # Auth components
    "WsapiBasicAuth",
    "WsapiCredentials",
    "WsapiConnectionParameters",
    "SecurityTokenCache",
    "SecurityTokenState",
    "TokenStatus",
    # Base exceptions
    "WsapiError",
    "WsapiClientClosed",
    "WsapiUriConstructionError",
    # Connection errors
    "WsapiConnectionError",
    "WsapiSystemUnavailableError",
    "WsapiTimeoutError",
    "WsapiProtocolError",
    "WsapiNetworkError",
    # HTTP errors
    "WsapiHTTPError",
    # 4xx client errors
    "WsapiClientError",
    "WsapiBadRequestError",
    "WsapiAuthenticationError",
    "WsapiPermissionError",
    "WsapiResourceNotFoundError",
    "WsapiRateLimitError",
    # 5xx server errors
    "WsapiServerError",
    "WsapiInternalServerError",
    "WsapiBadGatewayError",
    "WsapiServiceUnavailableError",
    "WsapiGatewayTimeoutError",
]
