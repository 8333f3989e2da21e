"""
Custom exceptions for the wsapiclient package.

This module provides WSAPI-specific exceptions that wrap httpx exceptions
so callers get meaningful error context while still being able to catch
the underlying httpx error types.
"""

import functools
import inspect
from typing import (
    Callable,
    ParamSpec,
    TypeVar,
    Any,
    Dict,
    Type,
    Optional,
    Union,
    cast,
    overload,
    Awaitable,
)

import httpx

P = ParamSpec("P")
T = TypeVar("T")


# Base WSAPI exceptions
class WsapiError(Exception):
    """Base exception for all WSAPI-related errors."""

    pass


class WsapiClientClosed(WsapiError):
    """
    Raised when an operation is attempted on a closed WsapiClient.
    """

    def __init__(self, message: str = "The WsapiClient is closed") -> None:
        super().__init__(message)


class WsapiUriConstructionError(WsapiError, OSError):
    """
    Raised when a request URI cannot be rebuilt with the security token.

    This is always fatal for the request that triggered it.
    """

    def __init__(self, message: str = "Unable to build URI with security token") -> None:
        super().__init__(message)


# Connection and network errors
class WsapiConnectionError(WsapiError, httpx.RequestError):
    """
    Base class for WSAPI connection-related errors.
    Raised when the WSAPI server cannot be reached or the exchange breaks off.
    """

    def __init__(self, message: str, *, request: httpx.Request) -> None:
        super().__init__(message)
        self.message = message
        self.request = request

    def __str__(self) -> str:
        return f"WSAPI connection error: {self.message}"


class WsapiSystemUnavailableError(WsapiConnectionError):
    """
    Raised when the WSAPI server refuses the connection or cannot be resolved.
    """

    def __str__(self) -> str:
        return f"WSAPI system unavailable: {self.message}"


class WsapiTimeoutError(WsapiConnectionError, httpx.TimeoutException):
    """
    Raised when requests to the WSAPI time out.
    """

    def __str__(self) -> str:
        return f"WSAPI request timeout: {self.message}"


class WsapiProtocolError(WsapiConnectionError):
    """
    Raised for HTTP protocol-level errors, such as a server closing the
    connection without a response.
    """

    def __str__(self) -> str:
        return f"WSAPI protocol error: {self.message}"


class WsapiNetworkError(WsapiConnectionError):
    """
    Raised for general network connectivity issues.
    """

    def __str__(self) -> str:
        return f"WSAPI network error: {self.message}"


# HTTP Status-based exceptions
class WsapiHTTPError(WsapiError, httpx.HTTPStatusError):
    """
    Base class for WSAPI HTTP status errors.
    """

    def __init__(self, message: str, *, request: httpx.Request, response: httpx.Response) -> None:
        super().__init__(message, request=request, response=response)
        self.message = message

    def __str__(self) -> str:
        return f"WSAPI HTTP error: {self.message} (HTTP {self.response.status_code})"


# 4xx Client Errors
class WsapiClientError(WsapiHTTPError):
    """
    Base class for 4xx client errors returned by the WSAPI.
    """

    def __str__(self) -> str:
        return f"WSAPI client error: {self.message} (HTTP {self.response.status_code})"


class WsapiBadRequestError(WsapiClientError):
    """Raised for 400 bad request errors."""

    def __init__(
        self,
        message: str = "Bad request - malformed request or invalid parameters",
        *,
        request: httpx.Request,
        response: httpx.Response,
    ) -> None:
        super().__init__(message, request=request, response=response)

    def __str__(self) -> str:
        return f"WSAPI bad request: {self.message}"


class WsapiAuthenticationError(WsapiClientError):
    """
    Raised for 401 authentication failures.
    The username/password pair was rejected by the server.
    """

    def __init__(
        self,
        message: str = "Authentication failed - invalid username or password",
        *,
        request: httpx.Request,
        response: httpx.Response,
    ) -> None:
        super().__init__(message, request=request, response=response)

    def __str__(self) -> str:
        return f"WSAPI authentication failed: {self.message}"


class WsapiPermissionError(WsapiClientError):
    """
    Raised for 403 permission denied errors.
    The user lacks access to the requested object or workspace.
    """

    def __init__(
        self,
        message: str = "Permission denied - insufficient WSAPI permissions",
        *,
        request: httpx.Request,
        response: httpx.Response,
    ) -> None:
        super().__init__(message, request=request, response=response)

    def __str__(self) -> str:
        return f"WSAPI permission denied: {self.message}"


class WsapiResourceNotFoundError(WsapiClientError):
    """
    Raised for 404 not found errors.
    The object or endpoint does not exist on this server version.
    """

    def __init__(
        self,
        message: str = "Resource not found - WSAPI object or endpoint missing for the request",
        *,
        request: httpx.Request,
        response: httpx.Response,
    ) -> None:
        super().__init__(message, request=request, response=response)

    def __str__(self) -> str:
        return f"WSAPI resource not found: {self.message}"


class WsapiRateLimitError(WsapiClientError):
    """Raised for 429 rate limiting errors."""

    def __init__(
        self,
        message: str = "Rate limit exceeded - too many requests to the WSAPI",
        *,
        request: httpx.Request,
        response: httpx.Response,
    ) -> None:
        super().__init__(message, request=request, response=response)

    def __str__(self) -> str:
        return f"WSAPI rate limit exceeded: {self.message}"


# 5xx Server Errors
class WsapiServerError(WsapiHTTPError):
    """
    Base class for 5xx server errors returned by the WSAPI.
    """

    def __str__(self) -> str:
        return f"WSAPI server error: {self.message} (HTTP {self.response.status_code})"


class WsapiInternalServerError(WsapiServerError):
    """Raised for 500 internal server errors."""

    def __init__(
        self,
        message: str = "Internal server error - unexpected WSAPI error",
        *,
        request: httpx.Request,
        response: httpx.Response,
    ) -> None:
        super().__init__(message, request=request, response=response)

    def __str__(self) -> str:
        return f"WSAPI internal server error: {self.message}"


class WsapiBadGatewayError(WsapiServerError):
    """Raised for 502 bad gateway errors."""

    def __init__(
        self,
        message: str = "Bad gateway - invalid response from upstream server",
        *,
        request: httpx.Request,
        response: httpx.Response,
    ) -> None:
        super().__init__(message, request=request, response=response)

    def __str__(self) -> str:
        return f"WSAPI bad gateway: {self.message}"


class WsapiServiceUnavailableError(WsapiServerError):
    """
    Raised for 503 service unavailable errors.
    The server is under maintenance or overloaded.
    """

    def __init__(
        self,
        message: str = "Service unavailable - WSAPI temporarily unavailable",
        *,
        request: httpx.Request,
        response: httpx.Response,
    ) -> None:
        super().__init__(message, request=request, response=response)

    def __str__(self) -> str:
        return f"WSAPI service unavailable: {self.message}"


class WsapiGatewayTimeoutError(WsapiServerError):
    """Raised for 504 gateway timeout errors."""

    def __init__(
        self,
        message: str = "Gateway timeout - upstream server response timeout",
        *,
        request: httpx.Request,
        response: httpx.Response,
    ) -> None:
        super().__init__(message, request=request, response=response)

    def __str__(self) -> str:
        return f"WSAPI gateway timeout: {self.message}"


# Exception mapping dictionaries
_HTTP_STATUS_EXCEPTIONS: Dict[int, Type[WsapiHTTPError]] = {
    # 4xx Client Errors
    400: WsapiBadRequestError,
    401: WsapiAuthenticationError,
    403: WsapiPermissionError,
    404: WsapiResourceNotFoundError,
    429: WsapiRateLimitError,
    # 5xx Server Errors
    500: WsapiInternalServerError,
    502: WsapiBadGatewayError,
    503: WsapiServiceUnavailableError,
    504: WsapiGatewayTimeoutError,
}

_CONNECTION_EXCEPTIONS: Dict[Type[httpx.RequestError], Type[WsapiConnectionError]] = {
    httpx.ConnectError: WsapiSystemUnavailableError,
    httpx.TimeoutException: WsapiTimeoutError,
    httpx.ConnectTimeout: WsapiTimeoutError,
    httpx.ReadTimeout: WsapiTimeoutError,
    httpx.WriteTimeout: WsapiTimeoutError,
    httpx.PoolTimeout: WsapiTimeoutError,
    httpx.RemoteProtocolError: WsapiProtocolError,
    httpx.NetworkError: WsapiNetworkError,
    httpx.ReadError: WsapiNetworkError,
    httpx.WriteError: WsapiNetworkError,
    httpx.CloseError: WsapiNetworkError,
}


def _get_error_detail(response: Optional[httpx.Response]) -> str:
    """Extract error details from a WSAPI response, safely handling any exceptions."""
    if response is None:
        return "No response available"
    try:
        error_text = response.text or "No error details in response"
        # Limit length to prevent extremely long error messages
        return error_text[:500] + "..." if len(error_text) > 500 else error_text
    except Exception:
        return "Unable to read error details from response"


def _create_wsapi_exception(
    original_error: Union[httpx.RequestError, httpx.HTTPStatusError],
) -> WsapiError:
    """Create the matching WSAPI exception for an httpx error."""

    # Handle HTTP status errors (have response)
    if isinstance(original_error, httpx.HTTPStatusError):
        status_code = original_error.response.status_code
        error_detail = _get_error_detail(original_error.response)

        if status_code in _HTTP_STATUS_EXCEPTIONS:
            http_exception_class: Type[WsapiHTTPError] = _HTTP_STATUS_EXCEPTIONS[status_code]
            return http_exception_class(
                error_detail, request=original_error.request, response=original_error.response
            )

        if 400 <= status_code < 500:
            return WsapiClientError(
                f"Client error: {error_detail}",
                request=original_error.request,
                response=original_error.response,
            )
        elif 500 <= status_code < 600:
            return WsapiServerError(
                f"Server error: {error_detail}",
                request=original_error.request,
                response=original_error.response,
            )
        else:
            return WsapiHTTPError(
                f"HTTP error: {error_detail}",
                request=original_error.request,
                response=original_error.response,
            )

    # Handle connection errors (no response)
    req_err = cast(httpx.RequestError, original_error)
    error_type = type(req_err)
    if error_type in _CONNECTION_EXCEPTIONS:
        exception_class = _CONNECTION_EXCEPTIONS[error_type]
        return exception_class(str(req_err), request=req_err.request)
    return WsapiConnectionError(f"Connection error: {req_err}", request=req_err.request)


@overload
def wsapi_errors(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    ...  # pragma: no cover


@overload
def wsapi_errors(func: Callable[P, T]) -> Callable[P, T]:
    ...  # pragma: no cover


def wsapi_errors(func: Callable[P, Any]) -> Callable[P, Any]:
    """
    Decorator that converts httpx exceptions to WSAPI-specific exceptions.

    Both httpx.RequestError (connection issues) and httpx.HTTPStatusError
    (non-success status) are re-raised as the matching WsapiError subclass.
    Exceptions that are already WsapiError instances pass through untouched.

    Works with both synchronous and asynchronous functions.

    Usage:
        >>> @wsapi_errors
        ... def get_defect(self, object_id: str):
        ...     return self.execute(httpx.Request("GET", self.build_url(f"defect/{object_id}")))
    """
    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except WsapiError:
                raise
            except (httpx.RequestError, httpx.HTTPStatusError) as e:
                wsapi_exception = _create_wsapi_exception(e)
                raise wsapi_exception from e

        return cast(Callable[P, Awaitable[T]], async_wrapper)
    else:

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except WsapiError:
                raise
            except (httpx.RequestError, httpx.HTTPStatusError) as e:
                wsapi_exception = _create_wsapi_exception(e)
                raise wsapi_exception from e

        return cast(Callable[P, T], sync_wrapper)
