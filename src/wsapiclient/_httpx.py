from __future__ import annotations

import asyncio
import base64
import enum
import logging
import threading
import httpx

from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, NamedTuple, Optional

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Generator
    import ssl

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WsapiCredentials:
    """Identity material used to authenticate against a WSAPI server.

    Attributes:
        username (str): The username for authentication.
        password (str): The password for authentication.
        target_host (str): Host the credentials are scoped to.
    """

    username: str
    password: str
    target_host: str

    def __repr__(self) -> str:
        return (
            f"WsapiCredentials(username={self.username!r}, password='***',"
            f" target_host={self.target_host!r})"
        )


@dataclass(frozen=True)
class WsapiConnectionParameters:
    """Parameters required to connect to a WSAPI server.

    Attributes:
        server_url (str): The base URL of the server, e.g. https://rally1.rallydev.com
        wsapi_version (str): The WSAPI version tag, e.g. "v2.0" or "1.43".
        credentials (WsapiCredentials): Username/password scoped to the server host.
        ssl_verify (bool): Whether to verify SSL certificates.
        timeout (httpx.Timeout | None): Configured timeout object for HTTP requests,
            or None for unlimited timeout (default behavior)
    """

    server_url: str
    wsapi_version: str
    credentials: WsapiCredentials
    ssl_verify: bool | ssl.SSLContext
    timeout: httpx.Timeout


class WsapiBasicAuth(httpx.Auth):
    """Preemptive HTTP Basic authentication for the WSAPI.

    The header is attached to every request up front instead of waiting for a
    401 challenge, since every WSAPI resource requires authentication.
    """

    def __init__(self, credentials: WsapiCredentials):
        self._credentials = credentials

    @property
    def credentials(self) -> WsapiCredentials:
        return self._credentials

    @staticmethod
    def build_auth_header(credentials: WsapiCredentials) -> str:
        """Build the value of the Authorization header for the given credentials.

        Args:
            credentials (WsapiCredentials): The credentials to encode.

        Returns:
            str: ``Basic <base64(username:password)>``, UTF-8 encoded.
        """
        user_pass = f"{credentials.username}:{credentials.password}".encode("utf-8")
        return "Basic " + base64.b64encode(user_pass).decode("ascii")

    def authenticate(self, request: httpx.Request) -> httpx.Request:
        """Attach the Authorization header to the request in place."""
        request.headers["Authorization"] = self.build_auth_header(self._credentials)
        return request

    def auth_flow(self, request: httpx.Request) -> "Generator[httpx.Request, httpx.Response, None]":
        yield self.authenticate(request)


class TokenStatus(enum.Enum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    UNAVAILABLE = "unavailable"


class SecurityTokenState(NamedTuple):
    """Snapshot of the security token lifecycle for one client.

    ``token`` is only set when ``status`` is ``TokenStatus.RESOLVED``.
    """

    status: TokenStatus
    token: Optional[str] = None

    @classmethod
    def unresolved(cls) -> SecurityTokenState:
        return cls(TokenStatus.UNRESOLVED)

    @classmethod
    def resolved(cls, token: str) -> SecurityTokenState:
        return cls(TokenStatus.RESOLVED, token)

    @classmethod
    def unavailable(cls) -> SecurityTokenState:
        return cls(TokenStatus.UNAVAILABLE)

    @property
    def is_settled(self) -> bool:
        return self.status is not TokenStatus.UNRESOLVED


class SecurityTokenCache:
    """Lazily resolved security token shared by all callers of one client.

    The token is fetched at most once. Concurrent callers block until the
    first fetch settles and then reuse its outcome. A failed fetch settles
    the cache as unavailable and is never retried.

    The fetch callable returns the token or raises. httpx errors (missing
    endpoint, failed status, network trouble) and ValueError (malformed
    response body) settle the cache as unavailable; anything else propagates
    and leaves it unresolved.
    """

    def __init__(self):
        self._state: SecurityTokenState = SecurityTokenState.unresolved()
        self._lock: threading.Lock = threading.Lock()
        self._async_lock: Optional[asyncio.Lock] = None

    @property
    def state(self) -> SecurityTokenState:
        return self._state

    def resolve(self, fetch: Callable[[], str]) -> SecurityTokenState:
        """Return the settled token state, fetching the token if nobody has yet.

        Args:
            fetch: Callable that retrieves the token from the server.

        Returns:
            SecurityTokenState: Either resolved with a token or unavailable.
        """
        state = self._state
        if state.is_settled:
            return state
        with self._lock:
            if not self._state.is_settled:
                try:
                    self._state = SecurityTokenState.resolved(fetch())
                except (httpx.HTTPError, ValueError) as e:
                    self._state = SecurityTokenState.unavailable()
                    _log_unavailable(e)
            return self._state

    async def async_resolve(self, fetch: Callable[[], Awaitable[str]]) -> SecurityTokenState:
        """Asynchronous counterpart of ``resolve``.

        Async callers are serialized on an asyncio.Lock. The outcome is
        published under the thread lock so it cannot overwrite a state the
        synchronous path has already settled.
        """
        state = self._state
        if state.is_settled:
            return state
        if self._async_lock is None:
            self._async_lock = asyncio.Lock()
        async with self._async_lock:
            if self._state.is_settled:
                return self._state
            try:
                outcome = SecurityTokenState.resolved(await fetch())
            except (httpx.HTTPError, ValueError) as e:
                outcome = SecurityTokenState.unavailable()
                _log_unavailable(e)
            await self._acquire_lock_async()
            try:
                if not self._state.is_settled:
                    self._state = outcome
                return self._state
            finally:
                self._lock.release()

    async def _acquire_lock_async(self) -> None:
        """Take the thread lock without blocking the event loop."""
        if self._lock.acquire(blocking=False):
            return
        # A synchronous caller holds the lock for the length of its fetch
        waiter = asyncio.ensure_future(asyncio.to_thread(self._lock.acquire))
        try:
            await asyncio.shield(waiter)
        except asyncio.CancelledError:
            waiter.add_done_callback(lambda _: self._lock.release())
            raise


def _log_unavailable(error: Exception) -> None:
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 404:
        logger.info(
            "Security token endpoint not found; assuming a server without token "
            "support and sending requests without a security token."
        )
    else:
        logger.warning(
            f"Unable to obtain a security token ({type(error).__name__}: {error}); "
            "requests will be sent without a security token."
        )
