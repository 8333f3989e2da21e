"""This module contains decorators for the wsapiclient package."""

import inspect
import logging
from functools import wraps

from wsapiclient.exceptions import WsapiClientClosed

logger = logging.getLogger(__name__)


def use_client_session(func):
    """
    Decorator to open an httpx.Client session for the WsapiClient if one is
    not already open, and to refuse calls on a closed WsapiClient.

    The session opened here belongs to the WsapiClient and stays open until
    the WsapiClient is closed, so concurrent callers share one connection pool.

    This decorator assumes it is decorating an instance method on a WsapiClient object
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        if self.is_closed:
            raise WsapiClientClosed()
        if not self.httpx_client or self.httpx_client.is_closed:
            with self._session_lock:
                if not self.httpx_client or self.httpx_client.is_closed:
                    logger.debug("Opening httpx.Client session for WSAPI requests")
                    self.httpx_client = self.get_wsapi_http_client()
                    self._owns_http_client = True
        return func(self, *args, **kwargs)

    @wraps(func)
    async def async_wrapper(self, *args, **kwargs):
        if self.is_closed:
            raise WsapiClientClosed()
        if not self.async_httpx_client or self.async_httpx_client.is_closed:
            logger.debug("Opening httpx.AsyncClient session for WSAPI requests")
            self.async_httpx_client = self.get_wsapi_http_client_async()
            self._owns_async_http_client = True
        return await func(self, *args, **kwargs)

    if inspect.iscoroutinefunction(func):
        return async_wrapper
    else:
        return wrapper
