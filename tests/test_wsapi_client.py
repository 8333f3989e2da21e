import asyncio
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import httpx
import pytest
from httpx import UnsupportedProtocol

from .test_utils import (
    BASIC_AUTH_HEADER,
    SERVER_URL,
    TOKEN,
    WsapiServerStub,
    make_client,
    token_params,
)

from wsapiclient.WsapiClient import WsapiClient
from wsapiclient._httpx import SecurityTokenState, TokenStatus
from wsapiclient.exceptions import (
    WsapiClientClosed,
    WsapiInternalServerError,
    WsapiResourceNotFoundError,
    WsapiSystemUnavailableError,
    WsapiUriConstructionError,
)


def test_first():
    with pytest.raises(UnsupportedProtocol):
        WsapiClient("", "", "")


def test_invalid_protocol():
    with pytest.raises(UnsupportedProtocol):
        WsapiClient("ftp://rally1.rallydev.com", "user", "pass")


def test_initialization():
    client = WsapiClient(SERVER_URL + "/", "user", "pass", wsapi_version="v2.0")
    assert client.server_url == SERVER_URL
    assert client.username == "user"
    assert client.wsapi_url == "https://rally1.rallydev.com/slm/webservice/v2.0"
    assert client.security_token_url == (
        "https://rally1.rallydev.com/slm/webservice/v2.0/security/authorize"
    )
    assert client.wsapi_parameters.credentials.target_host == "rally1.rallydev.com"
    assert client.security_token_state == SecurityTokenState.unresolved()
    assert repr(client) == (
        "WsapiClient for https://rally1.rallydev.com/slm/webservice/v2.0 as user"
    )


def test_default_wsapi_version():
    with patch.dict("os.environ", {}, clear=True):
        assert WsapiClient(SERVER_URL, "user", "pass").wsapi_version == "v2.0"


@patch.dict("os.environ", {"WSAPICLIENT_WSAPI_VERSION": "1.43"})
def test_wsapi_version_from_environment():
    client = WsapiClient(SERVER_URL, "user", "pass")
    assert client.wsapi_version == "1.43"
    assert client.is_legacy_wsapi_version


@pytest.mark.parametrize(
    "version,legacy",
    [
        ("1.43", True),
        ("1.0", True),
        ("v1.40", True),
        ("2.0", False),
        ("v2.0", False),
        ("10.1", False),
        ("1", False),
        ("1.43.1", False),
        ("1.43-beta", False),
    ],
)
def test_is_legacy_wsapi_version(version, legacy):
    assert WsapiClient(SERVER_URL, "u", "p", wsapi_version=version).is_legacy_wsapi_version is legacy


def test_build_url():
    client = WsapiClient(SERVER_URL, "u", "p", wsapi_version="v2.0")
    assert client.build_url("/defect/create") == (
        "https://rally1.rallydev.com/slm/webservice/v2.0/defect/create"
    )
    assert client.build_url("defect") == "https://rally1.rallydev.com/slm/webservice/v2.0/defect"


def test_built_http_clients_use_absolute_urls():
    client = WsapiClient(SERVER_URL, "u", "p", ssl_verify=False, timeout=4.0)

    with client.get_wsapi_http_client() as http_client:
        assert http_client.base_url == httpx.URL("")
        assert http_client.timeout == httpx.Timeout(4.0)
        assert http_client.headers["user-agent"] == "wsapiclient (Python)"
    async_client = client.get_wsapi_http_client_async()
    assert async_client.base_url == httpx.URL("")
    assert async_client.auth is client.wsapi_auth
    asyncio.run(async_client.aclose())


def test_convenience_methods_route_through_wsapi_root():
    stub = WsapiServerStub()
    client = make_client(stub, wsapi_version="1.43")

    client.wsapi_get("defect", query_params={"fetch": "Name"})
    client.wsapi_post("defect/create", {"Defect": {"Name": "Json"}})
    client.wsapi_put("defect/1", '{"Defect": {}}')
    client.wsapi_delete("defect/1", query_params={"force": "true"})

    get, post, put, delete = stub.api_requests
    assert [r.method for r in stub.api_requests] == ["GET", "POST", "PUT", "DELETE"]
    assert str(get.url) == f"{SERVER_URL}/slm/webservice/1.43/defect?fetch=Name"
    assert json.loads(post.content) == {"Defect": {"Name": "Json"}}
    assert put.content == b'{"Defect": {}}'
    assert delete.url.params["force"] == "true"


def test_construct_timeout():
    assert WsapiClient._construct_timeout(5.0) == httpx.Timeout(5.0)
    timeout = httpx.Timeout(1.0, connect=2.0)
    assert WsapiClient._construct_timeout(timeout) is timeout
    merged = WsapiClient._construct_timeout({"connect": 3.0})
    assert merged.connect == 3.0


def test_timeout_none_disables_timeouts():
    client = WsapiClient(SERVER_URL, "u", "p", timeout=None)
    assert client.wsapi_parameters.timeout == httpx.Timeout(None)


def test_put_with_token_endpoint_attaches_token():
    stub = WsapiServerStub()
    client = make_client(stub, wsapi_version="2.0")

    body = client.wsapi_put("defect/1234", {"Defect": {"Name": "Broken"}})

    assert json.loads(body) == {"OperationResult": {"Errors": [], "Warnings": []}}
    assert stub.token_calls == 1
    [request] = stub.api_requests
    assert request.method == "PUT"
    assert token_params(request) == [TOKEN]
    assert "key=abc-123" in str(request.url)
    assert client.security_token_state == SecurityTokenState.resolved(TOKEN)


def test_token_is_fetched_once_and_reused():
    stub = WsapiServerStub()
    client = make_client(stub)

    client.wsapi_post("defect/create", {"Defect": {"Name": "One"}})
    client.wsapi_put("defect/1", {"Defect": {"Name": "Two"}})
    client.wsapi_delete("defect/1")

    assert stub.token_calls == 1
    assert [token_params(r) for r in stub.api_requests] == [[TOKEN]] * 3


def test_token_keeps_existing_query_parameters():
    stub = WsapiServerStub()
    client = make_client(stub)

    client.wsapi_post("defect/create", '{"Defect": {}}', query_params={"fetch": "Name,FormattedID"})

    [request] = stub.api_requests
    assert request.url.params["fetch"] == "Name,FormattedID"
    assert token_params(request) == [TOKEN]


def test_token_replaces_a_stale_key_parameter():
    stub = WsapiServerStub()
    client = make_client(stub)

    client.execute(httpx.Request("POST", client.build_url("defect/create"), params={"key": "old"}))

    [request] = stub.api_requests
    assert token_params(request) == [TOKEN]


def test_token_is_url_encoded():
    stub = WsapiServerStub(token_body=json.dumps({"OperationResult": {"SecurityToken": "a b&c"}}))
    client = make_client(stub)

    client.wsapi_post("defect/create", {})

    [request] = stub.api_requests
    assert token_params(request) == ["a b&c"]
    assert "a b&c" not in str(request.url)


@pytest.mark.parametrize("version", ["v2.0", "2.0", "1.43"])
def test_get_never_carries_a_token(version):
    stub = WsapiServerStub()
    client = make_client(stub, wsapi_version=version)

    client.wsapi_get("defect", query_params={"query": '(Name = "x")'})

    assert stub.token_calls == 0
    [request] = stub.api_requests
    assert token_params(request) == []


@pytest.mark.parametrize("method", ["POST", "PUT", "DELETE"])
def test_legacy_version_never_fetches_token(method):
    stub = WsapiServerStub()
    client = make_client(stub, wsapi_version="1.43")

    client.execute(httpx.Request(method, client.build_url("defect/1")))

    assert stub.token_calls == 0
    [request] = stub.api_requests
    assert token_params(request) == []
    assert request.headers["Authorization"] == BASIC_AUTH_HEADER
    assert client.security_token_state.status is TokenStatus.UNRESOLVED


def test_basic_auth_header_on_every_request_including_bootstrap():
    stub = WsapiServerStub()
    client = make_client(stub)

    client.wsapi_get("defect")
    client.wsapi_post("defect/create", {})

    assert len(stub.requests) == 3
    assert stub.requests[1].url.path.endswith("/security/authorize")
    assert all(r.headers["Authorization"] == BASIC_AUTH_HEADER for r in stub.requests)


def test_bootstrap_request_carries_no_token():
    stub = WsapiServerStub()
    client = make_client(stub)

    client.wsapi_post("defect/create", {})

    token_request = stub.requests[0]
    assert token_request.method == "GET"
    assert str(token_request.url) == (
        "https://rally1.rallydev.com/slm/webservice/v2.0/security/authorize"
    )
    assert token_params(token_request) == []


def test_legacy_server_falls_back_permanently(caplog):
    stub = WsapiServerStub(token_status=404)
    client = make_client(stub)

    with caplog.at_level(logging.INFO, logger="wsapiclient._httpx"):
        first = client.wsapi_post("defect/create", {})
        client.wsapi_put("defect/1", {})

    assert first
    assert stub.token_calls == 1
    assert all(token_params(r) == [] for r in stub.api_requests)
    assert len(stub.api_requests) == 2
    assert client.security_token_state == SecurityTokenState.unavailable()
    assert "Security token endpoint not found" in caplog.text


@pytest.mark.parametrize("status", [401, 500, 503])
def test_token_endpoint_error_status_falls_back(status, caplog):
    stub = WsapiServerStub(token_status=status)
    client = make_client(stub)

    with caplog.at_level(logging.WARNING, logger="wsapiclient._httpx"):
        client.wsapi_post("defect/create", {})
        client.wsapi_post("defect/create", {})

    assert stub.token_calls == 1
    assert client.security_token_state.status is TokenStatus.UNAVAILABLE
    assert "Unable to obtain a security token" in caplog.text


@pytest.mark.parametrize(
    "body",
    [
        "not json",
        json.dumps({"Errors": ["nope"]}),
        json.dumps({"OperationResult": {}}),
        json.dumps({"OperationResult": {"SecurityToken": 42}}),
        json.dumps(["OperationResult"]),
    ],
)
def test_malformed_token_response_falls_back(body):
    stub = WsapiServerStub(token_body=body)
    client = make_client(stub)

    client.wsapi_post("defect/create", {})
    client.wsapi_post("defect/create", {})

    assert stub.token_calls == 1
    assert all(token_params(r) == [] for r in stub.api_requests)
    assert client.security_token_state.status is TokenStatus.UNAVAILABLE


def test_network_error_on_token_endpoint_falls_back():
    stub = WsapiServerStub(error=httpx.ConnectError("connection refused"))
    client = make_client(stub)

    client.wsapi_post("defect/create", {})

    assert client.security_token_state.status is TokenStatus.UNAVAILABLE
    assert len(stub.api_requests) == 1


def test_transport_errors_propagate():
    stub = WsapiServerStub(status=500)
    client = make_client(stub)

    with pytest.raises(WsapiInternalServerError) as exc_info:
        client.wsapi_post("defect/create", {})

    assert isinstance(exc_info.value, httpx.HTTPStatusError)
    assert exc_info.value.response.status_code == 500
    # the token was still resolved for the failed request
    assert client.security_token_state == SecurityTokenState.resolved(TOKEN)


def test_not_found_on_get_propagates():
    stub = WsapiServerStub(status=404)
    client = make_client(stub)

    with pytest.raises(WsapiResourceNotFoundError):
        client.wsapi_get("defect/0")


def test_connection_error_propagates():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = WsapiClient(
        SERVER_URL,
        "user",
        "pass",
        wsapi_version="1.43",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )

    with pytest.raises(WsapiSystemUnavailableError):
        client.wsapi_post("defect/create", {})


def test_uri_construction_error_is_fatal():
    stub = WsapiServerStub()
    client = make_client(stub)

    with patch.object(httpx.URL, "copy_set_param", side_effect=httpx.InvalidURL("bad")):
        with pytest.raises(WsapiUriConstructionError) as exc_info:
            client.wsapi_post("defect/create", {})

    assert isinstance(exc_info.value, OSError)
    assert "Unable to build URI with security token" in str(exc_info.value)
    assert stub.api_requests == []


def test_concurrent_requests_share_one_token_fetch():
    stub = WsapiServerStub(token_delay=0.2)
    client = make_client(stub)

    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [
            executor.submit(client.wsapi_post, "defect/create", {"Defect": {"Name": str(i)}})
            for i in range(10)
        ]
        for future in futures:
            future.result()

    assert stub.token_calls == 1
    assert len(stub.api_requests) == 10
    assert {tuple(token_params(r)) for r in stub.api_requests} == {(TOKEN,)}


def test_concurrent_requests_share_one_failed_fetch():
    stub = WsapiServerStub(token_status=404, token_delay=0.2)
    client = make_client(stub)

    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(lambda i: client.wsapi_delete(f"defect/{i}"), range(8)))

    assert stub.token_calls == 1
    assert all(token_params(r) == [] for r in stub.api_requests)


def test_clients_do_not_share_token_state():
    first_stub = WsapiServerStub()
    second_stub = WsapiServerStub(token_status=404)
    first = make_client(first_stub)
    second = make_client(second_stub)

    first.wsapi_post("defect/create", {})
    second.wsapi_post("defect/create", {})

    assert first.security_token_state.status is TokenStatus.RESOLVED
    assert second.security_token_state.status is TokenStatus.UNAVAILABLE


def test_integration_headers():
    stub = WsapiServerStub()
    client = make_client(stub)
    client.set_application_name("Defect Sync")
    client.set_application_vendor("Acme")
    client.set_application_version("1.2")

    client.wsapi_get("defect")

    [request] = stub.api_requests
    assert request.headers["X-RallyIntegrationName"] == "Defect Sync"
    assert request.headers["X-RallyIntegrationVendor"] == "Acme"
    assert request.headers["X-RallyIntegrationVersion"] == "1.2"
    assert request.headers["X-RallyIntegrationLibrary"] == "wsapiclient for Python"
    assert request.headers["X-RallyIntegrationPlatform"].startswith("Python ")
    assert request.headers["user-agent"] == "wsapiclient (Python)"


def test_integration_headers_omit_unset_application_details():
    client = WsapiClient(SERVER_URL, "u", "p")
    assert "X-RallyIntegrationName" not in client.integration_headers
    assert "X-RallyIntegrationVendor" not in client.integration_headers


def test_string_payload_is_sent_as_is():
    stub = WsapiServerStub()
    client = make_client(stub, wsapi_version="1.43")

    client.wsapi_post("defect/create", '{"Defect": {"Name": "Raw"}}')

    [request] = stub.api_requests
    assert request.content == b'{"Defect": {"Name": "Raw"}}'
    assert request.headers["content-type"] == "application/json"


def test_closed_client_refuses_requests():
    stub = WsapiServerStub()
    client = make_client(stub)
    client.close()

    with pytest.raises(WsapiClientClosed):
        client.wsapi_get("defect")
    assert stub.requests == []


def test_close_leaves_preconfigured_client_open():
    stub = WsapiServerStub()
    http_client = stub.http_client()
    client = WsapiClient(SERVER_URL, "u", "p", http_client=http_client)

    client.close()

    assert client.is_closed
    assert not http_client.is_closed


def test_close_releases_async_session_opened_by_async_request():
    stub = WsapiServerStub()
    client = WsapiClient(SERVER_URL, "u", "p", http_client=stub.http_client())

    with patch.object(client, "get_wsapi_http_client_async", stub.async_http_client):
        asyncio.run(client.wsapi_get_async("defect"))
    owned = client.async_httpx_client
    assert not owned.is_closed

    client.close()

    assert owned.is_closed
    assert client.is_closed


@pytest.mark.asyncio
async def test_close_inside_event_loop_defers_async_session_to_async_close(caplog):
    stub = WsapiServerStub()
    client = WsapiClient(SERVER_URL, "u", "p", http_client=stub.http_client())
    with patch.object(client, "get_wsapi_http_client_async", stub.async_http_client):
        await client.wsapi_get_async("defect")
    owned = client.async_httpx_client

    with caplog.at_level(logging.WARNING, logger="WsapiClient"):
        client.close()

    assert not owned.is_closed
    assert "use async_close()" in caplog.text
    await client.async_close()
    assert owned.is_closed


def test_context_manager_opens_and_closes_own_client():
    with WsapiClient(SERVER_URL, "u", "p") as client:
        http_client = client.httpx_client
        assert isinstance(http_client, httpx.Client)
        assert not http_client.is_closed
    assert http_client.is_closed
    assert client.is_closed


def test_context_manager_keeps_preconfigured_client():
    stub = WsapiServerStub()
    http_client = stub.http_client()
    with WsapiClient(SERVER_URL, "u", "p", http_client=http_client) as client:
        assert client.httpx_client is http_client
    assert not http_client.is_closed


@pytest.mark.asyncio
async def test_async_put_attaches_token():
    stub = WsapiServerStub()
    client = make_client(stub, wsapi_version="2.0")

    await client.wsapi_put_async("defect/1", {"Defect": {"Name": "Async"}})

    assert stub.token_calls == 1
    [request] = stub.api_requests
    assert token_params(request) == [TOKEN]
    assert request.headers["Authorization"] == BASIC_AUTH_HEADER


@pytest.mark.asyncio
async def test_async_get_and_legacy_skip_token():
    stub = WsapiServerStub()
    client = make_client(stub)
    legacy = make_client(stub, wsapi_version="1.43")

    await client.wsapi_get_async("defect")
    await legacy.wsapi_post_async("defect/create", {})
    await legacy.wsapi_delete_async("defect/1")

    assert stub.token_calls == 0
    assert all(token_params(r) == [] for r in stub.api_requests)


@pytest.mark.asyncio
async def test_async_concurrent_requests_share_one_token_fetch():
    stub = WsapiServerStub()
    client = make_client(stub)

    await asyncio.gather(
        *(client.wsapi_post_async("defect/create", {"Defect": {"Name": str(i)}}) for i in range(10))
    )

    assert stub.token_calls == 1
    assert {tuple(token_params(r)) for r in stub.api_requests} == {(TOKEN,)}


@pytest.mark.asyncio
async def test_async_legacy_server_falls_back():
    stub = WsapiServerStub(token_status=404)
    client = make_client(stub)

    await client.wsapi_post_async("defect/create", {})
    await client.wsapi_post_async("defect/create", {})

    assert stub.token_calls == 1
    assert client.security_token_state.status is TokenStatus.UNAVAILABLE


@pytest.mark.asyncio
async def test_async_transport_error_propagates():
    stub = WsapiServerStub(status=500)
    client = make_client(stub)

    with pytest.raises(WsapiInternalServerError):
        await client.wsapi_post_async("defect/create", {})


@pytest.mark.asyncio
async def test_async_context_manager_closes_own_clients():
    async with WsapiClient(SERVER_URL, "u", "p") as client:
        async_client = client.async_httpx_client
        assert not async_client.is_closed
    assert async_client.is_closed
    assert client.is_closed


def test_sync_and_async_paths_share_token_state():
    stub = WsapiServerStub()
    client = make_client(stub)

    client.wsapi_post("defect/create", {})
    asyncio.run(client.wsapi_post_async("defect/create", {}))

    assert stub.token_calls == 1
    assert [token_params(r) for r in stub.api_requests] == [[TOKEN], [TOKEN]]
