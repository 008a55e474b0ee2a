import json
import socket

import pytest
from aiohttp import web

from core.proxy.errors import UpstreamError
from core.proxy.origin_fetcher import FetcherConfig, OriginFetcher, require_host


@pytest.fixture
async def fetcher():
    origin_fetcher = OriginFetcher(FetcherConfig(default_headers=(("User-Agent", "test-agent/1.0"),)))
    yield origin_fetcher
    await origin_fetcher.close()


def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_require_host():
    require_host("http://[::1]:8080/")
    with pytest.raises(UpstreamError):
        require_host("http:///nohost")


async def test_forwards_headers_and_overrides_host(origin, fetcher):
    url = origin.url("/echo")
    fetched = await fetcher.fetch(
        "POST",
        url,
        {"Host": "proxy.local", "X-Custom": "value", "Content-Length": "7"},
        b"payload",
    )

    assert fetched.status_code == 200
    payload = json.loads(fetched.content)
    assert payload["method"] == "POST"
    assert payload["host"] == f"{origin.server.host}:{origin.server.port}"
    assert payload["custom"] == ["value"]
    assert payload["body"] == "payload"
    assert payload["user_agent"] == "test-agent/1.0"


async def test_inbound_user_agent_wins(origin, fetcher):
    fetched = await fetcher.fetch("GET", origin.url("/echo"), {"User-Agent": "browser"})
    assert json.loads(fetched.content)["user_agent"] == "browser"


async def test_keeps_multi_valued_headers(origin, fetcher):
    fetched = await fetcher.fetch("GET", origin.url("/hello"), {})
    assert fetched.headers["x-multi"] == ["a", "b"]
    assert fetched.content == b"hello 1"


async def test_strips_connection_and_content_encoding(origin, fetcher):
    fetched = await fetcher.fetch("GET", origin.url("/compressed"), {"Accept-Encoding": "gzip"})

    assert fetched.content == b"compressed payload"
    assert "content-encoding" not in fetched.headers
    assert "connection" not in fetched.headers


async def test_error_statuses_are_returned(origin, fetcher):
    fetched = await fetcher.fetch("GET", origin.url("/status/503"), {})
    assert fetched.status_code == 503


async def test_connection_failure_raises_upstream_error(fetcher):
    with pytest.raises(UpstreamError):
        await fetcher.fetch("GET", f"http://127.0.0.1:{free_port()}/", {})


async def test_invalid_host_raises_upstream_error(fetcher):
    with pytest.raises(UpstreamError):
        await fetcher.fetch("GET", "http:///nohost", {})


async def test_redirect_to_other_host_gets_its_own_host_header(aiohttp_server, origin, fetcher):
    target = origin.url("/echo")

    async def moved(request):
        raise web.HTTPFound(target)

    app = web.Application()
    app.router.add_get("/moved", moved)
    first = await aiohttp_server(app)

    fetched = await fetcher.fetch("GET", str(first.make_url("/moved")), {"Host": "proxy.local"})

    assert fetched.status_code == 200
    assert json.loads(fetched.content)["host"] == f"{origin.server.host}:{origin.server.port}"
    assert origin.calls == [("GET", "/echo")]
