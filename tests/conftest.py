import asyncio
import gzip
import json
from types import SimpleNamespace

import pytest
from aiohttp import web
from multidict import CIMultiDict

from core.proxy.cache_policy import CacheSettings
from core.proxy.cache_store import CacheStore
from core.proxy.origin_fetcher import OriginFetcher
from core.proxy_manager import CachingProxy


def proxy_path(url: str) -> str:
    """Path a slash-collapsing client would send for an embedded URL"""
    return "/" + url.replace("://", ":/", 1)


@pytest.fixture
async def store(tmp_path):
    cache_store = CacheStore(str(tmp_path / "cache.db"), pool_size=2)
    await cache_store.initialize()
    yield cache_store
    await cache_store.close()


@pytest.fixture
async def origin(aiohttp_server):
    calls = []

    async def hello(request):
        calls.append((request.method, request.path_qs))
        headers = CIMultiDict([
            ("Content-Type", "text/plain"),
            ("X-Multi", "a"),
            ("X-Multi", "b"),
        ])
        return web.Response(text=f"hello {len(calls)}", headers=headers)

    async def status(request):
        calls.append((request.method, request.path_qs))
        code = int(request.match_info["code"])
        return web.Response(status=code, text=f"status {code} #{len(calls)}")

    async def compressed(request):
        calls.append((request.method, request.path_qs))
        return web.Response(
            body=gzip.compress(b"compressed payload"),
            headers={"Content-Encoding": "gzip", "Content-Type": "text/plain"},
        )

    async def slow(request):
        calls.append((request.method, request.path_qs))
        await asyncio.sleep(0.3)
        return web.Response(text=f"slow {len(calls)}")

    async def echo(request):
        calls.append((request.method, request.path_qs))
        body = await request.read()
        payload = {
            "method": request.method,
            "host": request.headers.get("Host"),
            "custom": request.headers.getall("X-Custom", []),
            "user_agent": request.headers.get("User-Agent"),
            "body": body.decode("utf-8"),
            "query": request.query_string,
        }
        return web.Response(text=json.dumps(payload), content_type="application/json")

    app = web.Application()
    app.router.add_get("/hello", hello)
    app.router.add_get("/status/{code}", status)
    app.router.add_get("/compressed", compressed)
    app.router.add_get("/slow", slow)
    app.router.add_route("*", "/echo", echo)

    server = await aiohttp_server(app)
    return SimpleNamespace(
        server=server,
        calls=calls,
        url=lambda path: str(server.make_url(path)),
    )


@pytest.fixture
def make_proxy(tmp_path):
    def factory(store=None, fetcher=None, **settings):
        return CachingProxy(
            CacheSettings(**settings),
            store or CacheStore(str(tmp_path / "proxy.db"), pool_size=2),
            fetcher or OriginFetcher(),
        )
    return factory
