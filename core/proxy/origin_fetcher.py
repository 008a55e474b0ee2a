# core/proxy/origin_fetcher.py
"""Запросы к origin серверу при промахе кэша"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple
from urllib.parse import urlsplit

from aiohttp import ClientError, ClientSession, ClientTimeout, TCPConnector
from multidict import CIMultiDict

from core.proxy.entry import HttpHeaders, headers_from_pairs
from core.proxy.errors import UpstreamError

logger = logging.getLogger(__name__)

# Not replayed from the cache: transport framing and an encoding the client library already undid
STRIPPED_RESPONSE_HEADERS = ("connection", "content-encoding")

DEFAULT_USER_AGENT = "caching-http-server/0.1.0"


@dataclass(frozen=True)
class FetcherConfig:
    """Настройки исходящего клиента, общие для всех запросов"""

    default_headers: Tuple[Tuple[str, str], ...] = (("User-Agent", DEFAULT_USER_AGENT),)
    connection_limit: int = 100
    verify_ssl: bool = True
    follow_redirects: bool = True


@dataclass
class FetchedResponse:
    status_code: int
    headers: HttpHeaders
    content: bytes = field(repr=False)


def require_host(url: str) -> None:
    """Без хоста запрос к origin невозможен"""
    if not urlsplit(url).hostname:
        raise UpstreamError(f"Invalid host in {url}")


class OriginFetcher:
    def __init__(self, config: Optional[FetcherConfig] = None):
        self.config = config or FetcherConfig()
        self.connector = None
        self.session = None

    async def initialize(self):
        """Инициализация connection pool для исходящих запросов"""
        if self.connector is None:
            self.connector = TCPConnector(
                ssl=self.config.verify_ssl,
                limit=self.config.connection_limit,
            )

        if self.session is None:
            # No timeout: a slow origin still populates the cache
            self.session = ClientSession(
                connector=self.connector,
                headers=dict(self.config.default_headers),
                timeout=ClientTimeout(total=None),
            )

    async def close(self):
        """Очистка ресурсов"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    async def fetch(self, method: str, url: str, headers: Mapping[str, str],
                    body: Optional[bytes] = None) -> FetchedResponse:
        """
        Выполняет запрос к origin, повторяя входящий

        Args:
            method: HTTP метод входящего запроса
            url: Целевой абсолютный URL
            headers: Заголовки входящего запроса (передаются все)
            body: Тело входящего запроса

        Returns:
            FetchedResponse: статус, отфильтрованные заголовки и полное тело

        Raises:
            UpstreamError: ошибка построения запроса или сети
        """
        await self.initialize()

        require_host(url)
        outbound = CIMultiDict(headers)
        # the buffered body is re-framed by aiohttp
        outbound.popall("Transfer-Encoding", None)
        # aiohttp derives Host from the URL of every hop, redirects included
        outbound.popall("Host", None)

        logger.debug(f"{method} {url}")
        try:
            async with self.session.request(
                method=method,
                url=url,
                headers=outbound,
                data=body or None,
                allow_redirects=self.config.follow_redirects,
            ) as upstream_response:
                content = await upstream_response.read()
                response_headers = headers_from_pairs(
                    upstream_response.headers.items(),
                    skip=STRIPPED_RESPONSE_HEADERS,
                )
                logger.debug(f"Response: {upstream_response.status} {len(content)} bytes")
                return FetchedResponse(
                    status_code=upstream_response.status,
                    headers=response_headers,
                    content=content,
                )
        except ClientError as e:
            raise UpstreamError(f"Origin request failed for {method} {url}: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"Cannot build origin request for {method} {url}: {e}") from e
