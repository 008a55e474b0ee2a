# core/proxy/url_extractor.py
"""Извлечение целевого URL из пути запроса к прокси"""

import logging
import re
from urllib.parse import urlsplit, urlunsplit

from core.proxy.errors import UrlError

logger = logging.getLogger(__name__)

# Some clients collapse "//" in paths, so "https://host" arrives as "https:/host"
PATH_RE = re.compile(r"^/*([a-z][a-z0-9+\-.]*:)/+")

ALLOWED_SCHEMES = ("http", "https")


def extract_url(path: str, query: str = "") -> str:
    """
    Восстанавливает абсолютный URL из пути и query string

    Args:
        path: Часть пути после точки монтирования прокси (например "/https:/example.com/a")
        query: Сырая query string без "?"

    Returns:
        str: Проверенный абсолютный http/https URL

    Raises:
        UrlError: URL не разбирается, нет хоста или схема не http/https
    """
    uri = f"{path}?{query}" if query else path
    logger.debug(f"Extracted url from request {uri}")

    uri = PATH_RE.sub(r"\1//", uri, count=1)

    try:
        parts = urlsplit(uri)
        # port is parsed lazily and raises on garbage
        parts.port
    except ValueError as e:
        raise UrlError(f"Invalid url {uri} Original error: {e}") from e

    if not parts.scheme:
        raise UrlError(f"Invalid url {uri} Original error: relative URL without a base")

    if parts.scheme not in ALLOWED_SCHEMES:
        raise UrlError(f"Unknown scheme: {parts.scheme}")

    if not parts.hostname:
        raise UrlError(f"Invalid url {uri} Original error: empty host")

    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", parts.query, parts.fragment))


def extract_request_url(request) -> str:
    """Извлекает URL из aiohttp запроса (сырой путь без декодирования)"""
    return extract_url(request.rel_url.raw_path, request.rel_url.raw_query_string)
