# core/proxy/__init__.py
"""
Proxy modules package.

URL extraction, cache policy, SQLite cache store and origin fetching used
by the caching proxy in core/proxy_manager.py.
"""

from core.proxy.cache_policy import CachePredicate, CacheSettings
from core.proxy.cache_store import CacheStore, StoreSession
from core.proxy.entry import Entry
from core.proxy.errors import NotOnlineError, ProxyError, StoreError, UpstreamError, UrlError
from core.proxy.origin_fetcher import FetchedResponse, FetcherConfig, OriginFetcher
from core.proxy.url_extractor import extract_request_url, extract_url

__all__ = [
    'CachePredicate',
    'CacheSettings',
    'CacheStore',
    'StoreSession',
    'Entry',
    'ProxyError',
    'UrlError',
    'NotOnlineError',
    'StoreError',
    'UpstreamError',
    'FetchedResponse',
    'FetcherConfig',
    'OriginFetcher',
    'extract_url',
    'extract_request_url',
]
