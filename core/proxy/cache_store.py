# core/proxy/cache_store.py
"""Хранилище закэшированных ответов в SQLite"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import List, Optional

from core.proxy.cache_policy import CacheSettings
from core.proxy.entry import Entry, dump_headers, load_headers, parse_method, parse_status, parse_timestamp
from core.proxy.errors import StoreError

logger = logging.getLogger(__name__)

CREATE_SQL = """
CREATE TABLE IF NOT EXISTS cache (
    method TEXT,
    url TEXT,
    content BLOB,
    headers TEXT,
    status_code INTEGER,
    last_update TEXT DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')) NOT NULL,
    PRIMARY KEY (method, url)
)
"""

SELECT_SQL = """
SELECT method, url, content, headers, status_code, last_update
FROM cache WHERE method = :method AND url = :url
"""

UPSERT_SQL = """
INSERT INTO cache (method, url, content, headers, status_code)
VALUES (:method, :url, :content, :headers, :status_code)
ON CONFLICT(method, url) DO UPDATE SET
    content=excluded.content,
    headers=excluded.headers,
    status_code=excluded.status_code,
    last_update=strftime('%Y-%m-%d %H:%M:%f', 'now')
"""

COUNT_SQL = "SELECT COUNT(*) FROM cache"


def row_to_entry(row) -> Entry:
    """
    Преобразует строку таблицы в Entry

    Raises:
        StoreError: повреждённые данные (заголовки, метод, статус, время)
    """
    try:
        return Entry(
            method=parse_method(row[0]),
            url=row[1],
            content=bytes(row[2] or b""),
            headers=load_headers(row[3]),
            status_code=parse_status(row[4]),
            last_update=parse_timestamp(row[5]),
        )
    except (TypeError, ValueError) as e:
        raise StoreError(f"Malformed cache row for {row[0]} {row[1]}: {e}") from e


class StoreSession:
    """Операции над одним соединением из пула"""

    def __init__(self, conn: sqlite3.Connection, loop: asyncio.AbstractEventLoop):
        self.conn = conn
        self.loop = loop

    async def _run(self, func, *args):
        try:
            return await self.loop.run_in_executor(None, partial(func, *args))
        except sqlite3.Error as e:
            raise StoreError(f"Database error: {e}") from e

    def _select(self, method: str, url: str):
        rows = self.conn.execute(SELECT_SQL, {"method": method, "url": url}).fetchall()
        return rows[0] if rows else None

    def _upsert(self, entry: Entry) -> None:
        with self.conn:
            self.conn.execute(
                UPSERT_SQL,
                {
                    "method": entry.method,
                    "url": entry.url,
                    "content": sqlite3.Binary(entry.content),
                    "headers": dump_headers(entry.headers),
                    "status_code": entry.status_code,
                },
            )

    def _count(self) -> int:
        return self.conn.execute(COUNT_SQL).fetchall()[0][0]

    async def lookup(self, method: str, url: str, settings: CacheSettings,
                     now: Optional[datetime] = None) -> Optional[Entry]:
        """Возвращает запись только если она удовлетворяет политике кэша"""
        row = await self._run(self._select, method, url)
        if row is None:
            return None
        entry = row_to_entry(row)
        if not settings.predicate.matches(entry, method, url, now):
            logger.debug(f"Cache entry filtered out by policy: {method} {url} ({entry.status_code})")
            return None
        return entry

    async def upsert(self, entry: Entry) -> None:
        await self._run(self._upsert, entry)

    async def count(self) -> int:
        return await self._run(self._count)


class CacheStore:
    """SQLite хранилище с ограниченным пулом соединений"""

    def __init__(self, db_path: str, pool_size: int = 10):
        if pool_size < 1:
            raise ValueError(f"pool_size must be >= 1, got {pool_size}")
        self.db_path = db_path
        self.pool_size = pool_size
        self._pool: Optional[asyncio.Queue] = None
        self._connections: List[sqlite3.Connection] = []

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)

    def _create_schema(self) -> List[sqlite3.Connection]:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        connections = [self._connect() for _ in range(self.pool_size)]
        with connections[0]:
            connections[0].execute(CREATE_SQL)
        return connections

    async def initialize(self) -> None:
        """Создаёт таблицу (если её нет) и заполняет пул соединений"""
        if self._pool is not None:
            return
        logger.debug(f"Creating database {self.db_path}")
        loop = asyncio.get_running_loop()
        try:
            connections = await loop.run_in_executor(None, self._create_schema)
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Cannot initialize cache database {self.db_path}: {e}") from e

        self._connections = connections
        self._pool = asyncio.Queue(maxsize=self.pool_size)
        for conn in connections:
            self._pool.put_nowait(conn)
        logger.info(f"Cache database ready: {self.db_path} (pool={self.pool_size})")

    @asynccontextmanager
    async def lease(self):
        """
        Захватывает соединение на время последовательности операций

        Ждёт без таймаута, если все соединения заняты. Соединение
        возвращается в пул ровно один раз при любом выходе.
        """
        pool = self._pool
        if pool is None:
            raise StoreError("Cache store is not initialized")
        conn = await pool.get()
        try:
            yield StoreSession(conn, asyncio.get_running_loop())
        finally:
            pool.put_nowait(conn)

    async def lookup(self, method: str, url: str, settings: CacheSettings,
                     now: Optional[datetime] = None) -> Optional[Entry]:
        async with self.lease() as session:
            return await session.lookup(method, url, settings, now)

    async def upsert(self, entry: Entry) -> None:
        async with self.lease() as session:
            await session.upsert(entry)

    async def count(self) -> int:
        async with self.lease() as session:
            return await session.count()

    @property
    def available(self) -> int:
        """Количество свободных соединений в пуле"""
        return self._pool.qsize() if self._pool is not None else 0

    async def close(self) -> None:
        if self._pool is None:
            return
        for conn in self._connections:
            conn.close()
        self._connections = []
        self._pool = None
        logger.debug("Cache database connections closed")
