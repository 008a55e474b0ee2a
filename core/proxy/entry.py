# core/proxy/entry.py
"""Закэшированный HTTP ответ и преобразования заголовков"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from aiohttp import web
from multidict import CIMultiDict

HttpHeaders = Dict[str, List[str]]

METHOD_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

# aiohttp frames the buffered body itself
REPLAY_SKIP_HEADERS = {"content-length", "transfer-encoding"}


@dataclass
class Entry:
    method: str
    url: str
    content: bytes
    headers: HttpHeaders
    status_code: int
    last_update: datetime

    def to_response(self) -> web.Response:
        """Собирает HTTP ответ: статус, заголовки в сохранённом порядке, тело"""
        headers = CIMultiDict()
        for name, values in self.headers.items():
            if name.lower() in REPLAY_SKIP_HEADERS:
                continue
            for value in values:
                headers.add(name, value)
        return web.Response(status=self.status_code, headers=headers, body=self.content)


def headers_from_pairs(pairs: Iterable[Tuple[str, str]], skip: Iterable[str] = ()) -> HttpHeaders:
    """Группирует пары (имя, значение) в словарь имя -> список значений"""
    skip = {name.lower() for name in skip}
    result: HttpHeaders = {}
    for name, value in pairs:
        key = name.lower()
        if key in skip:
            continue
        result.setdefault(key, []).append(value)
    return result


def dump_headers(headers: HttpHeaders) -> str:
    return json.dumps(headers)


def load_headers(raw: Optional[str]) -> HttpHeaders:
    """
    Разбирает сохранённые заголовки

    Raises:
        ValueError: JSON не разбирается или не является объектом списков строк
    """
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("headers must be a JSON object")
    for name, values in data.items():
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ValueError(f"header {name!r} must map to a list of strings")
    return data


def parse_method(value) -> str:
    if not isinstance(value, str) or not METHOD_RE.match(value):
        raise ValueError(f"invalid method {value!r}")
    return value


def parse_status(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 100 <= value <= 599:
        raise ValueError(f"invalid status code {value!r}")
    return value


def parse_timestamp(value) -> datetime:
    """Время из SQLite в UTC: 'YYYY-MM-DD HH:MM:SS' или с миллисекундами '.fff'"""
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp {value!r}")
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
