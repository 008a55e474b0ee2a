# core/proxy/cache_policy.py
"""Политика выбора закэшированных ответов"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

SUCCESS_RANGE = (100, 399)
CLIENT_ERROR_RANGE = (400, 499)
SERVER_ERROR_RANGE = (500, 599)


@dataclass(frozen=True)
class CachePredicate:
    """
    Условие попадания в кэш: method и url совпадают, запись достаточно свежая
    и её статус входит в разрешённые диапазоны
    """

    max_age: Optional[timedelta]
    status_ranges: Tuple[Tuple[int, int], ...]

    def admits_status(self, status_code: int) -> bool:
        return any(low <= status_code <= high for low, high in self.status_ranges)

    def is_fresh(self, last_update: datetime, now: Optional[datetime] = None) -> bool:
        if self.max_age is None:
            return True
        now = now or datetime.now(timezone.utc)
        return last_update > now - self.max_age

    def matches(self, entry, method: str, url: str, now: Optional[datetime] = None) -> bool:
        return (
            entry.method == method
            and entry.url == url
            and self.is_fresh(entry.last_update, now)
            and self.admits_status(entry.status_code)
        )


@dataclass(frozen=True)
class CacheSettings:
    """Неизменяемые настройки кэша, вычисляются один раз при запуске"""

    client_errors: bool = True
    server_errors: bool = False
    online: bool = True
    ttl: int = 0
    predicate: CachePredicate = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {self.ttl}")

        ranges = [SUCCESS_RANGE]
        if self.client_errors:
            ranges.append(CLIENT_ERROR_RANGE)
        if self.server_errors:
            ranges.append(SERVER_ERROR_RANGE)

        max_age = timedelta(seconds=self.ttl) if self.ttl > 0 else None
        object.__setattr__(self, "predicate", CachePredicate(max_age=max_age, status_ranges=tuple(ranges)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_errors": self.client_errors,
            "server_errors": self.server_errors,
            "online": self.online,
            "ttl": self.ttl,
        }
