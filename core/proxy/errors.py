# core/proxy/errors.py
"""Ошибки конвейера кэширующего прокси"""


class ProxyError(Exception):
    """Базовая ошибка обработки одного запроса"""

    title = "proxy_error"
    status = 500


class UrlError(ProxyError):
    """Целевой URL не извлекается из пути или имеет недопустимую схему"""

    title = "url_error"


class NotOnlineError(ProxyError):
    """Промах кэша в офлайн режиме"""

    title = "not_online"


class StoreError(ProxyError):
    """Хранилище недоступно или строка кэша повреждена"""

    title = "store_error"


class UpstreamError(ProxyError):
    """Запрос к origin не удалось построить или выполнить"""

    title = "upstream_error"
