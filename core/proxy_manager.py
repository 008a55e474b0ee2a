# proxy_manager.py
import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from aiohttp import web

from core.proxy.cache_policy import CacheSettings
from core.proxy.cache_store import CacheStore
from core.proxy.entry import Entry
from core.proxy.errors import NotOnlineError, ProxyError, StoreError
from core.proxy.origin_fetcher import OriginFetcher
from core.proxy.url_extractor import extract_request_url
from utils.port_utils import check_port_availability, get_process_using_port

logger = logging.getLogger(__name__)

PROXY_ROUTE = r'/{url:[a-z][a-z0-9+\-.]*:/.*}'

CORS_HEADERS = {
    'access-control-allow-origin': '*',
    'access-control-allow-headers': '*',
}


def error_response(status: int, title: Optional[str] = None, detail: Optional[str] = None) -> web.Response:
    error = {'status': str(status)}
    if title:
        error['title'] = title
    if detail:
        error['detail'] = detail
    return web.json_response({'errors': [error]}, status=status)


class CachingProxy:
    def __init__(self, settings: CacheSettings, store: CacheStore, fetcher: OriginFetcher):
        """
        Args:
            settings: Неизменяемые настройки кэша (общие для всех запросов)
            store: Хранилище закэшированных ответов
            fetcher: Клиент для запросов к origin
        """
        self.settings = settings
        self.store = store
        self.fetcher = fetcher

        # Статистика работы
        self.stats = {
            'total_requests': 0,
            'hits': 0,
            'misses': 0,
            'active_connections': 0,
            'errors': 0
        }

    async def on_startup(self, app):
        """Инициализация хранилища и connection pool для origin"""
        await self.store.initialize()
        await self.fetcher.initialize()

    async def on_cleanup(self, app):
        """Очистка ресурсов"""
        await self.fetcher.close()
        await self.store.close()

    async def handle_http(self, request):
        """Обработка запроса: кэш -> origin -> кэш"""
        if request.method == 'OPTIONS':
            logger.info(f"Ignoring {request.method} request")
            return web.Response(status=200, headers=CORS_HEADERS)

        self.stats['total_requests'] += 1
        self.stats['active_connections'] += 1

        try:
            url = extract_request_url(request)
            entry = await self._serve(request, url)
            return entry.to_response()

        except ProxyError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ {e.title}: {e}")
            return error_response(e.status, e.title, str(e))

        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Unexpected proxy error: {e}", exc_info=True)
            return error_response(500, 'internal_error', str(e))

        finally:
            self.stats['active_connections'] -= 1

    async def _serve(self, request, url: str) -> Entry:
        method = request.method

        async with self.store.lease() as session:
            entry = await session.lookup(method, url, self.settings)
            if entry is not None:
                self.stats['hits'] += 1
                logger.info(f"Serving from cache: {method} {url}")
                return entry

            self.stats['misses'] += 1
            if not self.settings.online:
                raise NotOnlineError(f"No cached response for {method} {url} and proxy is offline")

            logger.info(f"No match, proxying: {method} {url}")
            body = await request.read()
            fetched = await self.fetcher.fetch(method, url, request.headers, body)

            entry = Entry(
                method=method,
                url=url,
                content=fetched.content,
                headers=fetched.headers,
                status_code=fetched.status_code,
                last_update=datetime.now(timezone.utc),
            )

            logger.debug("Saving to database")
            try:
                await session.upsert(entry)
            except StoreError as e:
                raise StoreError(f"Fetched {method} {url} but could not store it: {e}") from e

        return entry

    async def handle_settings(self, request):
        return web.json_response(self.settings.to_dict())

    async def handle_stats(self, request):
        try:
            urls = await self.store.count()
        except ProxyError as e:
            logger.error(f"❌ {e.title}: {e}")
            return error_response(e.status, e.title, str(e))
        return web.json_response({'urls': urls})

    async def not_found(self, request):
        return web.json_response({'errors': [{'status': '404'}]}, status=404)

    def get_full_stats(self):
        """Получить полную статистику прокси"""
        return {
            'requests': self.stats['total_requests'],
            'hits': self.stats['hits'],
            'misses': self.stats['misses'],
            'active': self.stats['active_connections'],
            'errors': self.stats['errors']
        }


def create_app(proxy: CachingProxy) -> web.Application:
    """Создаёт aiohttp приложение с маршрутами прокси"""
    app = web.Application()
    app.on_startup.append(proxy.on_startup)
    app.on_cleanup.append(proxy.on_cleanup)

    app.router.add_get('/settings', proxy.handle_settings)
    app.router.add_get('/stats', proxy.handle_stats)
    app.router.add_route('*', PROXY_ROUTE, proxy.handle_http)
    app.router.add_route('*', '/{tail:.*}', proxy.not_found)
    return app


class ProxyManager:
    def __init__(self, config=None):
        """
        Args:
            config: ConfigManager с настройками сервера, базы и кэша
        """
        if config is None:
            from core.config_manager import get_config
            config = get_config()

        self.config = config
        self.is_running = False
        self.host = config.get('server.host', '127.0.0.1')
        self.local_port = int(config.get('server.port', 8080))
        self.proxy = None
        self.runner = None
        self.site = None
        self.loop = None
        self.thread = None
        self.startup_done = threading.Event()

        # Error tracking
        self.last_error_type = None  # 'port', 'store', 'unknown'
        self.last_error_details = None

    def start(self):
        """
        Запуск прокси сервера

        Returns:
            bool: True если успешно запущен
        """
        if self.is_running:
            logger.warning("⚠️ Прокси уже запущен")
            return False

        self.last_error_type = None
        self.last_error_details = None

        # Проверка порта
        port_available, port_message = check_port_availability(self.local_port, self.host)
        if not port_available:
            logger.error(f"❌ {port_message}")

            process_info = get_process_using_port(self.local_port)
            if process_info:
                logger.info(
                    f"📌 Процесс на порту {self.local_port}:\n"
                    f"   PID: {process_info.get('pid')}\n"
                    f"   Name: {process_info.get('name')}\n"
                    f"   User: {process_info.get('username', 'N/A')}"
                )
            self.last_error_type = 'port'
            self.last_error_details = port_message
            return False

        self.startup_done.clear()
        try:
            self.thread = threading.Thread(
                target=self._run_server,
                daemon=True
            )
            self.thread.start()

            # Ждём запуска (максимум 10 секунд)
            self.startup_done.wait(timeout=10)

            if not self.is_running:
                logger.error(f"❌ Прокси не запустился: {self.last_error_details or 'timeout'}")
                self.stop()
                return False

            logger.info(f"✅ Starting HTTP proxy server at http://{self.host}:{self.local_port}/")
            return True

        except Exception as e:
            logger.error(f"❌ Failed to start proxy: {e}")
            self.stop()
            return False

    def _run_server(self):
        """Запускает сервер в отдельном event loop"""
        try:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)

            self.loop.run_until_complete(self._start_server())
            self.startup_done.set()
            if not self.is_running:
                return

            self.loop.run_forever()

        except Exception as e:
            logger.error(f"❌ Ошибка в event loop: {e}")
            self.is_running = False
        finally:
            self.startup_done.set()
            if self.loop:
                self.loop.close()

    def _build_proxy(self) -> CachingProxy:
        settings = self.config.cache_settings()
        store = CacheStore(
            self.config.get('database.path', 'cache.db'),
            pool_size=int(self.config.get('database.pool_size', 10)),
        )
        fetcher = OriginFetcher(self.config.fetcher_config())
        logger.info(f"📋 Cache settings: {settings.to_dict()}")
        return CachingProxy(settings, store, fetcher)

    async def _start_server(self):
        """Асинхронный запуск сервера"""
        try:
            self.proxy = self._build_proxy()
            app = create_app(self.proxy)

            access_log = logger if self.config.get('server.access_log', True) else None
            self.runner = web.AppRunner(app, access_log=access_log)
            # on_startup creates the cache table; failure here is fatal
            await self.runner.setup()

            self.site = web.TCPSite(
                self.runner,
                host=self.host,
                port=self.local_port,
            )

            await self.site.start()
            self.is_running = True
            logger.info(f"✅ Сервер успешно запущен на порту {self.local_port}")
            logger.info(f"📊 Connection pool: db={self.proxy.store.pool_size}, "
                        f"origin={self.proxy.fetcher.config.connection_limit}")

        except StoreError as e:
            logger.error(f"❌ Cache store initialization failed: {e}")
            self.last_error_type = 'store'
            self.last_error_details = str(e)
            self.is_running = False
            await self._stop_server()

        except Exception as e:
            logger.error(f"❌ Ошибка запуска сервера: {e}")
            self.last_error_type = 'unknown'
            self.last_error_details = str(e)
            self.is_running = False
            await self._stop_server()

    def stop(self):
        """Остановка прокси сервера"""
        try:
            logger.info("🛑 Stopping proxy...")

            was_running = self.is_running
            self.is_running = False

            if was_running and self.loop and not self.loop.is_closed():
                future = asyncio.run_coroutine_threadsafe(self._stop_server(), self.loop)
                future.result(timeout=10)
                self.loop.call_soon_threadsafe(self.loop.stop)

            if self.thread and self.thread.is_alive():
                self.thread.join(timeout=5)

            if self.proxy:
                stats = self.proxy.get_full_stats()
                logger.info(
                    f"📊 Session statistics:\n"
                    f"   Total requests: {stats.get('requests', 0)}\n"
                    f"   Cache hits: {stats.get('hits', 0)}\n"
                    f"   Cache misses: {stats.get('misses', 0)}\n"
                    f"   Errors: {stats.get('errors', 0)}"
                )

            logger.info("✅ Proxy stopped")

        except Exception as e:
            logger.error(f"❌ Error stopping proxy: {e}")
            logger.exception("Full traceback:")

    async def _stop_server(self):
        """Асинхронная остановка сервера"""
        if self.site:
            await self.site.stop()
            self.site = None
        if self.runner:
            # runs on_cleanup: closes the origin session and the db pool
            await self.runner.cleanup()
            self.runner = None
        logger.debug("✅ Сервер успешно остановлен")

    def get_status(self):
        """Возвращает статус прокси"""
        status = {
            'running': self.is_running,
            'host': self.host,
            'port': self.local_port,
        }
        if self.last_error_type:
            status['error'] = {'type': self.last_error_type, 'details': self.last_error_details}
        if self.proxy and self.is_running:
            status['proxy_stats'] = self.proxy.get_full_stats()
        return status
