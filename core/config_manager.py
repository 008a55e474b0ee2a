import json
import sys
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import os

from core.proxy.cache_policy import CacheSettings
from core.proxy.origin_fetcher import DEFAULT_USER_AGENT, FetcherConfig

logger = logging.getLogger(__name__)


def get_app_data_dir():
    """Возвращает путь для хранения данных приложения"""
    override = os.getenv('CACHING_HTTP_SERVER_HOME')
    if override:
        app_data_dir = Path(override)
    elif getattr(sys, 'frozen', False):
        if os.name == 'nt':  # Windows
            appdata_dir = Path(os.getenv('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
            app_data_dir = appdata_dir / 'CachingHttpServer'
        else:  # Linux/Mac
            app_data_dir = Path.home() / '.config' / 'caching-http-server'
    else:
        # Dev режим
        app_data_dir = Path.cwd()

    app_data_dir.mkdir(parents=True, exist_ok=True)
    return app_data_dir


class ConfigManager:
    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else self._get_config_path()
        self.config = self._load_config()

    def _get_config_path(self) -> Path:
        """Возвращает путь к файлу конфигурации"""
        return get_app_data_dir() / 'config.json'

    def _get_default_config(self) -> dict:
        """Возвращает конфигурацию по умолчанию"""
        return {
            'server': {
                'host': '127.0.0.1',
                'port': 8080,
                'access_log': True,
            },

            'database': {
                'path': 'cache.db',
                'pool_size': 10,
            },

            'cache': {
                'ttl': 0,  # секунды, 0 = без ограничения
                'client_errors': True,
                'server_errors': False,
                'online': True,
            },

            'client': {
                'user_agent': DEFAULT_USER_AGENT,
                'connection_limit': 100,
                'verify_ssl': True,
                'follow_redirects': True,
            },

            'logging': {
                'level': 'DEBUG',
                'file': None,
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """Загружает конфигурацию из файла"""
        default_config = self._get_default_config()

        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    # Объединяем с дефолтными значениями
                    return self._deep_merge(default_config, loaded_config)
        except (OSError, ValueError) as e:
            logger.error(f"Ошибка загрузки конфига {self.config_path}: {e}")

        return default_config

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Рекурсивное объединение словарей"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def save(self) -> bool:
        """Сохраняет конфигурацию в файл"""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            logger.info(f"Конфигурация сохранена: {self.config_path}")
            return True
        except OSError as e:
            logger.error(f"Ошибка сохранения конфига: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Получает значение по ключу (dot notation)"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any, save: bool = False) -> bool:
        """Устанавливает значение по ключу (dot notation)"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

        if save:
            return self.save()
        return True

    def cache_settings(self) -> CacheSettings:
        """Неизменяемые настройки кэша для всего процесса"""
        return CacheSettings(
            client_errors=bool(self.get('cache.client_errors', True)),
            server_errors=bool(self.get('cache.server_errors', False)),
            online=bool(self.get('cache.online', True)),
            ttl=int(self.get('cache.ttl', 0)),
        )

    def fetcher_config(self) -> FetcherConfig:
        """Настройки исходящего HTTP клиента"""
        return FetcherConfig(
            default_headers=(('User-Agent', str(self.get('client.user_agent', DEFAULT_USER_AGENT))),),
            connection_limit=int(self.get('client.connection_limit', 100)),
            verify_ssl=bool(self.get('client.verify_ssl', True)),
            follow_redirects=bool(self.get('client.follow_redirects', True)),
        )


# Синглтон для глобального доступа
_config_instance = None


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Возвращает глобальный экземпляр ConfigManager"""
    global _config_instance
    if _config_instance is None or config_path:
        _config_instance = ConfigManager(config_path)
    return _config_instance
