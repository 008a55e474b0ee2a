# main.py
import sys
import signal
import logging
import threading
from pathlib import Path
from typing import Optional

import typer

__version__ = "0.1.0"

app = typer.Typer(
    name="caching-http-server",
    help="Transparent HTTP caching proxy for development",
    add_completion=False,
)

logger = logging.getLogger(__name__)


def setup_logging(level: str = 'DEBUG', log_file: Optional[str] = None):
    """Настраивает логирование ДО всех операций с ротацией"""
    from logging.handlers import RotatingFileHandler

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers = [console_handler]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Ротирующий обработчик: макс 5MB, 5 резервных копий
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.DEBUG),
        handlers=handlers,
        force=True,
    )


def apply_overrides(config, **overrides):
    """Переносит заданные опции командной строки в конфигурацию"""
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)
    return config


@app.command()
def version():
    """Display the server version"""
    typer.echo(f"caching-http-server {__version__}")


@app.command()
def serve(
    config: Optional[str] = typer.Option(None, "--config", help="Path to config.json"),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
    pool_size: Optional[int] = typer.Option(None, "--pool-size", help="Database connection pool size"),
    ttl: Optional[int] = typer.Option(None, "--ttl", min=0, help="Entry lifetime in seconds, 0 disables expiry"),
    client_errors: Optional[bool] = typer.Option(None, "--client-errors/--no-client-errors", help="Serve cached 4xx responses"),
    server_errors: Optional[bool] = typer.Option(None, "--server-errors/--no-server-errors", help="Serve cached 5xx responses"),
    online: Optional[bool] = typer.Option(None, "--online/--offline", help="Allow origin fetches on cache miss"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Rotating log file"),
):
    """
    Run the caching proxy.

    Example:
        curl http://127.0.0.1:8080/https:/example.com/
    """
    from core.config_manager import get_config
    from core.proxy_manager import ProxyManager

    cfg = apply_overrides(
        get_config(config),
        **{
            'server.host': host,
            'server.port': port,
            'database.path': db,
            'database.pool_size': pool_size,
            'cache.ttl': ttl,
            'cache.client_errors': client_errors,
            'cache.server_errors': server_errors,
            'cache.online': online,
            'logging.level': log_level,
            'logging.file': log_file,
        }
    )

    setup_logging(cfg.get('logging.level', 'DEBUG'), cfg.get('logging.file'))
    logger.info(f"🚀 Запуск caching-http-server {__version__}")

    proxy_manager = ProxyManager(cfg)
    if not proxy_manager.start():
        logger.critical(f"Не удалось запустить сервер: {proxy_manager.last_error_details}")
        raise typer.Exit(code=1)

    stop_event = threading.Event()

    def shutdown_handler(signum, frame):
        logger.info(f"🛑 Получен сигнал {signum}")
        stop_event.set()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    try:
        while not stop_event.is_set():
            if not proxy_manager.thread.is_alive():
                logger.error("❌ Поток сервера завершился неожиданно")
                break
            stop_event.wait(1)
    finally:
        proxy_manager.stop()


def main():
    """Основная функция приложения"""
    return app()


if __name__ == "__main__":
    sys.exit(main())
