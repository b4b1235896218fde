# main.py
import argparse
import json
import logging
import sys
import time

import httpx


def setup_logging(debug: bool = False):
    """Configures logging before anything else, with log rotation"""
    from reader_proxy.core.config_manager import get_app_data_dir
    from logging.handlers import RotatingFileHandler

    logs_dir = get_app_data_dir() / "logs"
    logs_dir.mkdir(exist_ok=True)

    log_file = logs_dir / "reader_proxy.log"

    # Rotating handler: 5MB max, 5 backups
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[console_handler, file_handler]
    )


logger = logging.getLogger(__name__)


def setup_exception_handler():
    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def serve() -> int:
    from reader_proxy.core.proxy_manager import get_proxy_manager

    manager = get_proxy_manager()
    if not manager.start():
        status = manager.get_status()
        logger.error(f"❌ Proxy failed to start: {status.get('error')}")
        return 1

    try:
        while manager.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted, stopping proxy...")
    finally:
        manager.stop()
    return 0


def control_client():
    from reader_proxy.core.config_manager import get_config
    from reader_proxy.core.control_client import ControlClient

    proxy_config = get_config().get_proxy_config()
    base_url = f"http://{proxy_config['host']}:{proxy_config['local_port']}"
    return ControlClient(base_url, proxy_config.get('control_path', '/__proxy__'))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='reader-proxy', description='Offline caching proxy for the reader web app')
    parser.add_argument('--debug', action='store_true', help='verbose logging')
    subparsers = parser.add_subparsers(dest='command')

    subparsers.add_parser('serve', help='run the proxy (default)')

    cache_chapter = subparsers.add_parser('cache-chapter', help='store chapter content without the network')
    cache_chapter.add_argument('url', help='chapter request URL, e.g. /getBookContent?url=X&index=3')
    cache_chapter.add_argument('file', help='file with the chapter text')

    subparsers.add_parser('clear-chapters', help='delete every cached chapter')
    subparsers.add_parser('stats', help='print cache statistics')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(args.debug)
    setup_exception_handler()

    command = args.command or 'serve'
    if command == 'serve':
        return serve()

    try:
        with control_client() as client:
            if command == 'cache-chapter':
                with open(args.file, 'r', encoding='utf-8') as f:
                    content = f.read()
                applied = client.cache_chapter(args.url, content)
                logger.info(f"📥 Chapter {'cached' if applied else 'rejected'}: {args.url}")
                return 0 if applied else 1

            if command == 'clear-chapters':
                client.clear_chapter_cache()
                logger.info("🗑️ Chapter cache cleared")
                return 0

            print(json.dumps(client.stats(), indent=2, ensure_ascii=False))
            return 0

    except httpx.HTTPError as e:
        logger.error(f"❌ Proxy not reachable: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
