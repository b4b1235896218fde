import json
import logging
import os
from pathlib import Path
from typing import Dict, Any

logger = logging.getLogger(__name__)

APP_HOME_ENV = 'READER_PROXY_HOME'


def get_app_data_dir() -> Path:
    """Returns the directory holding config, logs and the persisted caches"""
    override = os.getenv(APP_HOME_ENV)
    if override:
        app_data_dir = Path(override)
    elif os.name == 'nt':  # Windows
        appdata_dir = Path(os.getenv('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
        app_data_dir = appdata_dir / 'ReaderProxy'
    else:  # Linux/Mac
        app_data_dir = Path.home() / '.config' / 'reader-proxy'

    app_data_dir.mkdir(parents=True, exist_ok=True)
    return app_data_dir


class ConfigManager:
    def __init__(self, config_path: Path = None):
        self.config_path = config_path or self._get_config_path()
        self.config = self._load_config()

    def _get_config_path(self) -> Path:
        return get_app_data_dir() / 'config.json'

    def _get_default_config(self) -> dict:
        """Returns the default configuration"""
        return {
            'proxy': {
                'host': '127.0.0.1',
                'local_port': 61001,
                'upstream_url': 'http://127.0.0.1:8080',  # reader backend
                'control_path': '/__proxy__',
            },

            'cache': {
                'version': 1,  # bump to drop the static cache on upgrade
                'static_prefix': 'reader-cache-v',
                'chapter_name': 'reader-chapters',
                'precache_assets': ['/', '/index.html'],
                'precache_timeout': 15,
                'persist': True,
            },

            'classifier': {
                'chapter_marker': '/getBookContent',
                'api_prefixes': ['/reader3/', '/api/'],
            },

            'upstream': {
                'total_timeout': 90,
                'connect_timeout': 10,
                'limit': 100,
                'limit_per_host': 50,
            },

            'revalidation': {
                'max_concurrent': 8,
                'max_pending': 256,
                'timeout': 30,
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """Loads the config file over the defaults"""
        default_config = self._get_default_config()

        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    return self._deep_merge(default_config, loaded_config)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config {self.config_path}: {e}")

        return default_config

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
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
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            logger.info(f"Config saved: {self.config_path}")
            return True
        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Gets a value by dot-notation key, e.g. 'cache.version'"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any, save: bool = False) -> bool:
        """Sets a value by dot-notation key"""
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

    def get_proxy_config(self) -> Dict[str, Any]:
        return self.get('proxy', {})

    def get_cache_config(self) -> Dict[str, Any]:
        return self.get('cache', {})

    def get_classifier_config(self) -> Dict[str, Any]:
        return self.get('classifier', {})

    def get_upstream_config(self) -> Dict[str, Any]:
        return self.get('upstream', {})

    def get_revalidation_config(self) -> Dict[str, Any]:
        return self.get('revalidation', {})

    def reset_to_defaults(self) -> bool:
        self.config = self._get_default_config()
        return self.save()


# Singleton for global access
_config_instance = None


def get_config() -> ConfigManager:
    """Returns the global ConfigManager"""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigManager()
    return _config_instance
