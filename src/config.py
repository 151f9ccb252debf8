import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))

# Environment variables (secrets)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CONFIG_FILE = os.getenv("CONFIG_FILE", "./configs/default.yaml")
POLLER_SECRET = os.getenv("POLLER_SECRET", "")

REQUIRED_SECTIONS = ['bot', 'poller', 'oracle', 'executor']


class ConfigLoader:
    """Loads and validates YAML configuration with environment variable substitution."""

    def __init__(self, config_path: str):
        self.config_path = Path(config_path)
        self._config: Optional[Dict[str, Any]] = None
        self._load()

    def _load(self):
        """Load YAML config file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as f:
            self._config = yaml.safe_load(f) or {}

        # Validate required sections
        for section in REQUIRED_SECTIONS:
            if section not in self._config:
                raise ValueError(f"Missing required config section: {section}")

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get config value by dot-notation path.
        Example: config.get('poller.interval_seconds') -> 60
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
                if value is None:
                    return default
            else:
                return default

        # Handle environment variable substitution in strings
        if isinstance(value, str) and value.startswith('${') and value.endswith('}'):
            env_var = value[2:-1]
            return os.getenv(env_var, default)

        return value

    @property
    def raw(self) -> Dict[str, Any]:
        """Get raw config dict."""
        return self._config


# Global config instance (lazy-loaded)
_config_instance: Optional[ConfigLoader] = None


def get_config() -> ConfigLoader:
    """Get global config instance (singleton pattern)."""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigLoader(os.getenv("CONFIG_FILE", CONFIG_FILE))
    return _config_instance


def reload_config():
    """Reload config from file."""
    global _config_instance
    _config_instance = ConfigLoader(os.getenv("CONFIG_FILE", CONFIG_FILE))


def _positive(value: Any, default, cast=float):
    """Cast value, falling back to default when invalid or not positive."""
    try:
        number = cast(value)
    except (ValueError, TypeError):
        return default
    return number if number > 0 else default


# Helper functions for common config access
def get_bot_version() -> str:
    return get_config().get('bot.version', '1.0.0')


def get_bot_name() -> str:
    return get_config().get('bot.name', 'Rule Automation Engine')


def get_poller_config() -> Dict[str, Any]:
    """Get poller config with validation and safe defaults."""
    from src.utils.windows import normalize_window

    poller_config = get_config().get('poller', {})
    if not isinstance(poller_config, dict):
        poller_config = {}

    poller_config = dict(poller_config)
    poller_config['interval_seconds'] = _positive(poller_config.get('interval_seconds', 60), 60)
    poller_config['price_timeout_seconds'] = _positive(poller_config.get('price_timeout_seconds', 10), 10)
    poller_config['default_window'] = normalize_window(poller_config.get('default_window'))
    return poller_config


def get_oracle_config() -> Dict[str, Any]:
    oracle_config = get_config().get('oracle', {})
    if not isinstance(oracle_config, dict):
        oracle_config = {}

    oracle_config = dict(oracle_config)
    oracle_config.setdefault('provider', 'mock')
    oracle_config.setdefault('base_url', 'http://localhost:3000')
    oracle_config['timeout'] = _positive(oracle_config.get('timeout', 10), 10)
    oracle_config['max_retries'] = _positive(oracle_config.get('max_retries', 3), 3, cast=int)
    return oracle_config


def get_executor_config() -> Dict[str, Any]:
    executor_config = get_config().get('executor', {})
    if not isinstance(executor_config, dict):
        executor_config = {}

    executor_config = dict(executor_config)
    executor_config.setdefault('mode', 'dry_run')
    executor_config.setdefault('base_url', 'http://localhost:3000')
    executor_config.setdefault('funding_asset', 'ETH')
    executor_config['timeout'] = _positive(executor_config.get('timeout', 30), 30)
    return executor_config


def get_healthcheck_config() -> Dict[str, Any]:
    return {
        'enabled': get_config().get('healthcheck.enabled', True),
        'host': get_config().get('healthcheck.host', '0.0.0.0'),
        'port': get_config().get('healthcheck.port', 8080),
    }


def get_logging_config() -> Dict[str, Any]:
    return {
        'file': get_config().get('logging.file', 'poller.log'),
        'to_file': get_config().get('logging.to_file', True),
        'dir': get_config().get('logging.dir'),
    }


# Validate critical env vars on import
if not POLLER_SECRET:
    print("WARNING: POLLER_SECRET not set - manual poll endpoint is unauthenticated")
