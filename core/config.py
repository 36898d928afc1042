from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

import yaml

from core.models import Instance


LOG_LEVELS = {
    'fatal': logging.CRITICAL,
    'error': logging.ERROR,
    'warn': logging.WARNING,
    'info': logging.INFO,
    'debug': logging.DEBUG,
    'trace': logging.DEBUG,
}

DEFAULT_BASE_URL = 'http://localhost:9999'
DEFAULT_CRON_SCHEDULE = '0 */6 * * *'
DEFAULT_CONCURRENCY_LIMIT = 10
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_MS = 2000
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_REQUEST_RETRIES = 0
DEFAULT_HEALTH_CHECK_INTERVAL = 300
DEFAULT_SHUTDOWN_TIMEOUT = 30

# field -> (min, max, default)
_INT_RANGES = {
    'concurrencyLimit': (1, 100, DEFAULT_CONCURRENCY_LIMIT),
    'retryAttempts': (1, 10, DEFAULT_RETRY_ATTEMPTS),
    'retryDelay': (100, 60000, DEFAULT_RETRY_DELAY_MS),
}


class ConfigError(ValueError):
    pass


def env_flag(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ['true', '1', 'yes']


def load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise ConfigError(f'Configuration file not found: {os.path.abspath(path)}')
    logging.info(f'Loading configuration from: {os.path.abspath(path)}')
    with open(path, 'r') as f:
        return load_yaml_text(f.read())


def load_yaml_text(content: str) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f'Invalid YAML: {e}') from e
    if not isinstance(data, dict):
        raise ConfigError('Configuration root must be a mapping')
    return data


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    def instances(self) -> Dict[str, Any]:
        inst = self.cfg.get('instances')
        if not isinstance(inst, dict):
            raise ConfigError("'instances' must be a mapping of name -> instance settings")
        return inst

    # General settings accessor (globalSettings)
    def general(self, key: str, default: Any = None) -> Any:
        gen = self.cfg.get('globalSettings') if isinstance(self.cfg.get('globalSettings'), dict) else {}
        return gen.get(key, default)


def _validate_int(name: str, key: str, value: Any) -> int:
    lo, hi, default = _INT_RANGES[key]
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Instance '{name}': {key} must be an integer, got {value!r}")
    if value < lo or value > hi:
        raise ConfigError(f"Instance '{name}': {key} must be between {lo} and {hi}, got {value}")
    return value


def _validate_url(name: str, value: Any) -> str:
    parsed = urlparse(str(value or ''))
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ConfigError(f"Instance '{name}': baseUrl must be a valid URL, got {value!r}")
    return str(value)


def parse_instance(name: str, raw: Any) -> Instance:
    if not isinstance(raw, dict):
        raise ConfigError(f"Instance '{name}' must be a mapping")
    cron = raw.get('cronSchedule')
    if not isinstance(cron, str) or not cron.strip():
        raise ConfigError(f"Instance '{name}': Cron schedule is required")
    enabled = raw.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"Instance '{name}': enabled must be a boolean")
    return Instance(
        name=str(name),
        base_url=_validate_url(name, raw.get('baseUrl')),
        cron_schedule=cron.strip(),
        concurrency_limit=_validate_int(name, 'concurrencyLimit', raw.get('concurrencyLimit')),
        enabled=enabled,
        retry_attempts=_validate_int(name, 'retryAttempts', raw.get('retryAttempts')),
        retry_delay=_validate_int(name, 'retryDelay', raw.get('retryDelay')),
    )


def _nz(v, cast, default):
    try:
        return cast(v)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class AppConfig:
    instances: List[Instance]
    log_level: str = 'info'
    timezone: str = 'UTC'
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    request_retries: int = DEFAULT_REQUEST_RETRIES
    structured_logs: bool = False
    health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    source: str = 'default'
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def logging_level(self) -> int:
        return LOG_LEVELS.get(self.log_level, logging.INFO)

    def enabled_instances(self) -> List[Instance]:
        return [i for i in self.instances if i.enabled]

    def find_instance(self, name: str) -> Optional[Instance]:
        for i in self.instances:
            if i.name == name:
                return i
        return None


def parse_config(cfg: Dict[str, Any], env: Optional[Mapping[str, str]] = None, source: str = 'default') -> AppConfig:
    env = os.environ if env is None else env
    ac = ConfigAccessor(cfg)
    instances = [parse_instance(name, raw) for name, raw in ac.instances().items()]

    log_level = str(ac.general('logLevel', 'info')).lower()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"globalSettings.logLevel must be one of {sorted(LOG_LEVELS)}, got {log_level!r}")
    timezone = str(ac.general('timezone', 'UTC') or 'UTC')

    return AppConfig(
        instances=instances,
        log_level=log_level,
        timezone=timezone,
        request_timeout=max(1.0, _nz(ac.general('requestTimeout', env.get('REQUEST_TIMEOUT', DEFAULT_REQUEST_TIMEOUT)), float, DEFAULT_REQUEST_TIMEOUT)),
        request_retries=max(0, _nz(ac.general('requestRetries', env.get('REQUEST_RETRIES', DEFAULT_REQUEST_RETRIES)), int, DEFAULT_REQUEST_RETRIES)),
        structured_logs=env_flag(ac.general('structuredLogs', env.get('STRUCTURED_LOGS')), False),
        health_check_interval=max(0.0, _nz(ac.general('healthCheckInterval', DEFAULT_HEALTH_CHECK_INTERVAL), float, DEFAULT_HEALTH_CHECK_INTERVAL)),
        shutdown_timeout=max(0.0, _nz(ac.general('shutdownTimeout', DEFAULT_SHUTDOWN_TIMEOUT), float, DEFAULT_SHUTDOWN_TIMEOUT)),
        source=source,
        raw=cfg,
    )


def default_config(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if env is None else env
    return {
        'instances': {
            'default': {
                'baseUrl': env.get('ZURG_BASE_URL') or DEFAULT_BASE_URL,
                'concurrencyLimit': _nz(env.get('CONCURRENCY_LIMIT') or DEFAULT_CONCURRENCY_LIMIT, int, env.get('CONCURRENCY_LIMIT')),
                'cronSchedule': env.get('CRON_SCHEDULE') or DEFAULT_CRON_SCHEDULE,
                'enabled': True,
                'retryAttempts': DEFAULT_RETRY_ATTEMPTS,
                'retryDelay': DEFAULT_RETRY_DELAY_MS,
            }
        },
        'globalSettings': {
            'logLevel': (env.get('LOG_LEVEL') or 'info').lower(),
            'timezone': env.get('TZ') or 'UTC',
        },
    }


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Resolve configuration from ZURG_CONFIG_FILE, ZURG_CONFIG_YAML or env defaults.

    A file or inline YAML that cannot be loaded falls back to the defaults.
    Invalid defaults raise ConfigError.
    """
    env = os.environ if env is None else env
    config_file = env.get('ZURG_CONFIG_FILE')
    yaml_content = env.get('ZURG_CONFIG_YAML')

    if config_file:
        try:
            return parse_config(load_yaml(config_file), env, source=config_file)
        except (ConfigError, OSError) as e:
            logging.error(f'Failed to load configuration file: {e}')
            logging.error('Failed to load config file, falling back to default configuration')
            return parse_config(default_config(env), env)

    if yaml_content:
        logging.warning('ZURG_CONFIG_YAML is deprecated, use ZURG_CONFIG_FILE instead')
        try:
            return parse_config(load_yaml_text(yaml_content), env, source='ZURG_CONFIG_YAML')
        except ConfigError as e:
            logging.error(f'Failed to parse ZURG_CONFIG_YAML: {e}')
            logging.warning('Falling back to default configuration')
            return parse_config(default_config(env), env)

    logging.warning('No ZURG_CONFIG_FILE specified, using default configuration')
    logging.info('Set ZURG_CONFIG_FILE environment variable to use a custom configuration file')
    return parse_config(default_config(env), env)
