"""Layered settings for the shuttle messaging server.

Values are resolved from, lowest to highest precedence:

    config.base.yaml      shared defaults
    config.<env>.yaml     dev / staging / prod overrides
    config.local.yaml     untracked developer overrides
    environment variables

The environment comes from FLASK_ENV or APP_ENV and defaults to
development. Import the ready-made singleton:

    from config import config

    secret = config.JWT_SECRET
    ttl = config.TYPING_TTL_SECONDS
"""
import os
from pathlib import Path
from typing import Optional, Any, Dict
import yaml

CONFIG_DIR = Path(__file__).parent

ENV_ALIASES = {
    'dev': 'development',
    'development': 'development',
    'test': 'development',
    'staging': 'staging',
    'stage': 'staging',
    'prod': 'production',
    'production': 'production',
}

DEFAULT_ENV = 'development'

# environment -> override file, applied on top of config.base.yaml
ENV_FILES = {
    'development': 'config.dev.yaml',
    'staging': 'config.staging.yaml',
    'production': 'config.prod.yaml',
}

_TRUTHY = ('1', 'true', 'yes')


def _read_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with open(path, 'r') as f:
        return yaml.safe_load(f) or {}


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Settings resolved from YAML layers and environment variables.

    The parsed YAML is shared at class level, so every ``Config()`` sees the
    same data; ``reload()`` re-reads the files (tests use it after changing
    FLASK_ENV). Environment variables are read on every property access.
    """

    _data: Dict[str, Any] = {}
    _loaded: bool = False
    _env: str = DEFAULT_ENV

    def __init__(self):
        if not Config._loaded:
            self._load()

    @staticmethod
    def _resolve_env() -> str:
        raw = (os.getenv('FLASK_ENV') or os.getenv('APP_ENV') or DEFAULT_ENV).strip().lower()
        return ENV_ALIASES.get(raw, DEFAULT_ENV)

    def _load(self):
        Config._env = self._resolve_env()
        layers = ['config.base.yaml', ENV_FILES.get(Config._env, 'config.dev.yaml'), 'config.local.yaml']
        data: Dict[str, Any] = {}
        for name in layers:
            data = _merge(data, _read_yaml(CONFIG_DIR / name))
        Config._data = data
        Config._loaded = True

    def _yaml(self, *keys, default=None) -> Any:
        node: Any = Config._data
        for key in keys:
            if not isinstance(node, dict) or node.get(key) is None:
                return default
            node = node[key]
        return node

    def _get_int(self, env_name: str, *keys, default: int) -> int:
        env_val = os.getenv(env_name)
        if env_val:
            return int(env_val)
        return int(self._yaml(*keys, default=default))

    def _get_float(self, env_name: str, *keys, default: float) -> float:
        env_val = os.getenv(env_name)
        if env_val:
            return float(env_val)
        return float(self._yaml(*keys, default=default))

    def _get_bool(self, env_name: str, *keys, default: bool) -> bool:
        env_val = os.getenv(env_name, '').lower()
        if env_val:
            return env_val in _TRUTHY
        return bool(self._yaml(*keys, default=default))

    @classmethod
    def reload(cls) -> 'Config':
        cls._loaded = False
        cls._data = {}
        return cls()

    # ==========================================================================
    # Environment
    # ==========================================================================

    @property
    def CURRENT_ENV(self) -> str:
        return Config._env

    @property
    def IS_DEV(self) -> bool:
        return Config._env == 'development'

    @property
    def IS_STAGING(self) -> bool:
        return Config._env == 'staging'

    @property
    def IS_PROD(self) -> bool:
        return Config._env == 'production'

    # ==========================================================================
    # Application Settings
    # ==========================================================================

    @property
    def DEBUG(self) -> bool:
        """Flask debug mode."""
        return self._get_bool('FLASK_DEBUG', 'app', 'debug', default=False)

    @property
    def ENV(self) -> str:
        return Config._env

    @property
    def PORT(self) -> int:
        return self._get_int('PORT', 'app', 'port', default=5000)

    @property
    def APP_NAME(self) -> str:
        return os.getenv('APP_NAME') or self._yaml('app', 'name', default='UCC Shuttle Messaging')

    @property
    def APP_VERSION(self) -> str:
        return self._yaml('app', 'version', default='1.0.0')

    # ==========================================================================
    # Security Settings
    # ==========================================================================

    @property
    def JWT_SECRET(self) -> Optional[str]:
        """JWT secret key for token verification. Required in production."""
        return os.getenv('JWT_SECRET') or self._yaml('security', 'jwt', 'secret')

    @property
    def JWT_ALGORITHM(self) -> str:
        return os.getenv('JWT_ALGORITHM') or self._yaml('security', 'jwt', 'algorithm', default='HS256')

    @property
    def ACCESS_TOKEN_EXPIRE_MINUTES(self) -> int:
        return self._get_int('ACCESS_TOKEN_MINUTES', 'security', 'jwt', 'access_token_expire_minutes', default=1440)

    # ==========================================================================
    # Database Settings
    # ==========================================================================

    @property
    def STORAGE_BACKEND(self) -> str:
        """Persistence backend: 'mongo' (default) or 'memory' (single process only)."""
        backend = os.getenv('STORAGE_BACKEND') or self._yaml('database', 'backend', default='mongo')
        return str(backend).lower().strip()

    @property
    def MONGO_URI(self) -> str:
        return os.getenv('MONGO_URI') or self._yaml('database', 'mongo_uri', default='mongodb://localhost:27017')

    @property
    def CHAT_DB_NAME(self) -> str:
        return os.getenv('CHAT_DB_NAME') or self._yaml('database', 'chat_db', default='shuttle_chat')

    @property
    def MONGO_TIMEOUT_MS(self) -> int:
        """Server selection timeout for the Mongo client."""
        return self._get_int('MONGO_TIMEOUT_MS', 'database', 'timeout_ms', default=5000)

    @property
    def STORAGE_RETRY_ATTEMPTS(self) -> int:
        """Attempts for idempotent reads when storage is temporarily unavailable."""
        return self._get_int('STORAGE_RETRY_ATTEMPTS', 'database', 'retry_attempts', default=3)

    @property
    def STORAGE_RETRY_BACKOFF_SECONDS(self) -> float:
        return self._get_float('STORAGE_RETRY_BACKOFF_SECONDS', 'database', 'retry_backoff_seconds', default=0.1)

    # ==========================================================================
    # CORS Settings
    # ==========================================================================

    @property
    def CORS_ORIGINS(self) -> str:
        return os.getenv('CORS_ORIGINS') or self._yaml('cors', 'origins', default='*')

    @property
    def CORS_ORIGINS_LIST(self) -> list:
        origins = self.CORS_ORIGINS
        if origins == '*':
            return ['*']
        return [o.strip() for o in origins.split(',') if o.strip()]

    # ==========================================================================
    # Realtime Settings
    # ==========================================================================

    @property
    def SOCKETIO_ASYNC_MODE(self) -> str:
        return os.getenv('SOCKETIO_ASYNC_MODE') or self._yaml('realtime', 'async_mode', default='threading')

    @property
    def PRESENCE_TIMEOUT_SECONDS(self) -> int:
        """A connection with no ping inside this window is demoted to offline."""
        return self._get_int('PRESENCE_TIMEOUT_SECONDS', 'realtime', 'presence_timeout_seconds', default=90)

    @property
    def PRESENCE_SWEEP_INTERVAL_SECONDS(self) -> int:
        return self._get_int('PRESENCE_SWEEP_INTERVAL_SECONDS', 'realtime', 'sweep_interval_seconds', default=30)

    @property
    def PRESENCE_SWEEPER_ENABLED(self) -> bool:
        return self._get_bool('PRESENCE_SWEEPER_ENABLED', 'realtime', 'sweeper_enabled', default=True)

    # ==========================================================================
    # Messaging Settings
    # ==========================================================================

    @property
    def TYPING_TTL_SECONDS(self) -> int:
        """Typing indicators older than this are treated as stopped."""
        return self._get_int('TYPING_TTL_SECONDS', 'messaging', 'typing_ttl_seconds', default=300)

    @property
    def MAX_MESSAGE_LENGTH(self) -> int:
        return self._get_int('MAX_MESSAGE_LENGTH', 'messaging', 'max_message_length', default=1000)

    @property
    def MESSAGE_PAGE_SIZE(self) -> int:
        return int(self._yaml('messaging', 'page_size', default=50))

    @property
    def MESSAGE_PAGE_MAX(self) -> int:
        return int(self._yaml('messaging', 'page_max', default=200))

    # ==========================================================================
    # Logging Settings
    # ==========================================================================

    @property
    def LOG_LEVEL(self) -> str:
        env_val = os.getenv('LOG_LEVEL')
        if env_val:
            return env_val.upper()
        if self.LOG_DEBUG:
            return 'DEBUG'
        return str(self._yaml('logging', 'level', default='INFO')).upper()

    @property
    def LOG_DEBUG(self) -> bool:
        return self._get_bool('LOG_DEBUG', 'logging', 'debug', default=False)

    @property
    def LOG_PATTERN(self) -> str:
        return os.getenv('LOG_PATTERN') or self._yaml('logging', 'pattern', default='%(message)s')

    @property
    def LOG_INCLUDE_DATETIME(self) -> bool:
        return self._get_bool('LOG_INCLUDE_DATETIME', 'logging', 'include_datetime', default=False)

    @property
    def LOG_INCLUDE_NAME(self) -> bool:
        return self._get_bool('LOG_INCLUDE_NAME', 'logging', 'include_name', default=False)

    @property
    def LOG_INCLUDE_LEVEL(self) -> bool:
        return self._get_bool('LOG_INCLUDE_LEVEL', 'logging', 'include_level', default=True)

    @property
    def LOG_DATE_FORMAT(self) -> str:
        return self._yaml('logging', 'date_format', default='%H:%M:%S')

    @property
    def LOG_FORMAT(self) -> str:
        """An explicit LOG_PATTERN wins; otherwise assemble one from the include switches."""
        if self.LOG_PATTERN and self.LOG_PATTERN != '%(message)s':
            return self.LOG_PATTERN
        switches = (
            (self.LOG_INCLUDE_DATETIME, '%(asctime)s'),
            (self.LOG_INCLUDE_NAME, '%(name)s'),
            (self.LOG_INCLUDE_LEVEL, '%(levelname)s'),
        )
        fields = [field for enabled, field in switches if enabled]
        return ' - '.join(fields + ['%(message)s'])

    # ==========================================================================
    # Validation
    # ==========================================================================

    def problems(self) -> list:
        """Configuration mistakes that must stop the server from starting."""
        found = []
        if self.STORAGE_BACKEND not in ('mongo', 'memory'):
            found.append(f'Unknown STORAGE_BACKEND: {self.STORAGE_BACKEND}')
        if not self.IS_PROD:
            return found
        if not self.JWT_SECRET:
            found.append('JWT_SECRET must be set in production')
        if self.STORAGE_BACKEND == 'memory':
            found.append('STORAGE_BACKEND=memory keeps chat state in one process and is not allowed in production')
        if self.MONGO_URI in (None, '', 'mongodb://localhost:27017'):
            found.append('MONGO_URI still points at the local default')
        if '*' in self.CORS_ORIGINS_LIST:
            found.append('CORS_ORIGINS must list explicit origins in production')
        return found

    def validate_required(self) -> None:
        """Raise RuntimeError listing every problem found by problems()."""
        found = self.problems()
        if found:
            raise RuntimeError('Configuration errors:\n' + '\n'.join(f'  - {p}' for p in found))

    def to_dict(self) -> Dict[str, Any]:
        """Redacted snapshot of the effective settings, for debugging."""
        return {
            'environment': {
                'name': self.CURRENT_ENV,
                'dev': self.IS_DEV,
                'staging': self.IS_STAGING,
                'prod': self.IS_PROD,
            },
            'app': {
                'name': self.APP_NAME,
                'version': self.APP_VERSION,
                'debug': self.DEBUG,
                'port': self.PORT,
            },
            'security': {
                'jwt_algorithm': self.JWT_ALGORITHM,
                'access_token_expire_minutes': self.ACCESS_TOKEN_EXPIRE_MINUTES,
                'jwt_secret_set': bool(self.JWT_SECRET),
            },
            'database': {
                'backend': self.STORAGE_BACKEND,
                'mongo_uri': '***' if self.MONGO_URI else None,
                'chat_db': self.CHAT_DB_NAME,
                'retry_attempts': self.STORAGE_RETRY_ATTEMPTS,
                'retry_backoff_seconds': self.STORAGE_RETRY_BACKOFF_SECONDS,
            },
            'cors': {
                'origins': self.CORS_ORIGINS_LIST,
            },
            'realtime': {
                'async_mode': self.SOCKETIO_ASYNC_MODE,
                'presence_timeout_seconds': self.PRESENCE_TIMEOUT_SECONDS,
                'sweep_interval_seconds': self.PRESENCE_SWEEP_INTERVAL_SECONDS,
                'sweeper_enabled': self.PRESENCE_SWEEPER_ENABLED,
            },
            'messaging': {
                'typing_ttl_seconds': self.TYPING_TTL_SECONDS,
                'max_message_length': self.MAX_MESSAGE_LENGTH,
                'page_size': self.MESSAGE_PAGE_SIZE,
                'page_max': self.MESSAGE_PAGE_MAX,
            },
            'logging': {
                'level': self.LOG_LEVEL,
                'format': self.LOG_FORMAT,
            },
        }


config = Config()


def get_env() -> str:
    return config.ENV


def is_dev() -> bool:
    return config.IS_DEV


def is_prod() -> bool:
    return config.IS_PROD
