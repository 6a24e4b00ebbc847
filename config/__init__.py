"""Settings package.

``config`` is resolved once per process from the YAML layers in this
directory plus environment variables (see settings.py). Pick the layer
with FLASK_ENV or APP_ENV: development (default), staging, production.

    from config import config

    if config.STORAGE_BACKEND == 'memory':
        ...
"""
from .settings import config, Config, is_dev, is_prod, get_env

__all__ = ['config', 'Config', 'is_dev', 'is_prod', 'get_env']
