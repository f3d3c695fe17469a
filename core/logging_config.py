"""
Centralized logging configuration for the queue backend
"""
import os
from pathlib import Path

APP_LOGGERS = ('queue_management', 'communication', 'appointments')


def _writable_logs_dir(base_dir):
    logs_dir = Path(base_dir) / 'logs'
    try:
        logs_dir.mkdir(exist_ok=True)
    except OSError:
        return None
    return logs_dir if os.access(logs_dir, os.W_OK) else None


def _rotating(filename, level):
    return {
        'level': level,
        'class': 'logging.handlers.RotatingFileHandler',
        'filename': filename,
        'maxBytes': 1024 * 1024 * 10,  # 10MB
        'backupCount': 5,
        'formatter': 'verbose',
    }


def get_logging_config(base_dir, region='default', level='INFO'):
    """
    Get logging configuration for the deployment region.

    File handlers are only added when the logs directory is writable;
    non-default regions log JSON to the console.
    """
    logs_dir = _writable_logs_dir(base_dir)

    handlers = {
        'console': {
            'level': level,
            'class': 'logging.StreamHandler',
            'formatter': 'json' if region != 'default' else 'verbose',
        },
    }
    app_handlers = ['console']
    error_handlers = ['console']
    if logs_dir is not None:
        handlers['app_file'] = _rotating(logs_dir / f'{region}_app.log', 'INFO')
        handlers['error_file'] = _rotating(logs_dir / f'{region}_errors.log', 'ERROR')
        app_handlers = ['console', 'app_file', 'error_file']
        error_handlers = ['console', 'error_file']

    loggers = {
        'django': {
            'handlers': error_handlers,
            'level': 'INFO',
            'propagate': False,
        },
        'django.request': {
            'handlers': error_handlers,
            'level': 'ERROR',
            'propagate': False,
        },
    }
    for name in APP_LOGGERS:
        loggers[name] = {
            'handlers': app_handlers,
            'level': level,
            'propagate': False,
        }

    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'verbose': {
                'format': '{levelname} {asctime} {module} {process:d} {thread:d} {message}',
                'style': '{',
            },
            'json': {
                '()': 'pythonjsonlogger.jsonlogger.JsonFormatter',
                'format': '%(asctime)s %(name)s %(levelname)s %(message)s',
            },
        },
        'handlers': handlers,
        'loggers': loggers,
    }
