"""Logging setup for the collector process."""
import logging.config


def configure_logging(settings) -> None:
    """Console plus rotating collector.log / error.log under the logs directory."""
    logs_dir = settings.logs_dir
    logs_dir.mkdir(parents=True, exist_ok=True)
    level = settings.log_level

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "verbose": {
                "format": "{asctime} [{levelname}] {name}: {message}",
                "style": "{",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "verbose",
            },
            "collector_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "formatter": "verbose",
                "filename": str(logs_dir / "collector.log"),
                "maxBytes": 5 * 1024 * 1024,
                "backupCount": 5,
                "encoding": "utf-8",
            },
            "error_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "formatter": "verbose",
                "filename": str(logs_dir / "error.log"),
                "maxBytes": 5 * 1024 * 1024,
                "backupCount": 3,
                "level": "ERROR",
                "encoding": "utf-8",
            },
        },
        "root": {
            "handlers": ["console", "collector_file", "error_file"],
            "level": level,
        },
        "loggers": {
            # Request lines from httpx are noise at INFO
            "httpx": {"level": "WARNING"},
        },
    })
