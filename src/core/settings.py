import os
from typing import Any
from pathlib import Path

PROJECT_NAME = "fileschema"

# Paths
PROJECT_ROOT_DIR = Path(__file__).parent.parent.parent.resolve()

CONFIG_BASE_DIRECTORY_PATH = Path(os.getenv("FILESCHEMA_CONFIG_DIR", str(PROJECT_ROOT_DIR / "configs")))
LOG_FOLDER = Path(os.getenv("FILESCHEMA_LOG_DIR", str(PROJECT_ROOT_DIR / "logs")))

# Read path
DEFAULT_POLL_INTERVAL_MILLIS = int(os.getenv("FILESCHEMA_POLL_INTERVAL_MILLIS", "500"))
DEFAULT_MAX_PARALLEL_READS = int(os.getenv("FILESCHEMA_MAX_PARALLEL_READS", "4"))

# Write path
DEFAULT_MAX_PARALLEL_WRITES = int(os.getenv("FILESCHEMA_MAX_PARALLEL_WRITES", "4"))
DEFAULT_SHARD_NAME_TEMPLATE = "-SSSSS-of-NNNNN"
DEFAULT_FILENAME_PREFIX = "output"
TEMP_DIRECTORY_PREFIX = f".temp-{PROJECT_NAME}-"

# Row channels
INPUT_TAG = "input"
OUTPUT_TAG = "output"
FILEPATTERN_ROW_FIELD_NAME = "filepattern"
FILENAME_ROW_FIELD_NAME = "fileName"


# Logging Configuration

LOGGING_CONFIG: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": "INFO",
        },
        "rotating_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": "DEBUG",
            "filename": str(LOG_FOLDER / "fileschema.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
            "encoding": "utf8",
        },
    },
    "loggers": {
        "": {  # root logger
            "handlers": ["console", "rotating_file"],
            "level": "DEBUG",
            "propagate": True
        },
    }

}
