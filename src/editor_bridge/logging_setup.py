import logging
import logging.config
import os
from pathlib import Path

import yaml

CONFIG_PATH = Path(__file__).parent / "logging_config.yaml"
LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def configure_logging(config_path: Path | None = None) -> dict:
    """Apply the packaged dictConfig; ``LOG_LEVEL`` overrides the root level."""
    with open(config_path or CONFIG_PATH, "r", encoding="utf-8") as f:
        logging_config = yaml.safe_load(f)

    env_log_level = os.getenv("LOG_LEVEL")
    if env_log_level and env_log_level.upper() in LEVELS:
        logging_config["root"]["level"] = env_log_level.upper()

    logging.config.dictConfig(logging_config)
    logging.getLogger(__name__).debug("Logging configured (root level %s)", logging_config["root"]["level"])
    return logging_config
