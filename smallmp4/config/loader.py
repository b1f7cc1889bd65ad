import logging
import yaml
from pathlib import Path
from typing import Optional
from smallmp4.config.models import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("conf/smallmp4.yaml")


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Loads YAML config; a missing file yields the defaults."""
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        if config_path is not None and config_path != DEFAULT_CONFIG_PATH:
            logger.warning(f"Config file not found at {path}, using defaults.")
        return AppConfig()

    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    return AppConfig(**data)
