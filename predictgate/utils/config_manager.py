import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class ConfigManager:
    """Read-only view over an optional ``config.json`` with dotted-key lookup"""

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        # Relative to the current working directory unless given explicitly
        self.config_file = Path(config_file) if config_file else Path("config.json")
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration file"""
        if not self.config_file.exists():
            return {}
        try:
            with open(self.config_file, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Error loading config %s: %s", self.config_file, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: top-level value must be an object", self.config_file)
            return {}
        return data

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration item"""
        keys = key.split(".")
        value = self.config
        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def section(self, name: str) -> Dict[str, Any]:
        """Return a top-level section as a dict (empty when missing)"""
        value = self.get(name, {})
        return value if isinstance(value, dict) else {}
