"""
Configuration management with TOML + environment variable support.

Configuration hierarchy (later overrides earlier):
1. Default values in code
2. TOML file
3. Environment variables (SQLMIGRATE_* prefix)
4. Command-line flags (applied with ``set``)
"""
import os
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore


CONFIG_SEARCH_PATHS = (
    Path("sqlmigrate.toml"),
    Path("config/default.toml"),
)


class ConfigManager:
    """Centralized configuration with TOML + env var support.

    Usage:
        config = ConfigManager(Path("sqlmigrate.toml"))
        db_type = config.get("database.type", "mysql")
        port = config.get_int("database.port", 3306)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "SQLMIGRATE_",
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: Path to TOML config file (optional)
            env_prefix: Prefix for environment variable overrides
        """
        self._data: dict[str, Any] = {}
        self._overrides: dict[str, Any] = {}
        self._env_prefix = env_prefix
        self._config_path = config_path

        if config_path and config_path.exists():
            self._load_toml(config_path)

    def _load_toml(self, path: Path) -> None:
        """Load configuration from TOML file."""
        with open(path, "rb") as f:
            self._data = tomllib.load(f)

    def _get_nested(self, data: dict[str, Any], key: str) -> tuple[bool, Any]:
        """Get a nested value using dot notation.

        Returns (found, value) tuple.
        """
        parts = key.split(".")
        current = data

        for part in parts:
            if not isinstance(current, dict) or part not in current:
                return False, None
            current = current[part]

        return True, current

    def _get_env_value(self, key: str) -> tuple[bool, Optional[str]]:
        """Get the raw string from an environment variable.

        Converts key like "database.port" to "SQLMIGRATE_DATABASE_PORT".
        """
        env_key = self._env_prefix + key.upper().replace(".", "_")
        if env_key in os.environ:
            return True, os.environ[env_key]
        return False, None

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable string to appropriate type."""
        # Boolean
        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        # Number
        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value

    def set(self, key: str, value: Any) -> None:
        """Override a value (used for command-line flags).

        Overrides take precedence over environment and TOML. Setting None
        is ignored so unset flags fall through to lower layers.
        """
        if value is None:
            return
        self._overrides[key] = value

    def _lookup(self, key: str) -> tuple[bool, Any, bool]:
        """Find a value in override, env, TOML order.

        Returns (found, value, from_env) tuple.
        """
        if key in self._overrides:
            return True, self._overrides[key], False

        found, value = self._get_env_value(key)
        if found:
            return True, value, True

        found, value = self._get_nested(self._data, key)
        return found, value, False

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with dot notation.

        Environment values are parsed to bool, int or float where they look
        like one.

        Args:
            key: Dot-notation key like "database.name"
            default: Default value if key not found

        Returns:
            Configuration value
        """
        found, value, from_env = self._lookup(key)
        if not found:
            return default
        if from_env:
            return self._parse_env_value(value)
        return value

    def get_str(self, key: str, default: str = "") -> str:
        """Get configuration value as string.

        Environment values are returned exactly as set.
        """
        found, value, _ = self._lookup(key)
        if not found or value is None:
            return default
        return str(value)

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get configuration value as boolean.

        Args:
            key: Dot-notation key
            default: Default boolean value

        Returns:
            Boolean value
        """
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        """Get configuration value as integer.

        Args:
            key: Dot-notation key
            default: Default integer value

        Returns:
            Integer value
        """
        value = self.get(key)
        if value is None:
            return default
        return int(value)

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Get configuration value as float."""
        value = self.get(key)
        if value is None:
            return default
        return float(value)

    @property
    def config_path(self) -> Optional[Path]:
        """Path of the loaded TOML file, if any."""
        return self._config_path


def find_config_file(specified: Optional[Path]) -> Optional[Path]:
    """Find configuration file.

    An explicitly specified path wins; otherwise the first existing entry of
    CONFIG_SEARCH_PATHS is used.
    """
    if specified and specified.exists():
        return specified

    for path in CONFIG_SEARCH_PATHS:
        if path.exists():
            return path

    return None
