"""
Configuration management for bb.

This module resolves the configuration directory, provides atomic YAML file
helpers shared with the host registry, and manages the user preferences kept
in ``config.yml``.
"""

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

import yaml

from bb.core.exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

PRODUCT_NAME = "bb"
DEFAULT_HOST = "bitbucket.org"
CONFIG_FILE_NAME = "config.yml"
HOSTS_FILE_NAME = "hosts.yml"

GIT_PROTOCOLS = ("ssh", "https")


def config_dir() -> Path:
    """
    Return the directory where bb keeps its configuration files.

    Resolution order is ``BB_CONFIG_DIR``, then ``$XDG_CONFIG_HOME/bb``,
    then ``$HOME/.config/bb``. The directory is not created.
    """
    override = os.getenv("BB_CONFIG_DIR")
    if override:
        return Path(override)

    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / PRODUCT_NAME

    home = os.getenv("HOME")
    try:
        base = Path(home) if home else Path.home()
    except RuntimeError as e:
        raise ConfigurationError(
            "Could not determine home directory",
            suggestion="Set BB_CONFIG_DIR to choose a configuration directory",
        ) from e
    return base / ".config" / PRODUCT_NAME


def ensure_config_dir() -> Path:
    """Create the configuration directory (mode 0755) if needed and return it."""
    directory = config_dir()
    try:
        directory.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(
            f"Could not create config directory: {e}",
            suggestion=f"Check that {directory.parent} is writable",
        ) from e
    return directory


def read_yaml_file(path: Path) -> dict[str, Any] | None:
    """Load a YAML mapping from ``path``; ``None`` when the file is absent."""
    if not path.exists():
        return None

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (yaml.YAMLError, OSError) as e:
        raise ConfigurationError(
            f"Failed to load {path.name}: {e}",
            suggestion=f"Check that {path} is valid YAML",
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Failed to load {path.name}: expected a mapping at the top level",
            suggestion=f"Check that {path} is valid YAML",
        )
    return data


def write_yaml_file(path: Path, data: dict[str, Any]) -> None:
    """
    Atomically write ``data`` as YAML to ``path`` with mode 0600.

    The content goes to a temporary file in the same directory which is then
    renamed over the target, so readers never observe a partial file.
    """
    tmp_name = None
    try:
        path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            delete=False,
        ) as tmp:
            tmp_name = tmp.name
            yaml.safe_dump(data, tmp, default_flow_style=False, sort_keys=False)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except OSError as e:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise ConfigurationError(
            f"Failed to save {path.name}: {e}",
            suggestion=f"Check that {path.parent} is writable",
        ) from e

    logger.debug("Wrote %s", path)


def _validate_choice(key: str, value: Any, choices: tuple[str, ...]) -> str:
    if value not in choices:
        raise ValidationError(
            f"Invalid {key}: {value} (must be one of: {', '.join(choices)})",
        )
    return value


def _validate_int(key: str, value: Any, minimum: int, maximum: int | None = None) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {key}: {value} (must be a number)") from e

    if number < minimum or (maximum is not None and number > maximum):
        bound = f"between {minimum} and {maximum}" if maximum is not None else f"at least {minimum}"
        raise ValidationError(f"{key} must be {bound}")
    return number


# Validators for the keys accepted by ``Config.set``.
SETTING_VALIDATORS = {
    "git_protocol": lambda v: _validate_choice("git_protocol", v, GIT_PROTOCOLS),
    "prompt": lambda v: _validate_choice("prompt", v, ("enabled", "disabled")),
    "http_timeout": lambda v: _validate_int("http_timeout", v, 1),
    "oauth_callback_port": lambda v: _validate_int("oauth_callback_port", v, 0, 65535),
    "editor": str,
    "pager": str,
    "browser": str,
    "default_workspace": str,
}


class SingletonMeta(type):
    """
    Thread-safe singleton metaclass.

    This metaclass ensures that only one instance of a class can exist,
    even in multi-threaded environments.
    """

    _instances: dict[type, Any] = {}
    _lock: threading.Lock = threading.Lock()

    def __call__(cls, *args, **kwargs) -> Any:
        """Create or return the singleton instance."""
        with cls._lock:
            if cls not in cls._instances:
                instance = super().__call__(*args, **kwargs)
                cls._instances[cls] = instance
        return cls._instances[cls]


class Config(metaclass=SingletonMeta):
    """User preferences stored in ``<config dir>/config.yml``."""

    def __init__(self, directory: Path | None = None) -> None:
        """
        Initialize the configuration manager.

        Args:
            directory: Custom configuration directory path.
                       Defaults to the resolved config directory.

        Note: Due to singleton pattern, this will only be called once.
              Subsequent calls will return the existing instance.
        """
        if hasattr(self, "_initialized"):
            return

        self.config_dir = directory or config_dir()
        self.config_file = self.config_dir / CONFIG_FILE_NAME
        self._config: dict[str, Any] = self._get_default_config()

        stored = read_yaml_file(self.config_file)
        if stored:
            self._config.update(stored)

        self._initialized = True

    def _get_default_config(self) -> dict[str, Any]:
        """Get default configuration values."""
        return {
            "git_protocol": "ssh",
            "prompt": "enabled",
            "http_timeout": 30,
            "editor": "",
            "pager": "",
            "browser": "",
            "default_workspace": "",
            "oauth_callback_port": 0,
        }

    def _save_config(self) -> None:
        write_yaml_file(self.config_file, self._config)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Configuration key; dots descend into nested mappings
            default: Default value if key is not found

        Returns:
            Configuration value or default
        """
        value: Any = self._config
        try:
            for k in key.split("."):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> Any:
        """
        Validate and persist a configuration value.

        Returns:
            The normalised value that was stored

        Raises:
            ValidationError: If the key is unknown or the value is invalid
        """
        validator = SETTING_VALIDATORS.get(key)
        if validator is None:
            raise ValidationError(
                f"Unknown configuration key: {key}",
                suggestion=f"Valid keys: {', '.join(SETTING_VALIDATORS)}",
            )

        normalised = validator(value)
        self._config[key] = normalised
        self._save_config()
        return normalised

    def delete(self, key: str) -> bool:
        """
        Reset a configuration value to its default.

        Returns:
            True if the key existed, False otherwise
        """
        if key not in self._config:
            return False

        defaults = self._get_default_config()
        if key in defaults:
            self._config[key] = defaults[key]
        else:
            del self._config[key]
        self._save_config()
        return True

    def get_all(self) -> dict[str, Any]:
        """Get all configuration values."""
        return self._config.copy()

    @classmethod
    def reset_singleton(cls) -> None:
        """
        Reset the singleton instance.

        This is primarily useful for testing purposes.
        """
        with SingletonMeta._lock:
            if cls in SingletonMeta._instances:
                del SingletonMeta._instances[cls]


def get_config() -> Config:
    """Get the singleton configuration instance."""
    return Config()
