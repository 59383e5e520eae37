"""
Core configuration management for the sieve pipeline.

This module handles all configuration loading, validation, and management
including environment variables, env files and YAML settings files.
"""

import logging
import os
import re
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from proxysieve.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TEST_URL = "https://www.google.com/generate_204"


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class SieveConfig:
    """Central configuration manager for the sieve pipeline."""

    ENV_MAPPINGS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
        "SIEVE_LINK_LIST": ("link_list_file", str),
        "SIEVE_INPUT_FILE": ("input_file", str),
        "SIEVE_OUTPUT_FILE": ("output_file", str),
        "SIEVE_DOWNLOAD_TIMEOUT": ("download_timeout", int),
        "SIEVE_TEST_URL": ("test_url", str),
        "SIEVE_TEST_TIMEOUT": ("timeout_seconds", int),
        "SIEVE_ROUNDS": ("rounds", int),
        "SIEVE_WORKERS": ("max_workers", int),
        "SIEVE_SINGBOX_PATH": ("singbox_path", str),
        "SING_BOX_PATH": ("singbox_path", str),
        "SIEVE_INBOUND_BASE": ("inbound_base_port", int),
        "SIEVE_STARTUP_TIMEOUT": ("startup_timeout", int),
        "SIEVE_CHECK_TIMEOUT": ("check_timeout", int),
        "SIEVE_DEDUPE_IGNORE_REMARK": ("dedupe_ignore_remark", _as_bool),
        "SIEVE_LOG_FILE": ("log_file", str),
        "SIEVE_USE_RICH": ("use_rich", _as_bool),
    }

    def __init__(self, env_file: Optional[str] = None, settings_file: Optional[str] = None):
        self.env_file = env_file or os.getenv("SIEVE_ENV_FILE", "sieve.env")
        self._config: Dict[str, Any] = {}
        self._load_default_config()
        self._load_env_file()
        self._load_from_environment()
        if settings_file:
            self.load_yaml(settings_file)

    def _load_default_config(self):
        """Load default configuration values."""
        self._config = {
            # Input / output
            "link_list_file": "links.txt",
            "input_file": "configs.txt",
            "output_file": "results.txt",
            "download_timeout": 10,

            # Probing
            "test_url": DEFAULT_TEST_URL,
            "timeout_seconds": 30,
            "rounds": 3,
            "max_workers": 0,  # 0 = pick from hardware

            # Engine
            "singbox_path": "",
            "inbound_base_port": 20808,
            "startup_timeout": 15,
            "check_timeout": 10,

            # Misc
            "dedupe_ignore_remark": False,
            "log_file": None,
            "use_rich": True,
        }

    def _load_env_file(self):
        """Load KEY=VALUE pairs (or PowerShell $env: lines) into os.environ."""
        if not self.env_file or not os.path.exists(self.env_file):
            return
        try:
            with open(self.env_file, "r", encoding="utf-8") as f:
                for raw_line in f:
                    line = raw_line.strip()
                    if not line or line.startswith("#"):
                        continue

                    key = None
                    value = None

                    # Handle PowerShell environment files
                    if line.lower().startswith("$env:"):
                        m = re.match(r"^\$env:([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.+)$", line)
                        if m:
                            key = m.group(1).strip()
                            value = m.group(2).strip()
                    elif "=" in line:
                        left, right = line.split("=", 1)
                        key = left.strip()
                        value = right.strip()

                    if key and value is not None:
                        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
                            value = value[1:-1]
                        os.environ.setdefault(key, value)
        except OSError as e:
            logger.warning(f"Failed to load env file: {e}")

    def _load_from_environment(self):
        """Override configuration with environment variables."""
        for env_key, (config_key, converter) in self.ENV_MAPPINGS.items():
            if env_key in os.environ:
                try:
                    self._config[config_key] = converter(os.environ[env_key])
                except (ValueError, TypeError):
                    logger.warning(f"Invalid value for {env_key}: {os.environ[env_key]}")

    def load_yaml(self, path: str):
        """Merge a YAML mapping of config keys over the current values."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"cannot read settings file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"settings file {path} must contain a mapping")

        unknown = sorted(k for k in data if k not in self._config)
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(unknown)}")
        self.update({k: v for k, v in data.items() if k in self._config})

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any):
        """Set configuration value."""
        self._config[key] = value

    def update(self, config_dict: Dict[str, Any]):
        """Update multiple configuration values."""
        self._config.update(config_dict)

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return self._config.copy()

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        numeric_fields = [
            ("timeout_seconds", 1, 600),
            ("rounds", 1, 20),
            ("max_workers", 0, 4096),
            ("download_timeout", 1, 600),
            ("inbound_base_port", 1024, 65000),
            ("startup_timeout", 1, 300),
            ("check_timeout", 1, 300),
        ]

        for field, min_val, max_val in numeric_fields:
            value = self.get(field)
            if isinstance(value, bool) or not isinstance(value, int) or value < min_val or value > max_val:
                errors.append(f"{field} must be between {min_val} and {max_val}")

        test_url = self.get("test_url") or ""
        if not test_url.startswith(("http://", "https://")):
            errors.append("test_url must be an http(s) URL")

        return errors

    def is_windows(self) -> bool:
        """Check if running on Windows."""
        return sys.platform == "win32"

    def get_executable_paths(self) -> Dict[str, List[str]]:
        """Get fallback paths for executables."""
        sieve_bin = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "bin")
        exe = "sing-box.exe" if self.is_windows() else "sing-box"
        return {
            "sing-box": [
                os.path.join(sieve_bin, exe),
                os.path.join("/usr/local/bin", exe),
            ],
        }
