"""
Configuration management for candlefill.

Updates: v0.2.0 - 2026-09-02 - Read .env, INI and JSON config files plus a Coinbase credentials file.
"""

from __future__ import annotations

import configparser
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import dotenv_values, load_dotenv

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV = "CRYPTO_CONFIG_FILE"
USER_CONFIG_DIR = Path("~/.config/candlefill")
_USER_CONFIG_CANDIDATES = ("config.env", "config.ini", "config.json")


class ConfigurationError(Exception):
    """Raised when configuration or user supplied parameters are unusable."""


class Config:
    """Load configuration with Env → .env → config file → defaults precedence."""

    _CONFIG_KEY_MAPPING: Dict[str, tuple[str, ...]] = {
        "DATABASE_PATH": ("DATABASE_PATH", "DATABASE_URL", "database.path", "database.url"),
        "COINBASE_API_URL": ("COINBASE_API_URL", "coinbase.api_url"),
        "COINBASE_API_KEY": ("COINBASE_API_KEY", "coinbase.api_key", "api_key"),
        "COINBASE_API_SECRET": ("COINBASE_API_SECRET", "coinbase.api_secret", "api_secret"),
        "COINBASE_PASSPHRASE": ("COINBASE_PASSPHRASE", "coinbase.passphrase", "passphrase"),
        "COINBASE_API_KEY_NAME": (
            "COINBASE_API_KEY_NAME",
            "COINBASE_CLOUD_API_KEY_NAME",
            "coinbase.api_key_name",
        ),
        "COINBASE_API_PRIVATE_KEY": (
            "COINBASE_API_PRIVATE_KEY",
            "COINBASE_CLOUD_API_SECRET",
            "coinbase.api_private_key",
        ),
        "COINBASE_RPM": ("COINBASE_RPM", "coinbase.rpm", "rpm"),
        "COINBASE_MAX_RETRIES": ("COINBASE_MAX_RETRIES", "coinbase.max_retries", "max_retries"),
        "COINBASE_BACKOFF_MS": ("COINBASE_BACKOFF_MS", "coinbase.backoff_ms", "backoff_ms"),
        "COINBASE_TIMEOUT": ("COINBASE_TIMEOUT", "coinbase.timeout", "timeout"),
        "GAP_WORKERS": ("GAP_WORKERS", "backfill.gap_workers", "gap_workers"),
        "MAX_BUCKETS": ("MAX_BUCKETS", "backfill.max_buckets", "max_buckets"),
        "LOG_LEVEL": ("LOG_LEVEL", "app.log_level", "log_level"),
        "DAEMON_PORT": ("DAEMON_PORT", "daemon.port", "daemon_port"),
    }

    _DEFAULTS: Dict[str, Any] = {
        "DATABASE_PATH": "data/candles.db",
        "COINBASE_API_URL": "https://api.coinbase.com",
        "COINBASE_API_KEY": None,
        "COINBASE_API_SECRET": None,
        "COINBASE_PASSPHRASE": None,
        "COINBASE_API_KEY_NAME": None,
        "COINBASE_API_PRIVATE_KEY": None,
        "COINBASE_RPM": 0,
        "COINBASE_MAX_RETRIES": 3,
        "COINBASE_BACKOFF_MS": 500,
        "COINBASE_TIMEOUT": 30,
        "GAP_WORKERS": 10,
        "MAX_BUCKETS": 350,
        "LOG_LEVEL": "INFO",
        "DAEMON_PORT": 40000,
    }

    def __init__(self, config_path: Optional[str] = None, creds_path: Optional[str] = None) -> None:
        load_dotenv(Path.cwd() / ".env")
        self.config_file: Optional[Path] = self._resolve_config_file(config_path)
        self._config_data: Dict[str, Any] = self._load_config_file()

        database_value = self._get_setting("DATABASE_PATH")
        api_url_value = self._get_setting("COINBASE_API_URL")
        api_key_value = self._get_setting("COINBASE_API_KEY")
        api_secret_value = self._get_setting("COINBASE_API_SECRET")
        passphrase_value = self._get_setting("COINBASE_PASSPHRASE")
        key_name_value = self._get_setting("COINBASE_API_KEY_NAME")
        private_key_value = self._get_setting("COINBASE_API_PRIVATE_KEY")
        rpm_value = self._get_setting("COINBASE_RPM")
        max_retries_value = self._get_setting("COINBASE_MAX_RETRIES")
        backoff_value = self._get_setting("COINBASE_BACKOFF_MS")
        timeout_value = self._get_setting("COINBASE_TIMEOUT")
        gap_workers_value = self._get_setting("GAP_WORKERS")
        max_buckets_value = self._get_setting("MAX_BUCKETS")
        log_level_value = self._get_setting("LOG_LEVEL")
        daemon_port_value = self._get_setting("DAEMON_PORT")

        self.database_path: Path = self._parse_database_path(database_value)
        self.api_url: str = str(api_url_value or self._DEFAULTS["COINBASE_API_URL"]).rstrip("/")
        self.api_key: Optional[str] = self._clean(api_key_value)
        self.api_secret: Optional[str] = self._clean(api_secret_value)
        self.passphrase: Optional[str] = self._clean(passphrase_value)
        self.api_key_name: Optional[str] = self._clean(key_name_value)
        self.api_private_key: Optional[str] = self._clean(private_key_value)
        self.rpm: int = self._to_int(rpm_value, self._DEFAULTS["COINBASE_RPM"])
        self.max_retries: int = self._to_int(max_retries_value, self._DEFAULTS["COINBASE_MAX_RETRIES"])
        self.backoff_ms: int = self._to_int(backoff_value, self._DEFAULTS["COINBASE_BACKOFF_MS"])
        self.timeout: int = self._to_int(timeout_value, self._DEFAULTS["COINBASE_TIMEOUT"])
        self.gap_workers: int = self._to_int(gap_workers_value, self._DEFAULTS["GAP_WORKERS"])
        self.max_buckets: int = self._to_int(max_buckets_value, self._DEFAULTS["MAX_BUCKETS"])
        self.log_level: str = str(log_level_value or self._DEFAULTS["LOG_LEVEL"]).upper()
        self.daemon_port: int = self._to_int(daemon_port_value, self._DEFAULTS["DAEMON_PORT"])

        # Zero means "unset" for these two, matching the defaults table.
        if self.max_retries <= 0:
            self.max_retries = self._DEFAULTS["COINBASE_MAX_RETRIES"]
        if self.backoff_ms <= 0:
            self.backoff_ms = self._DEFAULTS["COINBASE_BACKOFF_MS"]

        self.creds_file: Optional[Path] = Path(creds_path).expanduser() if creds_path else None
        if self.creds_file is not None:
            self._apply_credentials_file(self.creds_file)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_config_file(config_path: Optional[str]) -> Optional[Path]:
        """Pick the config file: explicit path, CRYPTO_CONFIG_FILE, then the user config dir."""
        if config_path:
            path = Path(config_path).expanduser()
            if not path.exists():
                raise ConfigurationError(f"Config file not found: {path}")
            return path

        env_path = os.getenv(CONFIG_FILE_ENV)
        if env_path:
            path = Path(env_path).expanduser()
            if path.exists():
                return path
            logger.warning("%s points to a missing file: %s", CONFIG_FILE_ENV, path)

        base_dir = USER_CONFIG_DIR.expanduser()
        for name in _USER_CONFIG_CANDIDATES:
            candidate = base_dir / name
            if candidate.exists():
                return candidate
        return None

    def _load_config_file(self) -> Dict[str, Any]:
        """Load configuration values from the selected file if available."""
        if self.config_file is None:
            return {}

        suffix = self.config_file.suffix.lower()
        try:
            if suffix == ".json":
                return self._read_json(self.config_file)
            if suffix == ".ini" or (suffix != ".env" and not self._looks_like_env(self.config_file)):
                return self._read_ini(self.config_file)
            return {key: value for key, value in dotenv_values(self.config_file).items() if value is not None}
        except (OSError, configparser.Error, json.JSONDecodeError) as exc:
            logger.warning("Failed to read %s: %s", self.config_file, exc)
        return {}

    @staticmethod
    def _read_json(path: Path) -> Dict[str, Any]:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if isinstance(data, dict):
            return data
        logger.warning("%s must contain a JSON object; ignoring content.", path.name)
        return {}

    @staticmethod
    def _read_ini(path: Path) -> Dict[str, Any]:
        """Flatten INI sections to ``section.key``; ``[default]`` keys also appear bare."""
        parser = configparser.ConfigParser(interpolation=None)
        parser.optionxform = str  # type: ignore[assignment]
        with path.open("r", encoding="utf-8") as handle:
            parser.read_file(handle)

        flattened: Dict[str, Any] = {}
        for section in parser.sections():
            for key, value in parser.items(section):
                flattened[f"{section.lower()}.{key.lower()}"] = value
                if section.lower() == "default":
                    flattened.setdefault(key, value)
        return flattened

    @staticmethod
    def _looks_like_env(path: Path) -> bool:
        """Return True when KEY=VALUE lines outnumber [section] headers."""
        env_lines = 0
        ini_sections = 0
        for raw in path.read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("[") and line.endswith("]") and len(line) > 2:
                ini_sections += 1
            elif "=" in line and line.split("=", 1)[0].strip():
                env_lines += 1
        return env_lines > ini_sections

    def _apply_credentials_file(self, path: Path) -> None:
        """Override bearer credentials from a ``{"name", "privateKey"}`` JSON file."""
        try:
            with path.open("r", encoding="utf-8") as handle:
                creds = json.load(handle)
        except OSError as exc:
            raise ConfigurationError(f"Failed to read Coinbase credentials file {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid Coinbase credentials JSON in {path}: {exc}") from exc

        if not isinstance(creds, dict):
            raise ConfigurationError(f"Coinbase credentials file {path} must contain a JSON object")

        self.api_key_name = self._clean(creds.get("name"))
        self.api_private_key = self._clean(creds.get("privateKey"))

    def _get_setting(self, env_key: str) -> Any:
        """Resolve a configuration value using the configured precedence."""
        keys_to_check = self._CONFIG_KEY_MAPPING.get(env_key, (env_key,))
        for key in keys_to_check:
            if key.isupper():
                env_value = os.getenv(key)
                if env_value not in (None, ""):
                    return env_value

        for key in keys_to_check:
            config_value = self._config_data.get(key)
            if config_value not in (None, ""):
                return config_value

        return self._DEFAULTS.get(env_key)

    # ------------------------------------------------------------------
    # Conversion helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _clean(value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @staticmethod
    def _parse_database_path(value: Any) -> Path:
        """Accept a plain path or a ``sqlite:///`` URL."""
        text = str(value or Config._DEFAULTS["DATABASE_PATH"]).strip()
        for prefix in ("sqlite:///", "sqlite://"):
            if text.startswith(prefix):
                text = text[len(prefix):]
                break
        return Path(text).expanduser()

    @staticmethod
    def _to_int(value: Any, default: int) -> int:
        """Convert a configuration value to integer with fallback."""
        try:
            if value is None or value == "":
                return default
            return int(value)
        except (TypeError, ValueError):
            return default

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def uses_jwt(self) -> bool:
        """Return True when bearer (JWT) credentials are configured."""
        return bool(self.api_key_name and self.api_private_key)

    def uses_hmac(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def has_credentials(self) -> bool:
        """Check if any API credentials are configured."""
        return self.uses_jwt() or self.uses_hmac()

    def get_retry_attempts(self) -> int:
        """Return configured retry attempts for Coinbase requests."""
        return max(1, self.max_retries)

    def get_timeout(self) -> int:
        """Get request timeout in seconds."""
        return self.timeout

    def get_api_url(self) -> str:
        return self.api_url

    def get_gap_workers(self) -> int:
        return max(1, self.gap_workers)

    def get_max_buckets(self) -> int:
        """Return the per-request bucket ceiling, clamped to the upstream limit of 350."""
        return min(350, max(1, self.max_buckets))
