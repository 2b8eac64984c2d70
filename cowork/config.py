"""
Global configuration for Cowork.

Directory layout plus the fail-fast loaders for config/cowork.yaml
(orchestrator), config/api.yaml (HTTP server) and the optional
config/secrets.yaml. Required fields have no defaults in code; a missing
file or field stops startup with a message naming what is missing.

Usage:
    from cowork.config import get_config_loader, load_api_config

    loader = get_config_loader()
    retry = loader.get_retry_settings()
    api = load_api_config()
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


class ConfigNotFoundError(Exception):
    """Raised when a required configuration file is not found."""
    pass


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


# COWORK_ROOT lets deployments mount config/, data/ and logs/ elsewhere
_cowork_root_override = os.environ.get("COWORK_ROOT")
if _cowork_root_override:
    COWORK_DIR: Path = Path(_cowork_root_override).resolve()
else:
    COWORK_DIR = Path(__file__).parent.parent.resolve()

LOGS_DIR: Path = COWORK_DIR / "logs"
CONFIG_DIR: Path = COWORK_DIR / "config"
DATA_DIR: Path = COWORK_DIR / "data"

COWORK_CONFIG_FILE: Path = CONFIG_DIR / "cowork.yaml"
API_CONFIG_FILE: Path = CONFIG_DIR / "api.yaml"
SECRETS_FILE: Path = CONFIG_DIR / "secrets.yaml"

REQUIRED_API_FIELDS = ["host", "port", "cors_origins"]


def read_yaml_section(path: Path, section: str) -> dict[str, Any]:
    """
    Read one top-level section of a YAML configuration file.

    Raises:
        ConfigNotFoundError: If the file is missing.
        ConfigValidationError: If the file does not parse or the section is empty.
    """
    if not path.exists():
        raise ConfigNotFoundError(
            f"Configuration file not found: {path}\n"
            f"Create it (see config/ in the repository) or set COWORK_ROOT."
        )
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Failed to parse {path}: {e}") from e

    if not isinstance(data, dict) or not data.get(section):
        raise ConfigValidationError(f"No '{section}' section found in {path}")
    return data[section]


def _missing(section: Any, fields: list[str], prefix: str = "") -> list[str]:
    present = section if isinstance(section, dict) else {}
    return [f"{prefix}{name}" for name in fields if name not in present]


def load_api_config(path: Optional[Path] = None) -> dict[str, Any]:
    """
    Load the ``api`` section of api.yaml.

    Raises:
        ConfigNotFoundError: If api.yaml doesn't exist.
        ConfigValidationError: If host, port or cors_origins is missing.
    """
    path = path or API_CONFIG_FILE
    api_config = read_yaml_section(path, "api")
    missing = _missing(api_config, REQUIRED_API_FIELDS)
    if missing:
        raise ConfigValidationError(
            f"Missing required fields in {path}: {', '.join(missing)}"
        )
    return api_config


@dataclass(frozen=True)
class RetrySettings:
    """Retry & resume parameters for one adapter invocation."""
    max_retries: int = 10
    base_delay_seconds: float = 1.0
    transient_signatures: tuple[str, ...] = field(default_factory=tuple)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1)."""
        return self.base_delay_seconds * (2 ** (attempt - 1))

    @classmethod
    def from_config(cls, section: dict[str, Any]) -> "RetrySettings":
        return cls(
            max_retries=int(section["max_retries"]),
            base_delay_seconds=float(section["base_delay_seconds"]),
            transient_signatures=tuple(
                str(s).lower() for s in section.get("transient_signatures") or []
            ),
        )


class OrchestratorConfigLoader:
    """
    Loads the ``cowork`` section of cowork.yaml and the optional secrets file.

    Loading is lazy: the first ``get_config``/``get``/``get_secret`` call
    reads and validates both files. Overrides (tests, CLI flags) replace
    whole top-level sections.
    """

    REQUIRED_SECTIONS = ["retry", "defaults", "backends"]
    REQUIRED_RETRY_FIELDS = ["max_retries", "base_delay_seconds"]
    REQUIRED_DEFAULT_FIELDS = ["provider", "allowed_tool_names"]

    def __init__(
        self,
        config_path: Optional[Path] = None,
        secrets_path: Optional[Path] = None
    ) -> None:
        self._config_path = config_path or COWORK_CONFIG_FILE
        self._secrets_path = secrets_path or SECRETS_FILE
        self._config: Optional[dict[str, Any]] = None
        self._secrets: dict[str, Any] = {}
        self._overrides: dict[str, Any] = {}

    def load(self) -> None:
        """
        Raises:
            ConfigNotFoundError: If cowork.yaml is missing.
            ConfigValidationError: If it does not parse or fields are missing.
        """
        config = read_yaml_section(self._config_path, "cowork")
        self._validate(config)
        self._secrets = self._read_secrets()
        self._config = config
        logger.info(f"Configuration loaded from {self._config_path}")

    def _read_secrets(self) -> dict[str, Any]:
        if not self._secrets_path.exists():
            logger.debug(f"No secrets file at {self._secrets_path}")
            return {}
        try:
            with self._secrets_path.open("r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(
                f"Failed to parse secrets file {self._secrets_path}: {e}"
            ) from e

    def _validate(self, config: dict[str, Any]) -> None:
        missing = _missing(config, self.REQUIRED_SECTIONS)
        missing += _missing(config.get("retry"), self.REQUIRED_RETRY_FIELDS, "retry.")
        missing += _missing(config.get("defaults"), self.REQUIRED_DEFAULT_FIELDS, "defaults.")
        if missing:
            raise ConfigValidationError(
                f"Missing required fields in {self._config_path}:\n"
                f"  {', '.join(missing)}\n"
                f"All fields must be explicitly defined - no default values."
            )
        if int(config["retry"]["max_retries"]) < 0:
            raise ConfigValidationError("retry.max_retries must be >= 0")

    def apply_overrides(self, **kwargs: Any) -> None:
        """Override top-level sections. None values are ignored."""
        for key, value in kwargs.items():
            if value is not None:
                self._overrides[key] = value
                logger.debug(f"Config override: {key}={value}")

    def get_config(self) -> dict[str, Any]:
        """The merged configuration (YAML + overrides)."""
        if self._config is None:
            self.load()
        return {**self._config, **self._overrides}

    def get(self, key: str) -> Any:
        """
        Raises:
            KeyError: If the top-level key is not present.
        """
        config = self.get_config()
        if key not in config:
            raise KeyError(f"Configuration key not found: {key}")
        return config[key]

    def get_retry_settings(self) -> RetrySettings:
        return RetrySettings.from_config(self.get("retry"))

    def get_secret(self, name: str) -> Optional[str]:
        """A secret from secrets.yaml, falling back to the NAME env var."""
        if self._config is None:
            self.load()
        value = self._secrets.get(name) or os.environ.get(name.upper())
        return value or None

    @property
    def config_path(self) -> Path:
        return self._config_path


_global_loader: Optional[OrchestratorConfigLoader] = None


def get_config_loader(
    config_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
    force_new: bool = False
) -> OrchestratorConfigLoader:
    """Process-wide loader; a new one is built when paths are given."""
    global _global_loader

    if force_new or _global_loader is None or config_path or secrets_path:
        _global_loader = OrchestratorConfigLoader(
            config_path=config_path,
            secrets_path=secrets_path
        )
    return _global_loader


def ensure_dirs() -> None:
    """Create the logs, config and data directories."""
    for dir_path in [LOGS_DIR, CONFIG_DIR, DATA_DIR]:
        dir_path.mkdir(parents=True, exist_ok=True)
