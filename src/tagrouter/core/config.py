"""
Dynaconf-powered configuration loader with Pydantic validation.

The configuration service loads the layered YAML files from a config
directory, validates them into a `ConfigSnapshot`, and hands the engine,
logging, metrics and domain sections to the host entrypoint.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from dynaconf import Dynaconf
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .engine import DEFAULT_BATCH_SIZE, DEFAULT_POLLING_INTERVAL_MS


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    """Case-insensitive dictionary lookup helper."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, dict):
        return value
    return {}


def _section_list(raw: dict[str, Any], key: str) -> list[dict[str, Any]]:
    """List-aware helper for case-insensitive lookups."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    if isinstance(value, dict):
        return [value]
    return []


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dictionaries without mutating the originals."""
    result: dict[str, Any] = {**base}
    for key, value in updates.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _lower_keys(raw: dict[str, Any]) -> dict[str, Any]:
    """Dynaconf upper-cases top-level keys; nested keys are left untouched."""
    return {str(key).lower(): value for key, value in raw.items()}


CONFIG_FILENAMES = ("config.yaml", "secrets.yaml")
DEFAULT_CONFIG_DIR = Path("config")


class ConfigError(RuntimeError):
    """Raised when configuration files are missing or invalid."""


class EngineSettings(BaseModel):
    """Polling cadence and batch size of the engine loop."""

    model_config = ConfigDict(extra="ignore")

    polling_interval_ms: float = Field(
        default=DEFAULT_POLLING_INTERVAL_MS,
        validation_alias=AliasChoices("polling_interval_ms", "polling_interval"),
    )
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE)

    @field_validator("polling_interval_ms", "batch_size")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    level: str = Field(default="INFO")
    file: Path | None = Field(default=None, description="Optional rotating log file.")
    max_mb: int = Field(default=10, gt=0)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class MetricsSettings(BaseModel):
    """Prometheus exporter options."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=False)
    addr: str = Field(default="127.0.0.1")
    port: int = Field(default=9093, gt=0, lt=65536)
    namespace: str = Field(default="tagrouter")


class DomainSettings(BaseModel):
    """
    Wiring for one domain.

    `provider` is an import path such as ``package.module:attribute``. The
    attribute may be a provider instance, a class or a factory; classes and
    factories are called with ``options`` as keyword arguments.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, validation_alias=AliasChoices("id", "domain_id"))
    name: str | None = Field(default=None)
    provider: str = Field(min_length=1)
    options: dict[str, Any] = Field(default_factory=dict)
    plugin_dirs: list[Path] = Field(default_factory=list)
    config: dict[str, Any] = Field(
        default_factory=dict, description="Read-only configuration passed to every plugin."
    )
    enabled: bool = Field(default=True)

    @field_validator("plugin_dirs", mode="before")
    @classmethod
    def _coerce_dirs(cls, value: Any) -> list[Any]:
        if value is None:
            return []
        if isinstance(value, str | Path):
            return [value]
        return list(value)

    @field_validator("provider")
    @classmethod
    def _import_path(cls, value: str) -> str:
        module, sep, attribute = value.partition(":")
        if not module or not sep or not attribute:
            raise ValueError("provider must look like 'package.module:attribute'")
        return value

    @property
    def display_name(self) -> str:
        return self.name or self.id


class ConfigSnapshot(BaseModel):
    """Validated view of the full configuration."""

    model_config = ConfigDict(extra="ignore")

    engine: EngineSettings = Field(default_factory=EngineSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    domains: list[DomainSettings] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_domains(self) -> ConfigSnapshot:
        seen: set[str] = set()
        for domain in self.domains:
            if domain.id in seen:
                raise ValueError(f"duplicate domain id '{domain.id}'")
            seen.add(domain.id)
        return self

    @property
    def enabled_domains(self) -> list[DomainSettings]:
        return [domain for domain in self.domains if domain.enabled]


class ConfigService:
    """
    Runtime facade for loading and validating configuration.
    """

    def __init__(
        self,
        *,
        config_dir: str | Path | None = None,
        settings: Dynaconf | None = None,
    ) -> None:
        self._config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        settings_files = [self._config_dir / name for name in CONFIG_FILENAMES]
        existing_files = [str(path) for path in settings_files if path.exists()]
        if settings is None and not existing_files:
            raise ConfigError(
                f"No configuration files found in {self._config_dir}. "
                "Expected at least config.yaml."
            )

        self._settings = settings or Dynaconf(
            envvar_prefix="TAGROUTER",
            settings_files=existing_files,
            load_dotenv=True,
            environments=False,
        )
        self._snapshot = self._build_snapshot()

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def snapshot(self) -> ConfigSnapshot:
        """Latest validated configuration snapshot."""
        return self._snapshot

    def refresh(self) -> ConfigSnapshot:
        """Reload configuration files and rebuild the snapshot."""
        self._settings.reload()
        self._snapshot = self._build_snapshot()
        return self._snapshot

    def apply_changes(self, changes: dict[str, Any]) -> ConfigSnapshot:
        """
        Merge the provided changes into the current configuration snapshot.

        Changes are not persisted to disk.
        """
        raw = _lower_keys(self._settings.as_dict())
        merged = _deep_merge(raw, _lower_keys(changes))
        self._snapshot = self._build_snapshot(merged)
        return self._snapshot

    def _build_snapshot(self, raw: dict[str, Any] | None = None) -> ConfigSnapshot:
        data = self._extract_snapshot_data(raw or _lower_keys(self._settings.as_dict()))
        try:
            return ConfigSnapshot.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Configuration validation failed: {exc}") from exc

    def _extract_snapshot_data(self, raw: dict[str, Any]) -> dict[str, Any]:
        return {
            "engine": _section(raw, "engine"),
            "logging": _section(raw, "logging"),
            "metrics": _section(raw, "metrics"),
            "domains": _section_list(raw, "domains"),
        }


__all__ = [
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "DomainSettings",
    "EngineSettings",
    "LoggingSettings",
    "MetricsSettings",
]
