"""Core configuration: host settings and section-scoped service configuration.

Two layers:
  - ``HostSettings`` (pydantic-settings) holds process-level knobs read from
    plain environment variables (environment name, content root, log level).
  - ``ConfigurationSource`` loads ``appsettings.yaml`` and the environment
    specific ``appsettings.{env}.yaml`` from the content root, then applies
    ``Section__Key`` environment overrides. Sections are bound to typed
    pydantic models.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Type, TypeVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings

SECTION_DELIMITER = "__"
BASE_FILE = "appsettings.yaml"

M = TypeVar("M", bound=BaseModel)


class ConfigurationError(Exception):
    """Base class for configuration faults raised during startup."""

    kind: str = "configuration"


class ConfigurationFileError(ConfigurationError):
    """A configuration file exists but cannot be read or parsed."""

    kind = "malformed_file"


class ConfigurationValidationError(ConfigurationError):
    """A section is missing required fields or carries wrongly typed values."""

    kind = "invalid_section"

    def __init__(self, section: str, missing: list[str], invalid: list[str], message: str):
        super().__init__(message)
        self.section = section
        self.missing = missing
        self.invalid = invalid


class HostSettings(BaseSettings):
    """Process settings with environment variable support."""

    app_env: str = "Development"
    content_root: str = "."
    log_level: str = "INFO"
    enable_metrics: bool = True

    # Overrides the Fabric_ApplicationName probe when set
    is_in_fabric: Optional[bool] = None
    # Overrides <content_root>/<package>.xml when non-empty
    documentation_path: str = ""

    host: str = "0.0.0.0"
    port: int = 8080


class TelemetrySettings(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    instrumentation_key: str = Field(default="", alias="InstrumentationKey")
    internal_key: str = Field(default="", alias="InternalKey")


class ServiceConfigurationOptions(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    required_scopes: Tuple[str, ...] = Field(default=(), alias="RequiredScopes")
    api_name: str = Field(alias="ApiName", min_length=1)
    api_secret: SecretStr = Field(default=SecretStr(""), alias="ApiSecret")
    authority: str = Field(alias="Authority", min_length=1)
    is_https: bool = Field(default=True, alias="IsHttps")

    @field_validator("required_scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value: Any) -> Any:
        # Environment overrides arrive as a CSV string
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(s for s in value.split(",") if s)
        return value


def _find_key(mapping: Mapping[str, Any], key: str) -> Optional[str]:
    lowered = key.lower()
    for existing in mapping:
        if existing.lower() == lowered:
            return existing
    return None


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``override`` into ``base`` with case-insensitive keys."""
    for key, value in override.items():
        existing = _find_key(base, key)
        if existing is not None and isinstance(base[existing], dict) and isinstance(value, Mapping):
            _merge(base[existing], value)
            continue
        if existing is not None and existing != key:
            del base[existing]
        base[key] = dict(value) if isinstance(value, Mapping) else value
    return base


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationFileError(f"Cannot load configuration file {path}: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigurationFileError(f"Configuration file {path} must contain a mapping at top level")
    return parsed


class ConfigurationSource:
    """Merged configuration tree for one content root and environment."""

    def __init__(self, data: Mapping[str, Any], files: Optional[list[Path]] = None):
        self._data: Dict[str, Any] = dict(data)
        self.files = files or []

    @classmethod
    def build(
        cls,
        content_root: str | Path,
        environment_name: str,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ConfigurationSource":
        """Load base + environment files, then ``Section__Key`` env overrides."""
        root = Path(content_root)
        candidates = [root / BASE_FILE]
        if environment_name:
            candidates.append(root / f"appsettings.{environment_name}.yaml")

        tree: Dict[str, Any] = {}
        loaded: list[Path] = []
        for path in candidates:
            if path.exists():
                _merge(tree, _read_yaml(path))
                loaded.append(path)

        env = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for key, value in env.items():
            if SECTION_DELIMITER not in key:
                continue
            parts = [p for p in key.split(SECTION_DELIMITER) if p]
            if len(parts) < 2:
                continue
            node = overrides
            for part in parts[:-1]:
                node = node.setdefault(part, {})
                if not isinstance(node, dict):
                    raise ConfigurationFileError(
                        f"Environment override '{key}' conflicts with a scalar override of '{part}'"
                    )
            if isinstance(node.get(parts[-1]), dict):
                raise ConfigurationFileError(
                    f"Environment override '{key}' conflicts with nested overrides of the same key"
                )
            node[parts[-1]] = value
        _merge(tree, overrides)
        return cls(tree, loaded)

    def get_section(self, name: str) -> Dict[str, Any]:
        key = _find_key(self._data, name)
        if key is None:
            return {}
        section = self._data[key]
        if section is None:
            return {}
        if not isinstance(section, dict):
            raise ConfigurationFileError(f"Configuration section '{name}' must be a mapping")
        return dict(section)

    def bind(self, name: str, model: Type[M]) -> M:
        """Bind a section to ``model``; keys are matched case-insensitively."""
        raw = self.get_section(name)
        normalized: Dict[str, Any] = {}
        for field_name, info in model.model_fields.items():
            alias = info.alias or field_name
            key = _find_key(raw, alias)
            if key is None:
                key = _find_key(raw, field_name)
            if key is not None:
                normalized[alias] = raw[key]
        try:
            return model.model_validate(normalized)
        except ValidationError as exc:
            missing = [".".join(str(p) for p in e["loc"]) for e in exc.errors() if e["type"] == "missing"]
            invalid = [".".join(str(p) for p in e["loc"]) for e in exc.errors() if e["type"] != "missing"]
            raise ConfigurationValidationError(
                name,
                missing,
                invalid,
                f"Section '{name}' is invalid (missing={missing}, invalid={invalid})",
            ) from exc


# Global settings instance
settings = HostSettings()
