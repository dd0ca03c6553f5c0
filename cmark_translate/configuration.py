"""Layered configuration loader.

Sources, in increasing precedence: discovered YAML files, an explicit YAML
file, a ``.env`` file in the working directory, and the process environment.
Every load builds a fresh ``Settings`` object scoped to the caller's run.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

APP_NAME = "cmark-translate"
ENV_PREFIX = "CMARK_TRANSLATE_"
# Credentials keep the names their services document.
UNPREFIXED_KEYS = frozenset({"DEEPL_AUTH_KEY", "DEEPL_SERVER_URL", "OPENAI_API_KEY"})

Formality = Literal["default", "more", "less", "prefer_more", "prefer_less"]


class Settings(BaseModel):
    """Schema describing all supported configuration options."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    PROVIDER: Literal["deepl", "openai", "echo"] = Field(
        default="deepl",
        description="Translation service selection.",
    )
    DEEPL_AUTH_KEY: Optional[str] = Field(default=None, repr=False)
    DEEPL_SERVER_URL: Optional[str] = Field(default=None)
    OPENAI_API_KEY: Optional[str] = Field(default=None, repr=False)
    OPENAI_MODEL: str = Field(default="gpt-4o-mini")
    FORMALITY: Formality = Field(default="prefer_less")
    GLOSSARIES: Dict[str, str] = Field(
        default_factory=dict,
        description="Glossary ids keyed by '<source>_<target>' language codes.",
    )
    MAX_BATCH_CHARS: int = Field(default=30000, ge=1)
    MAX_BATCH_UNITS: int = Field(default=50, ge=1)
    CONCURRENCY: int = Field(default=4, ge=1)
    MAX_RETRIES: int = Field(default=3, ge=0)
    RETRY_BACKOFF: List[float] = Field(default_factory=lambda: [1.0, 4.0, 9.0])
    ON_MALFORMED: Literal["fallback", "abort"] = Field(default="fallback")
    ON_UNSUPPORTED: Literal["skip", "abort"] = Field(default="skip")
    TRANSLATE_FRONT_MATTER: bool = Field(default=False)
    TRANSLATE_ALT_TEXT: bool = Field(default=False)
    ESCAPE_SHORTCODES: bool = Field(default=True)
    PROVIDER_DEBUG: bool = Field(default=False)

    @model_validator(mode="before")
    @classmethod
    def _normalise_provider(cls, data: Any) -> Any:
        if isinstance(data, dict):
            raw_value = data.get("PROVIDER")
            if isinstance(raw_value, str):
                normalized = raw_value.strip().lower().replace("-", "_")
                synonyms = {
                    "deepl_api": "deepl",
                    "gpt": "openai",
                    "open_ai": "openai",
                    "noop": "echo",
                    "mock": "echo",
                }
                data["PROVIDER"] = synonyms.get(normalized, normalized)
        return data

    @field_validator("RETRY_BACKOFF", mode="before")
    @classmethod
    def _split_backoff(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("GLOSSARIES", mode="before")
    @classmethod
    def _parse_glossaries(cls, value: Any) -> Any:
        if isinstance(value, str):
            pairs = [item.split("=", 1) for item in value.split(",") if "=" in item]
            value = {key: glossary.strip() for key, glossary in pairs}
        if isinstance(value, Mapping):
            return {str(key).strip().lower(): glossary for key, glossary in value.items()}
        return value

    def glossary_for(self, source_language: str | None, target_language: str) -> str | None:
        if not source_language:
            return None
        key = f"{source_language}_{target_language}".lower()
        return self.GLOSSARIES.get(key)


def discover_config_files(app_dir: Path) -> List[Path]:
    """Return existing YAML configuration files, lowest precedence first."""

    home = Path.home()
    candidates = [
        home / ".config" / APP_NAME / "config.yaml",
        home / f".{APP_NAME}.yaml",
        app_dir / f"{APP_NAME}.yaml",
    ]
    return [path for path in candidates if path.is_file()]


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Configuration file {path} could not be read: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {path} is not valid YAML: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, Mapping):
        raise ConfigurationError(
            f"Invalid configuration file {path}: expected a mapping at the root."
        )
    return {str(key).upper(): value for key, value in parsed.items()}


def _merge_env_sources(target: Dict[str, Any], *, app_dir: Path) -> None:
    """Merge .env and process environment variables into the target mapping."""

    allowed = set(Settings.model_fields.keys())

    def field_name(env_key: str) -> str | None:
        if env_key in UNPREFIXED_KEYS:
            return env_key
        if env_key.startswith(ENV_PREFIX):
            name = env_key[len(ENV_PREFIX):]
            if name in allowed:
                return name
        return None

    def merge_values(values: Mapping[str, Optional[str]], *, source: str) -> None:
        for key, value in sorted(values.items()):
            if value is None:
                continue
            name = field_name(key)
            if name is None:
                continue
            logger.debug("Setting %s from %s", name, source)
            target[name] = value

    dotenv_path = app_dir / ".env"
    if dotenv_path.exists():
        merge_values(dotenv_values(dotenv_path), source=".env")

    merge_values(dict(os.environ), source="environment")


def load_settings(
    *,
    config_path: Path | None = None,
    app_dir: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load and validate settings from every configuration layer."""

    base_dir = app_dir or Path.cwd()
    combined: Dict[str, Any] = {}
    for path in discover_config_files(base_dir):
        logger.debug("Reading configuration file %s", path)
        combined.update(_load_yaml(path))

    if config_path is not None:
        if not config_path.is_file():
            raise ConfigurationError(f"Configuration file {config_path} not found.")
        combined.update(_load_yaml(config_path))

    _merge_env_sources(combined, app_dir=base_dir)

    if overrides:
        combined.update({key: value for key, value in overrides.items() if value is not None})

    try:
        return Settings.model_validate(combined)
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_errors(exc.errors())) from exc


def validate_provider_settings(settings: Settings) -> None:
    """Check that the selected provider has the credentials it needs."""

    errors: list[str] = []
    if settings.PROVIDER == "deepl" and not settings.DEEPL_AUTH_KEY:
        errors.append("DEEPL_AUTH_KEY is required when PROVIDER is 'deepl'.")
    elif settings.PROVIDER == "openai" and not settings.OPENAI_API_KEY:
        errors.append("OPENAI_API_KEY is required when PROVIDER is 'openai'.")

    if errors:
        bullet_list = "\n".join(f"- {message}" for message in errors)
        raise ConfigurationError("Configuration validation errors detected:\n" + bullet_list)


def _format_validation_errors(entries: Sequence[Mapping[str, Any]]) -> str:
    details: list[str] = []
    for entry in entries:
        path = entry.get("loc") or []
        if isinstance(path, (list, tuple)):
            location = ".".join(str(part) for part in path if part not in {None, ""})
        else:
            location = str(path)
        message = str(entry.get("msg") or "Invalid value")
        prefix = f"{location}: " if location else ""
        details.append(f"- {prefix}{message}")
    return "Configuration validation errors detected:\n" + "\n".join(details)
