"""Configuration for warded.

Two concerns live here:

- Model aliases: `Config` maps names such as "fast" or "reasoning" to a
  provider model and its settings. `with config:` scopes an override.
- Engine defaults: `EngineDefaults` holds the tunables of the call
  pipeline (output retry budget, tool-loop bound, moderation timeout).

Design Note: Pydantic vs Dataclass Usage
----------------------------------------
`ModelConfig` and `EngineDefaults` are Pydantic models. Their values come
from people: pyproject.toml tables and environment variables arrive as
loosely typed data and need coercion, range checks and readable errors.

messages.py and logging.py hold the contrasting case: records the engine
builds itself, kept as plain dataclasses.

Example pyproject.toml:

    [tool.warded.models.fast]
    model = "anthropic:claude-haiku-4-5"
    temperature = 0.2

    [tool.warded.guardrails]
    max_retries = 3

    [tool.warded.tools]
    max_sequential_invocations = 20

    [tool.warded.moderation]
    timeout = 10.0
"""

from __future__ import annotations

import os
import sys
import threading
import warnings
from collections.abc import Mapping
from contextvars import ContextVar, Token
from functools import reduce
from pathlib import Path
from types import TracebackType
from typing import Any, Callable, TypedDict

# tomllib and typing.Self/NotRequired arrived in 3.11
if sys.version_info >= (3, 11):
    import tomllib
    from typing import NotRequired, Self
else:
    import tomli as tomllib
    from typing_extensions import NotRequired, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, ValidationError as PydanticValidationError

from warded._pydantic_ai import ModelSettings
from warded._pyproject import find_pyproject, get_warded_config
from warded.exceptions import WardedConfigError


ENV_DEFAULT_MODEL = "WARDED_DEFAULT_MODEL"
ENV_DEFAULT_TIMEOUT = "WARDED_DEFAULT_TIMEOUT"
ENV_DEFAULT_TEMPERATURE = "WARDED_DEFAULT_TEMPERATURE"
ENV_DEFAULT_MAX_TOKENS = "WARDED_DEFAULT_MAX_TOKENS"
ENV_OUTPUT_MAX_RETRIES = "WARDED_OUTPUT_MAX_RETRIES"
ENV_MAX_TOOL_INVOCATIONS = "WARDED_MAX_SEQUENTIAL_TOOL_INVOCATIONS"
ENV_MODERATION_TIMEOUT = "WARDED_MODERATION_TIMEOUT"

# Seconds a model call may take when no timeout is configured
DEFAULT_TIMEOUT = 120.0

DEFAULT_OUTPUT_MAX_RETRIES = 2
DEFAULT_MAX_SEQUENTIAL_TOOL_INVOCATIONS = 100

DEFAULT_ALIAS = "default"

# (variable, ModelConfig field, converter) for the env-provided default alias
_ENV_MODEL_SETTINGS: tuple[tuple[str, str, Callable[[str], Any]], ...] = (
    (ENV_DEFAULT_TIMEOUT, "timeout", float),
    (ENV_DEFAULT_TEMPERATURE, "temperature", float),
    (ENV_DEFAULT_MAX_TOKENS, "max_tokens", int),
)

# (variable, EngineDefaults field)
_ENV_ENGINE_SETTINGS = (
    (ENV_OUTPUT_MAX_RETRIES, "output_max_retries"),
    (ENV_MAX_TOOL_INVOCATIONS, "max_sequential_tool_invocations"),
    (ENV_MODERATION_TIMEOUT, "moderation_timeout"),
)

# (pyproject table, key, EngineDefaults field)
_FILE_ENGINE_SETTINGS = (
    ("guardrails", "max_retries", "output_max_retries"),
    ("tools", "max_sequential_invocations", "max_sequential_tool_invocations"),
    ("moderation", "timeout", "moderation_timeout"),
)


# Concurrency:
# _config_context is a ContextVar, so every thread and task sees its own.
# _process_default and _process_engine_defaults are plain globals; set them
# at startup, before other threads exist.
# The file/env caches are filled under _config_cache_lock and never mutated
# afterwards.

_config_context: ContextVar[Config | None] = ContextVar("warded_config", default=None)
_process_default: Config | None = None
_file_config_cache: Config | None = None
_env_config_cache: Config | None = None
_engine_defaults_cache: EngineDefaults | None = None
_process_engine_defaults: EngineDefaults | None = None
_config_cache_lock = threading.Lock()


def _format_validation_errors(error: PydanticValidationError) -> str:
    lines = []
    for item in error.errors():
        where = ".".join(map(str, item["loc"])) or "root"
        lines.append(f"  - {where}: {item['msg']}")
    return "\n".join(lines)


def _read_toml(path: Path) -> dict[str, Any] | None:
    """Parsed file, or None (with a warning) when it is not valid TOML."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        warnings.warn(f"Ignoring warded configuration in {path}: {e}", stacklevel=3)
        return None


# ---------------------------------------------------------------------------
# Model aliases
# ---------------------------------------------------------------------------


class ModelConfigDict(TypedDict, total=False):
    """Keys accepted where a ModelConfig may be given as a dict."""

    model: str
    """Model in provider:name form, e.g. 'anthropic:claude-sonnet-4-5'. Required."""
    temperature: NotRequired[float]
    max_tokens: NotRequired[int]
    top_p: NotRequired[float]
    timeout: NotRequired[float]
    extra: NotRequired[dict[str, Any]]


class ModelConfig(BaseModel):
    """A model and the settings to call it with.

    Example:
        ModelConfig(model="anthropic:claude-sonnet-4-5", temperature=0.7, max_tokens=4096)
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    model: str
    """Provider and model name, 'provider:name'; a bare name is kept as is."""

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    timeout: float | None = None

    extra: dict[str, Any] = Field(default_factory=dict)
    """Provider-specific settings passed through untouched."""

    @field_validator("model")
    @classmethod
    def validate_model_format(cls, v: str) -> str:
        text = v.strip()
        if not text:
            raise ValueError("Model string cannot be empty")
        if ":" not in text:
            return text
        provider, _, name = (part.strip() for part in text.partition(":"))
        missing = "provider" if not provider else "model name" if not name else None
        if missing:
            raise ValueError(f"Invalid model format: {v!r}. The {missing} is empty.")
        return f"{provider}:{name}"

    def to_model_settings(self) -> ModelSettings:
        """pydantic-ai ModelSettings; the timeout defaults to DEFAULT_TIMEOUT."""
        settings: dict[str, Any] = {**self.extra, "timeout": DEFAULT_TIMEOUT}
        for name in ("temperature", "max_tokens", "top_p", "timeout"):
            value = getattr(self, name)
            if value is not None:
                settings[name] = value
        return ModelSettings(**settings)


class Config:
    """Model aliases, usable as a scoped override or a process default.

    A Config is never mutated; merge() builds a new one.

    Example:
        config = Config(models={
            "fast": ModelConfig(model="anthropic:claude-haiku-4-5"),
            "reasoning": {"model": "anthropic:claude-opus-4-1", "temperature": 0.7},
        })

        with config:
            assistant = build_service(Assistant, model="fast")
    """

    def __init__(self, models: Mapping[str, ModelConfig | ModelConfigDict] | None = None) -> None:
        self._models: dict[str, ModelConfig] = {
            alias: value if isinstance(value, ModelConfig) else ModelConfig.model_validate(value)
            for alias, value in (models or {}).items()
        }
        self._tokens: list[Token[Config | None]] = []

    @property
    def models(self) -> dict[str, ModelConfig]:
        return dict(self._models)

    def resolve(self, alias: str) -> ModelConfig:
        """The ModelConfig registered as `alias`.

        Raises:
            WardedConfigError: If no such alias exists.
        """
        try:
            return self._models[alias]
        except KeyError:
            raise WardedConfigError(
                f"Unknown model alias '{alias}'. Available: {sorted(self._models)}"
            ) from None

    def __enter__(self) -> Self:
        self._tokens.append(_config_context.set(self))
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._tokens:
            _config_context.reset(self._tokens.pop())

    def set_as_default(self) -> None:
        """Use these aliases process-wide, below `with` scopes and above env and file.

        Not thread-safe; call during application startup.
        """
        global _process_default
        _process_default = self

    def merge(self, other: Config) -> Config:
        """Aliases of both; those of `other` replace same-named ones."""
        return Config(models={**self._models, **other._models})

    @classmethod
    def from_file(cls, path: Path | str | None = None) -> Config:
        """Aliases from the `[tool.warded.models.<alias>]` tables of pyproject.toml.

        Args:
            path: The file to read. Default: the nearest pyproject.toml
                at or above the working directory.

        Returns:
            The aliases found; an empty Config when there is no file, no
            table, or the file is not valid TOML (the latter with a warning).

        Raises:
            WardedConfigError: If an alias table is malformed.
        """
        source = Path(path) if path is not None else find_pyproject()
        if source is None or not source.exists():
            return cls()
        data = _read_toml(source)
        tables = (data or {}).get("tool", {}).get("warded", {}).get("models", {})

        known = set(ModelConfig.model_fields)
        models: dict[str, ModelConfig] = {}
        for alias, table in tables.items():
            where = f"[tool.warded.models.{alias}] in {source}"
            if not isinstance(table, dict):
                raise WardedConfigError(f"Invalid {where}: expected a table, got {type(table).__name__}")
            unknown = sorted(set(table) - known)
            if unknown:
                warnings.warn(f"Ignoring unknown fields {unknown} of {where}", stacklevel=2)
            try:
                models[alias] = ModelConfig.model_validate(table)
            except PydanticValidationError as e:
                raise WardedConfigError(f"Invalid {where}:\n{_format_validation_errors(e)}") from e
        return cls(models=models)

    @classmethod
    def from_env(cls) -> Config:
        """The 'default' alias described by WARDED_DEFAULT_* variables.

        Empty unless WARDED_DEFAULT_MODEL is set. Numbers that do not
        parse are skipped with a warning.
        """
        model = os.environ.get(ENV_DEFAULT_MODEL)
        if not model:
            return cls()

        settings: dict[str, Any] = {"model": model}
        for variable, name, convert in _ENV_MODEL_SETTINGS:
            raw = os.environ.get(variable)
            if not raw:
                continue
            try:
                settings[name] = convert(raw)
            except ValueError:
                warnings.warn(f"Ignoring invalid {variable}={raw!r}", stacklevel=2)
        return cls(models={DEFAULT_ALIAS: settings})

    @classmethod
    def current(cls) -> Config:
        """The aliases visible here, merged per alias.

        Later sources replace earlier ones: pyproject.toml, environment,
        the process default, then the innermost `with config:` block.
        File and environment are read once and cached.
        """
        global _file_config_cache, _env_config_cache

        with _config_cache_lock:
            if _file_config_cache is None:
                _file_config_cache = cls.from_file()
            if _env_config_cache is None:
                _env_config_cache = cls.from_env()

        layers = (_env_config_cache, _process_default, _config_context.get())
        return reduce(Config.merge, (layer for layer in layers if layer is not None), _file_config_cache)


def current_config() -> Config:
    """Shorthand for Config.current()."""
    return Config.current()


def is_literal_model(model: str) -> bool:
    """Whether `model` names a provider model ("openai:gpt-4o") rather than an alias."""
    return ":" in model


def resolve_model_config(model: str) -> ModelConfig:
    """ModelConfig for a literal provider:model string or an alias.

    Raises:
        WardedConfigError: If `model` is an unknown alias.
    """
    if is_literal_model(model):
        return ModelConfig(model=model)
    return Config.current().resolve(model)


# ---------------------------------------------------------------------------
# Engine defaults
# ---------------------------------------------------------------------------


class EngineDefaults(BaseModel):
    """Tunables of the call pipeline.

    The first source that sets a value wins:
    1. configure_engine_defaults()
    2. Environment (WARDED_OUTPUT_MAX_RETRIES,
       WARDED_MAX_SEQUENTIAL_TOOL_INVOCATIONS, WARDED_MODERATION_TIMEOUT)
    3. pyproject.toml (`[tool.warded.guardrails]`, `[tool.warded.tools]`,
       `[tool.warded.moderation]`)
    4. The field defaults below

    Arguments of build_service() and guardrails.output() beat all of these.
    """

    model_config = ConfigDict(frozen=True)

    output_max_retries: int = Field(default=DEFAULT_OUTPUT_MAX_RETRIES, ge=0)
    """Model re-invocations allowed when output guardrails request a retry."""

    max_sequential_tool_invocations: int = Field(default=DEFAULT_MAX_SEQUENTIAL_TOOL_INVOCATIONS, ge=1)
    """Upper bound on model turns spent in the tool loop per attempt."""

    moderation_timeout: float | None = Field(default=None, gt=0)
    """Seconds to wait for the moderation verdict. None uses the model timeout."""

    @classmethod
    def from_file(cls, path: Path | str | None = None) -> EngineDefaults:
        """Engine defaults set in pyproject.toml.

        Raises:
            WardedConfigError: If a value is out of range or of the wrong type.
        """
        warded_table = get_warded_config(path)
        values = {
            name: warded_table[table][key]
            for table, key, name in _FILE_ENGINE_SETTINGS
            if key in warded_table.get(table, {})
        }
        try:
            return cls.model_validate(values)
        except PydanticValidationError as e:
            raise WardedConfigError(f"Invalid engine defaults in pyproject.toml:\n{_format_validation_errors(e)}") from e

    def with_env(self) -> EngineDefaults:
        """These defaults overridden by the environment.

        If any variable is invalid, all of them are ignored with a warning.
        """
        overrides = {name: os.environ[variable] for variable, name in _ENV_ENGINE_SETTINGS if os.environ.get(variable)}
        if not overrides:
            return self
        try:
            return type(self).model_validate({**self.model_dump(), **overrides})
        except PydanticValidationError as e:
            warnings.warn(f"Ignoring invalid warded environment settings:\n{_format_validation_errors(e)}", stacklevel=2)
            return self


def configure_engine_defaults(defaults: EngineDefaults | None) -> None:
    """Install process-wide engine defaults; None removes them."""
    global _process_engine_defaults
    _process_engine_defaults = defaults


def get_engine_defaults() -> EngineDefaults:
    """The engine defaults in effect (see EngineDefaults for precedence)."""
    global _engine_defaults_cache
    if _process_engine_defaults is not None:
        return _process_engine_defaults
    with _config_cache_lock:
        if _engine_defaults_cache is None:
            _engine_defaults_cache = EngineDefaults.from_file().with_env()
        return _engine_defaults_cache


def clear_config_cache() -> None:
    """Forget the cached pyproject.toml and environment settings.

    Programmatic settings (set_as_default(), configure_engine_defaults(),
    `with config:`) are kept.

    Example:
        pyproject.write_text(...)
        clear_config_cache()
        Config.current()  # reads the file again
    """
    global _file_config_cache, _env_config_cache, _engine_defaults_cache
    with _config_cache_lock:
        _file_config_cache = _env_config_cache = _engine_defaults_cache = None


__all__ = [
    "DEFAULT_TIMEOUT",
    "DEFAULT_OUTPUT_MAX_RETRIES",
    "DEFAULT_MAX_SEQUENTIAL_TOOL_INVOCATIONS",
    "DEFAULT_ALIAS",
    "ModelConfigDict",
    "ModelConfig",
    "Config",
    "current_config",
    "is_literal_model",
    "resolve_model_config",
    "EngineDefaults",
    "configure_engine_defaults",
    "get_engine_defaults",
    "clear_config_cache",
]
