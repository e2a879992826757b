# -*- coding: utf-8 -*-

"""
Engine configuration.

Settings are resolved in this order, later sources winning:
    1. BatchSettings defaults
    2. YAML file (explicit path, or <user config dir>/config.yaml if present)
    3. CHUNKBM_* environment variables (e.g. CHUNKBM_DAILY_QUOTA=10)
    4. Explicit keyword overrides
"""

import os
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Optional

import platformdirs
import yaml

from .misc import mask_path, read_yaml


APP_NAME = "chunk-batch-manager"
APP_AUTHOR = "chunkbm"
ENV_PREFIX = "CHUNKBM_"
SUPPORTED_APIS = ("OpenAI", "AzureOpenAI", "Groq")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def default_config_path() -> Path:
    return Path(platformdirs.user_config_dir(APP_NAME, APP_AUTHOR)) / "config.yaml"


def default_database_path() -> Path:
    return Path(platformdirs.user_data_dir(APP_NAME, APP_AUTHOR)) / "batches.db"


@dataclass
class BatchSettings:
    """Limits, pricing knobs and provider options of the batching engine."""
    api: str = "OpenAI"
    model: str = "gpt-4o-mini"
    endpoint: str = "/v1/chat/completions"
    completion_window_hours: int = 24
    job_ttl_hours: float = 24.0
    max_units: int = 50
    max_unit_chars: int = 25000
    max_total_chars: int = 500000
    daily_quota: int = 5
    batch_discount: float = 0.5
    provider_discount: float = 0.25
    estimation: str = "aprox"
    chars_per_token: float = 3.8
    output_ratio: float = 0.4
    max_output_tokens: int = 4000
    temperature: float = 0.1
    ingest_max_workers: int = 8
    status_timeout: float = 30.0
    request_timeout: float = 120.0
    auto_ingest: bool = True
    database_path: Optional[str] = None
    pricing: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.api not in SUPPORTED_APIS:
            raise ValueError(f"Invalid api '{self.api}'. Expected one of: {', '.join(SUPPORTED_APIS)}")
        if self.estimation not in ("aprox", "exact"):
            raise ValueError("Invalid estimation type. Use 'aprox' or 'exact'.")
        for name in ("max_units", "max_unit_chars", "max_total_chars", "max_output_tokens",
                     "ingest_max_workers", "completion_window_hours"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be a positive integer, got {getattr(self, name)}")
        if self.daily_quota < 0:
            raise ValueError(f"daily_quota must be >= 0, got {self.daily_quota}")
        for name in ("batch_discount", "provider_discount"):
            if not 0 <= getattr(self, name) <= 1:
                raise ValueError(f"{name} must be between 0 and 1, got {getattr(self, name)}")
        for name in ("chars_per_token", "job_ttl_hours", "status_timeout", "request_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.output_ratio < 0:
            raise ValueError(f"output_ratio must be >= 0, got {self.output_ratio}")
        if not isinstance(self.pricing, dict):
            raise ValueError("pricing must be a mapping of model -> {'input', 'output'}")
        for model, prices in self.pricing.items():
            if not isinstance(prices, dict) or set(prices) != {"input", "output"}:
                raise ValueError(f"Pricing for model '{model}' must define exactly 'input' and 'output'")

    @property
    def discounts(self):
        return (self.batch_discount, self.provider_discount)

    def resolved_database_path(self) -> str:
        return str(self.database_path or default_database_path())

    def replace(self, **changes) -> "BatchSettings":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return asdict(self)


def _coerce(name, raw: str, default):
    """Convert an environment variable string to the type of the field default."""
    if isinstance(default, bool):
        value = raw.strip().lower()
        if value in _TRUE:
            return True
        if value in _FALSE:
            return False
        raise ValueError(f"Invalid boolean for {name}: {raw!r}")
    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from None
    if isinstance(default, dict):
        value = yaml.safe_load(raw)
        if not isinstance(value, dict):
            raise ValueError(f"{name} must be a YAML/JSON mapping")
        return value
    return raw


def _settings_from_env(environ) -> dict:
    defaults = BatchSettings()
    values = {}
    for f in fields(BatchSettings):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is not None:
            values[f.name] = _coerce(f.name, raw, getattr(defaults, f.name))
    return values


def load_settings(path=None, environ=None, **overrides) -> BatchSettings:
    """
    Load the engine settings.

    Args:
        path (str | Path, optional): YAML configuration file. If None, the
            user config file is read when it exists.
        environ (Mapping, optional): Environment to read CHUNKBM_* variables
            from. Defaults to os.environ.
        **overrides: Explicit values; None values are ignored.

    Returns:
        BatchSettings: The resolved settings.

    Raises:
        FileNotFoundError: If an explicit path does not exist.
        ValueError: If a key is unknown or a value is invalid.
    """
    known = {f.name for f in fields(BatchSettings)}
    values = {}

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
    else:
        candidate = default_config_path()
        path = candidate if candidate.exists() else None

    if path is not None:
        file_values = read_yaml(path)
        if not isinstance(file_values, dict):
            raise ValueError(f"Configuration file {mask_path(path)} must contain a mapping")
        unknown = set(file_values) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys in {mask_path(path)}: {', '.join(sorted(unknown))}")
        values.update(file_values)
        logging.debug(f"Loaded configuration from {mask_path(path)}")

    values.update(_settings_from_env(os.environ if environ is None else environ))

    for key, value in overrides.items():
        if key not in known:
            raise ValueError(f"Unknown setting: {key}")
        if value is not None:
            values[key] = value

    return BatchSettings(**values)
