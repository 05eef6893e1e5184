"""Configuration loaders for YAML-based runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

try:
    import yaml
except ImportError:  # pragma: no cover - dependency is declared in pyproject
    yaml = None  # type: ignore[assignment]

from snapsolve.errors import ConfigError


DEFAULT_CONFIG_PATH = "configs/solver_config.yml"


@dataclass
class ModelSettings:
    provider: str = "nvidia"
    model: str = "google/gemma-3n-e4b-it"
    api_key_env: str = "NVIDIA_API_KEY"
    temperature: float = 0.2
    top_p: float = 0.9
    max_tokens: int = 4096
    supports_image: bool = True
    thinking: bool = False
    max_image_bytes: int = 5242880


@dataclass
class RuntimeSettings:
    session_timeout_seconds: float = 60.0
    min_extraction_chars: int = 10
    reset_before_solve: bool = True
    progress_title_max_chars: int = 50


@dataclass
class StorageSettings:
    database_path: str = ".data/snapsolve.db"
    image_dir: str = ".data/background_images"


@dataclass
class BackgroundSettings:
    max_queue_size: int = 16
    retention_seconds: int = 1800
    worker_count: int = 1


@dataclass
class SolverConfig:
    version: str = "1.0.0"
    model: ModelSettings = field(default_factory=ModelSettings)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    background: BackgroundSettings = field(default_factory=BackgroundSettings)
    ocr: Dict[str, Any] = field(default_factory=dict)


def _load_yaml(path: Path) -> Dict[str, Any]:
    if yaml is None:
        raise ConfigError("PyYAML is required. Install dependencies from pyproject.toml.")
    if not path.exists():
        raise ConfigError("Configuration file not found: {}".format(path))
    with path.open("r", encoding="utf-8") as handle:
        try:
            loaded = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError("Invalid YAML in {}: {}".format(path, exc)) from exc
    if not isinstance(loaded, dict):
        raise ConfigError("Configuration root must be a mapping in {}".format(path))
    return loaded


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError("Section '{}' must be a mapping".format(name))
    return section


def load_solver_config(path: str = DEFAULT_CONFIG_PATH) -> SolverConfig:
    data = _load_yaml(Path(path))
    model_data = _section(data, "model")
    runtime_data = _section(data, "runtime")
    storage_data = _section(data, "storage")
    background_data = _section(data, "background")

    defaults = ModelSettings()
    model = ModelSettings(
        provider=str(model_data.get("provider", defaults.provider)).strip().lower(),
        model=str(model_data.get("model", defaults.model)),
        api_key_env=str(model_data.get("api_key_env", defaults.api_key_env)),
        temperature=float(model_data.get("temperature", defaults.temperature)),
        top_p=float(model_data.get("top_p", defaults.top_p)),
        max_tokens=int(model_data.get("max_tokens", defaults.max_tokens)),
        supports_image=bool(model_data.get("supports_image", defaults.supports_image)),
        thinking=bool(model_data.get("thinking", defaults.thinking)),
        max_image_bytes=int(model_data.get("max_image_bytes", defaults.max_image_bytes)),
    )

    runtime = RuntimeSettings(
        session_timeout_seconds=float(runtime_data.get("session_timeout_seconds", 60.0)),
        min_extraction_chars=int(runtime_data.get("min_extraction_chars", 10)),
        reset_before_solve=bool(runtime_data.get("reset_before_solve", True)),
        progress_title_max_chars=int(runtime_data.get("progress_title_max_chars", 50)),
    )

    storage = StorageSettings(
        database_path=str(storage_data.get("database_path", StorageSettings.database_path)),
        image_dir=str(storage_data.get("image_dir", StorageSettings.image_dir)),
    )

    background = BackgroundSettings(
        max_queue_size=int(background_data.get("max_queue_size", 16)),
        retention_seconds=int(background_data.get("retention_seconds", 1800)),
        worker_count=int(background_data.get("worker_count", 1)),
    )

    return SolverConfig(
        version=str(data.get("version", "1.0.0")),
        model=model,
        runtime=runtime,
        storage=storage,
        background=background,
        ocr=dict(_section(data, "ocr")),
    )


def load_environment_variables(extra_candidates: Optional[List[Path]] = None) -> None:
    """Loads `.env` files without overriding variables already present."""
    candidates = [
        Path.cwd() / ".env",
        Path(__file__).resolve().parents[2] / ".env",
    ]
    candidates.extend(extra_candidates or [])
    for env_path in candidates:
        if env_path.exists():
            load_dotenv(dotenv_path=env_path, override=False)


def resolve_api_key(candidates: List[str]) -> Optional[str]:
    """Finds the first non-empty API key among candidate env vars.

    Args:
        candidates: Environment variable names ordered by preference.

    Returns:
        First non-empty key value, or None when no candidate is set.
    """
    for name in candidates:
        if not name:
            continue
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return None
