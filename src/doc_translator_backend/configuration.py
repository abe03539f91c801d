from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

_HERE = Path(__file__).resolve()
DEFAULT_CONFIG_PATH = _HERE.parent / "config.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "DOC_TRANSLATOR_DATA_DIR": "storage.data_dir",
    "LIBRETRANSLATE_URL": "translation.base_url",
    "LIBRETRANSLATE_API_KEY": "translation.api_key",
    "DOC_TRANSLATOR_CONCURRENCY": "queue.concurrency",
    "DOC_TRANSLATOR_MAX_ATTEMPTS": "queue.max_attempts",
    "DOC_TRANSLATOR_STORE_BACKEND": "store.backend",
    "DOC_TRANSLATOR_LOG_LEVEL": "logging.level",
}

STORE_BACKENDS = ("memory", "sqlite")


def _config_path() -> Path:
    override = os.environ.get("DOC_TRANSLATOR_CONFIG")
    if override:
        return Path(override)
    return DEFAULT_CONFIG_PATH


@lru_cache(maxsize=4)
def _load_default_config(path: Path) -> DictConfig:
    if not path.exists():
        raise FileNotFoundError(f"Default config not found at {path}")
    return OmegaConf.load(path)


def _env_overrides() -> list[str]:
    dotlist = []
    for env_name, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            dotlist.append(f"{key}={value}")
    return dotlist


def _validate(config: DictConfig) -> None:
    if config.store.backend not in STORE_BACKENDS:
        raise ValueError(f"store.backend must be one of {list(STORE_BACKENDS)}")
    if int(config.queue.concurrency) < 1:
        raise ValueError("queue.concurrency must be >= 1")
    if int(config.queue.max_attempts) < 1:
        raise ValueError("queue.max_attempts must be >= 1")
    if float(config.translation.timeout_seconds) <= 0:
        raise ValueError("translation.timeout_seconds must be positive")
    if int(config.retention.max_age_seconds) < 0:
        raise ValueError("retention.max_age_seconds must be >= 0")


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None, *, use_env: bool = True) -> DictConfig:
    """
    Build the runtime configuration.

    Precedence, lowest first: packaged ``config.yaml`` (or the file named by
    ``DOC_TRANSLATOR_CONFIG``), environment variables (a ``.env`` file is
    loaded first), then ``overrides``.
    """
    if use_env:
        load_dotenv()
    base_container = OmegaConf.to_container(_load_default_config(_config_path()), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    layers = [base]
    if use_env:
        layers.append(OmegaConf.from_dotlist(_env_overrides()))
    if overrides:
        layers.append(OmegaConf.create(overrides))

    merged = DictConfig(OmegaConf.merge(*layers))
    _validate(merged)
    return merged


def resolve_storage_path(config: DictConfig, value: str) -> Path:
    """Resolve a storage-relative path against ``storage.data_dir``."""
    path = Path(value)
    if path.is_absolute():
        return path
    return Path(config.storage.data_dir) / path


def configure_logging(config: DictConfig) -> None:
    level = str(config.logging.level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=config.logging.format)
    logging.getLogger("httpx").setLevel(logging.WARNING)
