"""YAML configuration loader with environment variable overrides.

Configuration is loaded in layers (later layers override earlier):

  1. config/config.yaml  -- static defaults checked into the repo
  2. .env file           -- local developer overrides (not committed)
  3. Environment vars    -- set at deploy time

The YAML file is grouped into sections; :data:`_SECTION_FIELDS` maps each
``section.key`` onto a flat :class:`Settings` field.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from docrag.config.settings import Settings
from docrag.utils.errors import ConfigurationError

_SECTION_FIELDS: dict[str, dict[str, str]] = {
    "app": {
        "host": "app_host",
        "port": "app_port",
        "env": "app_env",
    },
    "logging": {
        "level": "log_level",
    },
    "embedding": {
        "provider": "embedding_provider",
        "model": "openai_embedding_model",
        "base_url": "openai_base_url",
        "ollama_base_url": "ollama_base_url",
        "batch_size": "embedding_batch_size",
        "max_retries": "embedding_max_retries",
        "retry_backoff": "embedding_retry_backoff",
        "timeout_seconds": "embedding_timeout_seconds",
    },
    "chunking": {
        "size": "chunk_size",
        "overlap": "chunk_overlap",
    },
    "chunk_store": {
        "backend": "chunk_store",
        "persist_dir": "chromadb_persist_dir",
        "collection": "chromadb_collection",
    },
    "retrieval": {
        "top_k": "retrieval_top_k",
        "min_similarity": "retrieval_min_similarity",
        "context_max_tokens": "context_max_tokens",
        "vector_weight": "retrieval_vector_weight",
        "keyword_weight": "retrieval_keyword_weight",
    },
    "usage": {
        "flush_interval": "usage_flush_interval",
        "flush_threshold": "usage_flush_threshold",
        "max_pending": "usage_max_pending",
    },
}


def load_config(path: str = "config/config.yaml") -> dict[str, Any]:
    """Read the YAML file at *path* into a dict (empty if the file is absent)."""
    config_path = Path(path)
    if not config_path.exists():
        return {}
    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


def load_settings(path: str = "config/config.yaml") -> Settings:
    """Build :class:`Settings` from YAML defaults with env vars layered on top.

    Fields set through the environment (or ``.env``) always win over the
    YAML value for the same field.
    """
    yaml_values = _flatten(load_config(path))
    env_settings = Settings()
    explicit = env_settings.model_dump(include=env_settings.model_fields_set)
    return Settings(**{**yaml_values, **explicit})


def _flatten(config: dict[str, Any]) -> dict[str, Any]:
    """Map sectioned YAML keys onto flat settings field names.

    Unknown sections and keys are ignored.
    """
    flat: dict[str, Any] = {}
    for section, fields in _SECTION_FIELDS.items():
        values = config.get(section)
        if not isinstance(values, dict):
            continue
        for key, field_name in fields.items():
            if key in values and values[key] is not None:
                flat[field_name] = values[key]
    return flat
