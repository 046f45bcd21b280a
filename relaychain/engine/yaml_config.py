"""YAML configuration loader.

Optional; env vars alone are enough to run the server. Values in the
``engine:`` section override env-derived settings.

Example YAML (.relaychain.yaml):
    engine:
      default_model: gpt-4o
      supervisor_model: claude-3-5-sonnet-20241022
      batch_size: 10
      batch_interval_ms: 50
      rate_limit_requests: 20

    providers:
      openai:
        type: openai
      local:
        type: openai
        base_url: http://localhost:11434/v1
        api_key_env: LOCAL_LLM_KEY
      anthropic:
        type: anthropic
        api_key_env: ANTHROPIC_API_KEY

    models:
      llama3:
        provider: local
      gpt-4.1:
        provider: openai
        vision: true
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAMES = (".relaychain.yaml", "relaychain.yaml")


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    type: str  # "openai", "anthropic", "xai" or "google"
    api_key_env: str | None = None
    base_url: str | None = None
    # Extra model prefixes an openai-type provider should claim.
    model_prefixes: list[str] = field(default_factory=list)


@dataclass
class RelayConfig:
    """Parsed YAML: engine settings, providers and model additions."""
    engine: EngineConfig
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    models: dict[str, dict[str, Any]] = field(default_factory=dict)


_ENGINE_FIELDS = {f.name: f for f in fields(EngineConfig)}


def _apply_engine_section(engine: EngineConfig, raw: dict[str, Any]) -> None:
    for key, value in raw.items():
        if key not in _ENGINE_FIELDS:
            logger.warning("load_yaml_config: unknown engine key %r ignored", key)
            continue
        current = getattr(engine, key)
        if isinstance(current, bool):
            value = bool(value)
        elif isinstance(current, int) and not isinstance(value, bool):
            value = int(value)
        elif isinstance(current, float):
            value = float(value)
        elif isinstance(current, list):
            value = list(value or [])
        setattr(engine, key, value)


def load_yaml_config(path: str | Path, base: EngineConfig | None = None) -> RelayConfig:
    """Load and parse a YAML config file.

    ``base`` (typically ``EngineConfig.from_env()``) supplies values for
    keys the file does not set.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) or "(empty)",
    )

    engine = base or EngineConfig()
    _apply_engine_section(engine, raw.get("engine") or {})

    providers: dict[str, ProviderConfig] = {}
    for name, cfg in (raw.get("providers") or {}).items():
        cfg = cfg or {}
        providers[name] = ProviderConfig(
            type=str(cfg.get("type", name)),
            api_key_env=cfg.get("api_key_env"),
            base_url=cfg.get("base_url"),
            model_prefixes=list(cfg.get("model_prefixes") or []),
        )

    models = {
        str(model_id): dict(entry or {})
        for model_id, entry in (raw.get("models") or {}).items()
    }
    logger.info(
        "load_yaml_config: providers=%s models=%d",
        ", ".join(providers) or "(defaults)", len(models),
    )
    return RelayConfig(engine=engine, providers=providers, models=models)


def discover_config(cwd: str | Path | None = None) -> Path | None:
    """Return the first default config file found in ``cwd``."""
    root = Path(cwd) if cwd is not None else Path.cwd()
    for name in DEFAULT_CONFIG_NAMES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None
