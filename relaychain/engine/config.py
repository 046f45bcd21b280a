"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars or
the ``engine:`` section of a YAML config file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class EngineConfig:
    """Streaming engine configuration."""

    # Model defaults
    default_model: str = "gpt-4o"
    # Model used for direct supervisor replies (no @mentions).
    supervisor_model: str = "gpt-4o"
    max_tokens: int = 4000
    temperature: float = 0.7
    # Upper bound for one provider HTTP call, including the whole stream.
    request_timeout_seconds: float = 120.0

    # Write-behind persistence queue
    batch_size: int = 10
    batch_interval_ms: int = 50

    # Thinking animation. When disabled, only genuine traces are relayed.
    thinking_enabled: bool = True

    # Request validation
    prompt_max_chars: int = 50_000
    max_chain_agents: int = 5
    # Additional model ids accepted on top of the built-in allow-list.
    extra_models: list[str] = field(default_factory=list)

    # Supervisor context windows
    supervisor_context_steps: int = 5
    supervisor_history_turns: int = 3

    # Rate limiting (per caller identity)
    rate_limit_requests: int = 10
    rate_limit_window_seconds: float = 60.0

    # Bearer tokens accepted by the server. Empty disables auth.
    auth_tokens: list[str] = field(default_factory=list, repr=False)

    # JSON store directory. None keeps everything in memory.
    store_path: str | None = None
    # Streamed content reaches the JSON files at most this often.
    store_content_flush_seconds: float = 0.5

    # Logging
    log_level: str = "INFO"

    @property
    def batch_interval_seconds(self) -> float:
        return self.batch_interval_ms / 1000.0

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from RELAY_* environment variables."""
        relay_vars = sorted(
            k for k in os.environ if k.startswith("RELAY_")
        )
        if relay_vars:
            # Values are not logged; RELAY_AUTH_TOKENS holds secrets.
            logger.info(
                "EngineConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(relay_vars),
            )
        else:
            logger.debug("EngineConfig.from_env: no RELAY_* env vars set, using defaults")

        config = cls(
            default_model=os.getenv("RELAY_DEFAULT_MODEL", cls.default_model),
            supervisor_model=os.getenv(
                "RELAY_SUPERVISOR_MODEL", cls.supervisor_model
            ),
            max_tokens=int(os.getenv("RELAY_MAX_TOKENS", str(cls.max_tokens))),
            temperature=float(os.getenv(
                "RELAY_TEMPERATURE", str(cls.temperature)
            )),
            request_timeout_seconds=float(os.getenv(
                "RELAY_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            )),
            batch_size=int(os.getenv("RELAY_BATCH_SIZE", str(cls.batch_size))),
            batch_interval_ms=int(os.getenv(
                "RELAY_BATCH_INTERVAL_MS", str(cls.batch_interval_ms)
            )),
            thinking_enabled=_env_bool(
                "RELAY_THINKING_ENABLED", cls.thinking_enabled
            ),
            prompt_max_chars=int(os.getenv(
                "RELAY_PROMPT_MAX_CHARS", str(cls.prompt_max_chars)
            )),
            max_chain_agents=int(os.getenv(
                "RELAY_MAX_CHAIN_AGENTS", str(cls.max_chain_agents)
            )),
            extra_models=_env_list("RELAY_EXTRA_MODELS"),
            rate_limit_requests=int(os.getenv(
                "RELAY_RATE_LIMIT", str(cls.rate_limit_requests)
            )),
            rate_limit_window_seconds=float(os.getenv(
                "RELAY_RATE_LIMIT_WINDOW", str(cls.rate_limit_window_seconds)
            )),
            auth_tokens=_env_list("RELAY_AUTH_TOKENS"),
            store_path=os.getenv("RELAY_STORE_PATH") or None,
            store_content_flush_seconds=float(os.getenv(
                "RELAY_STORE_CONTENT_FLUSH", str(cls.store_content_flush_seconds)
            )),
            log_level=os.getenv("RELAY_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: model=%s supervisor=%s batch=%d/%dms store=%s",
            config.default_model, config.supervisor_model,
            config.batch_size, config.batch_interval_ms,
            config.store_path or "<memory>",
        )
        return config
