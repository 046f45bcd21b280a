"""Request validation for the HTTP surface.

Each ``validate_*`` function takes the decoded JSON body and returns a
typed request, or raises ValidationError before any stream is opened.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .conditions import validate_condition
from .config import EngineConfig
from .errors import ValidationError
from .executor import AgentRequest, ChainAgentSpec
from .model_registry import ModelRegistry
from .models import ConnectionType, ImageAttachment

_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
MAX_IMAGES = 10


@dataclass
class SupervisorRequest:
    session_id: str
    user_input: str
    full_context: str | None = None


@dataclass
class ChainRequest:
    session_id: str
    agents: list[ChainAgentSpec]


def require_object(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def validate_prompt(prompt: Any, max_chars: int = 50_000, field: str = "prompt") -> str:
    if not isinstance(prompt, str) or not prompt:
        raise ValidationError("Prompt is required and must be a string", field)
    if len(prompt) > max_chars:
        raise ValidationError(f"Prompt too long. Maximum {max_chars:,} characters", field)
    if not prompt.strip():
        raise ValidationError("Prompt cannot be empty", field)
    return prompt.strip()


def validate_model(model: Any, registry: ModelRegistry) -> str:
    if not isinstance(model, str) or not model:
        raise ValidationError("Model is required and must be a string", "model")
    if not registry.is_allowed(model):
        raise ValidationError(
            f"Invalid model. Allowed models: {', '.join(registry.allowed_ids())}", "model",
        )
    return model


def validate_identifier(value: Any, field: str) -> str:
    label = "Session ID" if field == "sessionId" else "Step ID"
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{label} is required and must be a string", field)
    if not _ID_PATTERN.match(value):
        raise ValidationError(f"Invalid {label.lower()} format", field)
    return value


def parse_images(raw: Any) -> list[ImageAttachment]:
    """Accepts URL strings or ``{"url", "mimeType"}`` objects."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("images must be a list", "images")
    if len(raw) > MAX_IMAGES:
        raise ValidationError(f"At most {MAX_IMAGES} images allowed", "images")
    images = []
    for item in raw:
        if isinstance(item, str) and item:
            images.append(ImageAttachment(url=item))
        elif isinstance(item, dict) and isinstance(item.get("url"), str) and item["url"]:
            images.append(ImageAttachment(
                url=item["url"], mime_type=item.get("mimeType") or item.get("mime_type"),
            ))
        else:
            raise ValidationError("Each image needs a url", "images")
    return images


def _options(body: dict[str, Any], key: str) -> dict[str, Any]:
    value = body.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{key} must be an object", key)
    return value


def validate_agent_request(
    body: Any, registry: ModelRegistry, config: EngineConfig | None = None,
) -> AgentRequest:
    config = config or EngineConfig()
    body = require_object(body)
    missing = [f for f in ("stepId", "model", "prompt") if not body.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    model = validate_model(body["model"], registry)
    images = parse_images(body.get("images"))
    if images and not registry.supports_vision(model):
        raise ValidationError(f"Model {model} does not accept images", "images")
    audio = body.get("audioTranscription")
    if audio is not None and not isinstance(audio, str):
        raise ValidationError("audioTranscription must be a string", "audioTranscription")

    return AgentRequest(
        step_id=validate_identifier(body["stepId"], "stepId"),
        model=model,
        prompt=validate_prompt(body["prompt"], config.prompt_max_chars),
        images=images,
        audio_transcription=audio or None,
        web_search_results=body.get("webSearchResults"),
        grok_options=_options(body, "grokOptions"),
        claude_options=_options(body, "claudeOptions"),
    )


def validate_parallel_request(
    body: Any, registry: ModelRegistry, config: EngineConfig | None = None,
) -> AgentRequest:
    body = require_object(body)
    if body.get("isParallel") is not True:
        raise ValidationError("Parallel execution requires isParallel: true", "isParallel")
    return validate_agent_request(body, registry, config)


def validate_supervisor_request(body: Any) -> SupervisorRequest:
    body = require_object(body)
    missing = [f for f in ("sessionId", "userInput") if not body.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    user_input = body["userInput"]
    if not isinstance(user_input, str) or not user_input.strip():
        raise ValidationError("userInput must be a non-empty string", "userInput")
    full_context = body.get("fullContext")
    if full_context is not None and not isinstance(full_context, str):
        raise ValidationError("fullContext must be a string", "fullContext")
    return SupervisorRequest(
        session_id=validate_identifier(body["sessionId"], "sessionId"),
        user_input=user_input,
        full_context=full_context or None,
    )


def _connection_type(raw: Any, index: int) -> ConnectionType:
    if raw is None:
        return ConnectionType.DIRECT
    try:
        return ConnectionType(raw)
    except ValueError:
        allowed = ", ".join(c.value for c in ConnectionType)
        raise ValidationError(
            f"Agent {index + 1}: invalid connection type {raw!r}. Allowed: {allowed}",
            "agents",
        ) from None


def validate_chain_request(
    body: Any, registry: ModelRegistry, config: EngineConfig | None = None,
) -> ChainRequest:
    config = config or EngineConfig()
    body = require_object(body)
    session_id = validate_identifier(body.get("sessionId"), "sessionId")
    agents = body.get("agents")
    if not isinstance(agents, list) or not agents:
        raise ValidationError("At least one agent is required", "agents")
    if len(agents) > config.max_chain_agents:
        raise ValidationError(f"Maximum {config.max_chain_agents} agents allowed", "agents")

    specs = []
    for i, raw in enumerate(agents):
        if not isinstance(raw, dict) or not raw.get("model") or not raw.get("prompt"):
            raise ValidationError(f"Agent {i + 1} missing required model or prompt", "agents")
        try:
            model = validate_model(raw["model"], registry)
            prompt = validate_prompt(raw["prompt"], config.prompt_max_chars)
        except ValidationError as exc:
            raise ValidationError(f"Agent {i + 1}: {exc}", "agents") from None

        connection = _connection_type(raw.get("connectionType"), i)
        condition = raw.get("condition") or raw.get("connectionCondition")
        if connection == ConnectionType.CONDITIONAL:
            if not isinstance(condition, str) or not condition.strip():
                raise ValidationError(f"Agent {i + 1}: conditional connection needs a condition", "agents")
            ok, message = validate_condition(condition)
            if not ok:
                raise ValidationError(f"Agent {i + 1}: {message}", "agents")

        source = raw.get("sourceAgentIndex")
        if source is not None and (not isinstance(source, int) or not 0 <= source < i):
            raise ValidationError(
                f"Agent {i + 1}: sourceAgentIndex must point at an earlier agent", "agents",
            )

        name = raw.get("name")
        specs.append(ChainAgentSpec(
            model=model,
            prompt=prompt,
            name=name if isinstance(name, str) and name.strip() else None,
            connection_type=connection,
            connection_condition=condition if connection == ConnectionType.CONDITIONAL else None,
            source_agent_index=source,
        ))
    return ChainRequest(session_id=session_id, agents=specs)
