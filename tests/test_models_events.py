"""Tests for engine data models and the SSE event wire format."""
from __future__ import annotations

from relaychain.adapters.events import (
    CompleteEvent,
    ErrorEvent,
    SupervisorComplete,
    TokenEvent,
    dict_to_event,
    event_to_dict,
)
from relaychain.engine.models import (
    AgentStep,
    Chunk,
    ChunkKind,
    ConnectionType,
    TokenUsage,
    camelize,
    make_id,
)


def test_token_usage_add_treats_none_as_zero():
    usage = TokenUsage(prompt_tokens=3, completion_tokens=4, total_tokens=7)
    assert usage.add(None) == usage
    assert usage.add(usage) == TokenUsage(6, 8, 14)


def test_token_usage_from_dict_accepts_both_key_styles():
    assert TokenUsage.from_dict({"promptTokens": 5, "completionTokens": 2}) == TokenUsage(5, 2, 7)
    assert TokenUsage.from_dict(
        {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 9}
    ) == TokenUsage(1, 1, 9)
    assert TokenUsage.from_dict(None) is None
    assert TokenUsage.from_dict({}) is None


def test_chunk_constructors():
    assert Chunk.text("hi").kind == ChunkKind.CONTENT
    done = Chunk.done("full", None)
    assert done.is_complete and done.token_usage == TokenUsage()
    assert Chunk.failure("boom").is_error
    thinking = Chunk.reasoning("hmm", is_thinking=False)
    assert thinking.kind == ChunkKind.THINKING and thinking.is_thinking is False


def test_make_id_prefix():
    assert make_id("step").startswith("step_")
    assert make_id() != make_id()


def test_camelize():
    assert camelize({"first_token_latency": 1, "id": 2}) == {"firstTokenLatency": 1, "id": 2}


def test_agent_step_to_dict_is_camel_case_and_plain():
    step = AgentStep(
        index=1,
        model="gpt-4o",
        connection_type=ConnectionType.CONDITIONAL,
        token_usage=TokenUsage(1, 2, 3),
    )
    data = step.to_dict()
    assert data["connectionType"] == "conditional"
    assert data["tokenUsage"] == {"promptTokens": 1, "completionTokens": 2, "totalTokens": 3}
    assert data["isComplete"] is False
    assert "step_id" not in data and data["stepId"] == step.step_id


def test_agent_step_display_name_and_latest_output():
    step = AgentStep(index=2)
    assert step.display_name == "Agent 3"
    step.streamed_content = "partial"
    assert step.latest_output == "partial"
    step.response = "final"
    assert step.latest_output == "final"
    step.name = "Critic"
    assert step.display_name == "Critic"


def test_event_to_dict_uses_type_key_and_drops_none():
    data = event_to_dict(TokenEvent(content="Hel"))
    assert data["type"] == "token"
    assert data["content"] == "Hel"
    assert "stepId" not in data
    assert "eventType" not in data


def test_complete_event_wire_keys():
    data = event_to_dict(CompleteEvent(
        content="done", estimated_cost=0.01, was_skipped=True, skip_reason="Condition not met",
    ))
    assert data["wasSkipped"] is True
    assert data["skipReason"] == "Condition not met"
    assert data["estimatedCost"] == 0.01
    assert "tokenUsage" not in data


def test_dict_to_event_restores_typed_event():
    wire = event_to_dict(SupervisorComplete(
        turn_id="turn_1", executed_agents=[0, 2], failed_agents=[1],
    ))
    event = dict_to_event(wire)
    assert isinstance(event, SupervisorComplete)
    assert event.executed_agents == [0, 2]
    assert event.failed_agents == [1]


def test_dict_to_event_error():
    event = dict_to_event({"type": "error", "error": "nope"})
    assert isinstance(event, ErrorEvent)
    assert event.error == "nope"
