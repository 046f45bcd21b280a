"""MentionParser tests."""
from __future__ import annotations

import pytest

from relaychain.engine.mention_parser import IMPLICIT_TASK, MentionParser, extract_clean_task_prompt
from relaychain.engine.models import AgentStep


@pytest.fixture
def parser():
    return MentionParser()


def _steps(*models: str, names: dict[int, str] | None = None) -> list[AgentStep]:
    names = names or {}
    return [
        AgentStep(index=i, model=model, name=names.get(i))
        for i, model in enumerate(models)
    ]


def test_single_mention(parser):
    result = parser.parse("@Agent1 analyze this text", _steps("gpt-4o", "gpt-4o"))
    assert len(result.mentions) == 1
    mention = result.mentions[0]
    assert mention.agent_index == 0
    assert mention.agent_name == "Agent 1"
    assert mention.task_prompt == "analyze this text"
    assert result.invalid == []
    assert result.inferred is False


def test_two_mentions_keep_their_own_tasks(parser):
    result = parser.parse("@Agent2 summarize @Agent1 rewrite", _steps("gpt-4o", "gpt-4o"))
    assert [(m.agent_index, m.task_prompt) for m in result.mentions] == [
        (1, "summarize"),
        (0, "rewrite"),
    ]


@pytest.mark.parametrize("alias", ["Agent 2", "agent2", "LLM 2", "llm2", "2", "claude-3-5-haiku-20241022"])
def test_aliases_resolve(parser, alias):
    steps = _steps("gpt-4o", "claude-3-5-haiku-20241022")
    result = parser.parse(f"@{alias} please check the numbers", steps)
    assert [m.agent_index for m in result.mentions] == [1]
    assert result.mentions[0].task_prompt == "please check the numbers"


def test_shared_model_is_not_an_alias(parser):
    result = parser.parse("@gpt-4o do it", _steps("gpt-4o", "gpt-4o"))
    assert result.invalid == ["gpt-4o"]
    # Nothing resolved, so the model substring picks the first match.
    assert result.inferred is True
    assert [m.agent_index for m in result.mentions] == [0]


def test_multi_word_display_name(parser):
    steps = _steps("gpt-4o", "gpt-4o-mini", names={1: "Research Bot"})
    result = parser.parse("@Research Bot find two sources, thanks", steps)
    assert result.mentions[0].agent_index == 1
    assert result.mentions[0].agent_name == "Research Bot"
    assert result.mentions[0].task_prompt == "find two sources, thanks"


def test_separator_punctuation_is_trimmed(parser):
    result = parser.parse("@Agent1: tidy up the intro, @Agent2 - add a summary", _steps("a", "b"))
    assert [m.task_prompt for m in result.mentions] == ["tidy up the intro", "add a summary"]


def test_duplicate_target_first_wins(parser):
    result = parser.parse("@Agent1 first task @1 second task", _steps("gpt-4o", "gpt-4o"))
    assert len(result.mentions) == 1
    assert result.mentions[0].task_prompt == "first task"


def test_unknown_mention_is_invalid(parser):
    result = parser.parse("@Agent1 go @Ghost boo", _steps("gpt-4o"))
    assert [m.agent_index for m in result.mentions] == [0]
    assert result.mentions[0].task_prompt == "go"
    assert result.invalid == ["Ghost"]


def test_out_of_range_agent_number_label(parser):
    result = parser.parse("@Agent 7 do it", _steps("gpt-4o"))
    assert result.invalid == ["Agent 7"]


def test_empty_task_with_action_verb_uses_full_text(parser):
    result = parser.parse("Please review the draft. @Agent2", _steps("a", "b"))
    assert result.mentions[0].task_prompt == "Please review the draft. @Agent2"


def test_empty_task_without_verb_continues(parser):
    result = parser.parse("@Agent2", _steps("a", "b"))
    assert result.mentions[0].task_prompt == IMPLICIT_TASK


def test_inference_by_model_substring(parser):
    steps = _steps("gpt-4o", "claude-3-5-haiku-20241022")
    result = parser.parse("ask claude-3-5-haiku-20241022 about the budget", steps)
    assert result.inferred is True
    assert result.mentions[0].agent_index == 1
    assert result.mentions[0].task_prompt == "ask claude-3-5-haiku-20241022 about the budget"


def test_inference_by_capability_keyword(parser):
    steps = _steps("grok-beta", "claude-3-5-haiku-20241022")
    result = parser.parse("can someone analyze the churn numbers", steps)
    assert result.inferred is True
    assert result.mentions[0].agent_index == 1


def test_no_mentions_and_nothing_to_infer(parser):
    result = parser.parse("hello there", _steps("grok-beta"))
    assert result.mentions == []
    assert result.invalid == []
    assert result.inferred is False


def test_extract_clean_task_prompt():
    text = "Summarize it\n\n--- References ---\n[Reference 1] some doc"
    assert extract_clean_task_prompt(text) == "Summarize it"
    assert extract_clean_task_prompt("plain") == "plain"
