"""@mention parsing for supervisor turns.

Turns free text such as

    "@Agent1 tighten the intro, @Research Bot find two sources"

into ordered MentionTask values. Each agent can be named by its display
name, "Agent N", "AgentN", "LLM N", "LLMN", the bare number N (all
1-based), or its model id when no other agent shares that model.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

from .models import AgentStep, MentionTask

logger = logging.getLogger(__name__)

_WORD = r"[\w.\-]+"
_MENTION = re.compile(rf"@({_WORD}(?:[ \t]+{_WORD})*)")
_WORD_SPAN = re.compile(r"\S+")
_LEADING = re.compile(r"^[,:;\-\s]+")
_TRAILING = re.compile(r"[,;\s]+$")

_ACTION_VERBS = re.compile(
    r"improve|enhance|refine|update|revise"
    r"|analyze|review|examine|evaluate"
    r"|create|generate|write|draft"
    r"|summarize|explain|clarify",
    re.IGNORECASE,
)

IMPLICIT_TASK = "Continue working on your previous task"

# keyword -> model id fragments, checked in order
CAPABILITY_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("analyze", ("gpt-4", "claude")),
    ("write", ("gpt-4", "claude")),
    ("code", ("gpt-4", "claude")),
    ("image", ("gpt-4-vision", "claude-3")),
    ("creative", ("gpt-4", "claude")),
)

_REFERENCES_MARKER = re.compile(r"--- References ---\s*\[Reference \d+\]")


@dataclass
class ParseResult:
    mentions: list[MentionTask] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    inferred: bool = False


def extract_clean_task_prompt(prompt: str) -> str:
    """Drop a trailing ``--- References ---`` block."""
    if _REFERENCES_MARKER.search(prompt):
        return prompt.split("--- References ---")[0].strip()
    return prompt


class MentionParser:
    """Resolves @mentions against the steps of a session."""

    def build_lookup(self, steps: Iterable[AgentStep]) -> dict[str, AgentStep]:
        steps = list(steps)
        model_counts: dict[str, int] = {}
        for step in steps:
            key = step.model.lower()
            model_counts[key] = model_counts.get(key, 0) + 1

        lookup: dict[str, AgentStep] = {}
        for step in steps:
            n = step.index + 1
            aliases = [
                f"agent {n}", f"agent{n}", f"llm {n}", f"llm{n}", str(n),
            ]
            if model_counts[step.model.lower()] == 1:
                aliases.append(step.model.lower())
            if step.name:
                aliases.insert(0, " ".join(step.name.lower().split()))
            for alias in aliases:
                # Earlier steps keep an alias when two collide.
                lookup.setdefault(alias, step)
        return lookup

    def parse(self, text: str, steps: Iterable[AgentStep]) -> ParseResult:
        steps = list(steps)
        lookup = self.build_lookup(steps)
        max_words = max((len(k.split()) for k in lookup), default=1)
        result = ParseResult()
        claimed: set[int] = set()

        for match in _MENTION.finditer(text):
            spans = list(_WORD_SPAN.finditer(match.group(1)))
            words = [s.group(0) for s in spans]
            resolved: AgentStep | None = None
            end = match.end()
            for count in range(min(len(words), max_words), 0, -1):
                key = " ".join(words[:count]).lower()
                step = lookup.get(key)
                trim = 0
                if step is None:
                    # "@Agent1." ends a sentence
                    stripped = key.rstrip(".-")
                    step = lookup.get(stripped)
                    trim = len(key) - len(stripped)
                if step is not None:
                    resolved = step
                    end = match.start(1) + spans[count - 1].end() - trim
                    break

            if resolved is None:
                result.invalid.append(self._label(words))
                continue
            if resolved.index in claimed:
                logger.debug("Duplicate mention of agent %d ignored", resolved.index)
                continue
            claimed.add(resolved.index)

            next_at = text.find("@", end)
            raw_task = text[end:] if next_at < 0 else text[end:next_at]
            task = _TRAILING.sub("", _LEADING.sub("", raw_task)).strip()
            if not task:
                task = self._implicit_task(text)
            result.mentions.append(MentionTask(
                agent_index=resolved.index,
                agent_name=resolved.display_name,
                task_prompt=task,
            ))

        if not result.mentions:
            inferred = self.infer(text, steps)
            if inferred is not None:
                result.mentions.append(inferred)
                result.inferred = True

        logger.debug(
            "Parsed mentions=%d invalid=%d inferred=%s",
            len(result.mentions), len(result.invalid), result.inferred,
        )
        return result

    @staticmethod
    def _label(words: list[str]) -> str:
        if len(words) > 1 and words[0].lower() in ("agent", "llm") and words[1].isdigit():
            return f"{words[0]} {words[1]}"
        return words[0].rstrip(".-")

    @staticmethod
    def _implicit_task(text: str) -> str:
        if _ACTION_VERBS.search(text):
            return text.strip()
        return IMPLICIT_TASK

    def infer(self, text: str, steps: list[AgentStep]) -> MentionTask | None:
        """Guess a target when the text names no agent explicitly."""
        lowered = text.lower()
        for step in steps:
            if step.model and step.model.lower() in lowered:
                return MentionTask(step.index, step.display_name, text.strip())
        for keyword, fragments in CAPABILITY_HINTS:
            if keyword not in lowered:
                continue
            for step in steps:
                if any(f in step.model.lower() for f in fragments):
                    return MentionTask(step.index, step.display_name, text.strip())
        return None
