"""Supervisor turns.

A supervisor turn either delegates @mentioned tasks to existing agent
steps (run one after another, each failure isolated) or, with no
mentions, streams a direct reply from the supervisor model.
"""
from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from relaychain.adapters.events import (
    AgentExecutionComplete,
    AgentExecutionError,
    AgentExecutionInternal,
    ErrorEvent,
    InvalidMentions,
    MentionExecutionStart,
    SupervisorChunk,
    SupervisorComplete,
    SupervisorTurnStart,
)
from relaychain.adapters.sink import Sink, SinkClosed

from .config import EngineConfig
from .errors import NotFoundError, PartialTaskFailure, ProviderError
from .mention_parser import MentionParser, extract_clean_task_prompt
from .models import AgentStep, ChunkKind, ConversationEntry, MentionTask, SupervisorTurn
from .persistence_queue import PersistenceQueue, StreamedContentWriter
from .pricing import calculate_cost
from .scheduler import Scheduler
from .stream_adapter import StreamAdapter

logger = logging.getLogger(__name__)

_MATH_FORMATTING = (
    "When your response contains mathematical expressions, use LaTeX: "
    "inline math as $E = mc^2$, display equations as $$...$$."
)

_MODEL_STRENGTHS: dict[str, str] = {
    "gpt-4o": "Strategic analysis & business insights",
    "gpt-4o-mini": "Rapid problem solving & efficiency",
    "claude-3-5-sonnet-20241022": "Code analysis & ethical reasoning",
    "claude-3-5-haiku-20241022": "Swift, elegant problem solving",
    "claude-sonnet-4-20250514": "Code analysis & ethical reasoning",
    "grok-3": "Real-time data & market intelligence",
    "grok-3-mini": "Quick market insights & trends",
    "o1-preview": "Mathematical reasoning & systematic logic",
    "o1": "Mathematical reasoning & systematic logic",
    "o3": "Advanced reasoning & complex analysis",
    "o4": "Superior reasoning & sophisticated logic",
}


def model_strength(model: str) -> str:
    for prefix in ("openai-", "anthropic-", "xai-"):
        if model.startswith(prefix):
            model = model[len(prefix):]
            break
    return _MODEL_STRENGTHS.get(model, "General problem solving")


def _status(step: AgentStep) -> str:
    if step.is_complete:
        return "Ready"
    if step.is_streaming:
        return "Working"
    return "Queued"


def build_supervisor_prompt(
    user_input: str, steps: list[AgentStep], history: str = "",
) -> str:
    """System prompt for the supervisor model.

    Input containing "@" gets the silent variant: the supervisor only
    reports status, the mentioned agents do the work.
    """
    roster = "\n".join(f"- {s.display_name} ({s.model})" for s in steps)
    if "@" in user_input:
        return (
            "You are a silent background orchestrator. The user is directing "
            "work at specific agents, which run in the background. Do not "
            "announce routing or speak for the agents; give only a brief "
            "status once they finish.\n\n"
            f"Available agents (reference only):\n{roster}\n\n"
            f'Current request: "{user_input}"'
        )

    status = "\n".join(
        f"- {s.display_name} ({s.model}) - {_status(s)} - {model_strength(s.model)}"
        for s in steps
    )
    parts = [
        "You are the supervisor of a chain of LLM agents. Answer the user "
        "as a single coherent system: never expose agent names, numbers "
        "or internal routing, and present results as your own analysis.",
        _MATH_FORMATTING,
        f"Internal agent status (do not share):\n{status}",
    ]
    if history:
        parts.append(f"Previous context:\n{history}")
    parts.append(f'User request: "{user_input}"')
    return "\n\n".join(parts)


def build_agent_task_prompt(
    task: str,
    chain_context: str,
    agent_history: str,
    instruction: str,
) -> str:
    """Prompt for an agent executing a delegated task."""
    clean_instruction = extract_clean_task_prompt(instruction)
    clean_task = extract_clean_task_prompt(task)
    sections: list[str] = []
    if agent_history:
        sections.append(f"Your previous work:\n{agent_history}")
    if chain_context:
        sections.append(f"Context:\n{chain_context}")
    if clean_task and clean_task != clean_instruction:
        sections.append(f"Instruction: {clean_instruction}")
        sections.append(f"Task: {clean_task}")
    else:
        sections.append(f"Task: {clean_instruction}")
    sections.append(_MATH_FORMATTING)
    sections.append(
        "Complete this task directly. Do not mention other agents, "
        "coordination details or your position in any workflow."
    )
    return "\n\n".join(sections)


@dataclass
class TurnResult:
    turn_id: str
    mentions: list[MentionTask] = field(default_factory=list)
    completed: list[MentionTask] = field(default_factory=list)
    failures: list[PartialTaskFailure] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    response: str = ""
    error: str | None = None


class SupervisorOrchestrator:
    """Runs one supervisor turn against a session's agent steps."""

    def __init__(
        self,
        store: Any,
        adapter: StreamAdapter,
        config: EngineConfig | None = None,
        *,
        parser: MentionParser | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._config = config or EngineConfig()
        self._parser = parser or MentionParser()
        self._scheduler = scheduler

    async def run_turn(
        self,
        session_id: str,
        user_input: str,
        sink: Sink,
        *,
        full_context: str | None = None,
    ) -> TurnResult:
        steps = await self._store.list_steps(session_id)
        if not steps:
            raise NotFoundError("agent steps for session", session_id)

        context = full_context or user_input
        turn_id = await self._store.start_supervisor_turn(session_id, user_input)
        result = TurnResult(turn_id=turn_id)
        queue = PersistenceQueue.for_store(
            self._store,
            batch_size=self._config.batch_size,
            batch_interval=self._config.batch_interval_seconds,
            scheduler=self._scheduler,
        )
        logger.info(
            "Supervisor turn start session=%s turn=%s steps=%d",
            session_id, turn_id, len(steps),
        )
        try:
            await sink.push(SupervisorTurnStart(turn_id=turn_id))
            recent = steps[-self._config.supervisor_context_steps:]
            parsed = self._parser.parse(context, recent)
            result.mentions = parsed.mentions
            result.invalid = parsed.invalid

            if parsed.mentions:
                await self._run_mentions(
                    session_id, turn_id, parsed.mentions, context, sink, result,
                )
                names = ", ".join(m.agent_name for m in result.mentions)
                result.response = (
                    f"Coordinating with {names}. Tasks have been routed - "
                    "execution will begin shortly."
                )
                await sink.push(SupervisorChunk(
                    content=result.response, turn_id=turn_id, is_completion=True,
                ))
            else:
                result.response = await self._direct_reply(
                    session_id, turn_id, context, recent, sink, queue,
                )

            await queue.flush()
            await self._store.update_supervisor_turn(turn_id, {
                "supervisor_response": result.response,
                "streamed_content": result.response,
                "parsed_mentions": result.mentions,
                "executed_step_ids": [
                    s.step_id for s in steps
                    if s.index in {m.agent_index for m in result.completed}
                ],
                "is_complete": True,
                "is_streaming": False,
            })
            await sink.push(SupervisorComplete(
                turn_id=turn_id,
                executed_agents=[m.agent_index for m in result.completed],
                failed_agents=[f.agent_index for f in result.failures],
                agent_updates=[
                    {"agentIndex": m.agent_index, "agentName": m.agent_name}
                    for m in result.completed
                ],
            ))
            if parsed.invalid:
                await sink.push(InvalidMentions(turn_id=turn_id, mentions=parsed.invalid))
        except SinkClosed:
            await self._fail_turn(turn_id, "Client disconnected", queue)
            raise
        except Exception as exc:
            logger.exception("Supervisor turn failed turn=%s", turn_id)
            result.error = str(exc) or type(exc).__name__
            await self._fail_turn(turn_id, result.error, queue)
            await sink.push(ErrorEvent(error=result.error))
        finally:
            await queue.close()

        logger.info(
            "Supervisor turn done turn=%s completed=%d failed=%d invalid=%d",
            turn_id, len(result.completed), len(result.failures), len(result.invalid),
        )
        return result

    async def _fail_turn(self, turn_id: str, message: str, queue: PersistenceQueue) -> None:
        try:
            await queue.flush()
            await self._store.update_supervisor_turn(turn_id, {
                "error": message, "is_complete": True, "is_streaming": False,
            })
        except Exception as exc:
            logger.error("Could not mark turn %s failed: %s", turn_id, exc)

    # ── Delegated mentions ──

    async def _run_mentions(
        self,
        session_id: str,
        turn_id: str,
        mentions: list[MentionTask],
        instruction: str,
        sink: Sink,
        result: TurnResult,
    ) -> None:
        await sink.push(MentionExecutionStart(turn_id=turn_id, mention_count=len(mentions)))
        for mention in mentions:
            try:
                await self._run_mention(session_id, turn_id, mention, instruction, sink)
            except SinkClosed:
                raise
            except Exception as exc:
                reason = str(exc) or type(exc).__name__
                failure = PartialTaskFailure(mention.agent_index, mention.agent_name, reason)
                logger.warning("%s", failure)
                result.failures.append(failure)
                await sink.push(AgentExecutionError(
                    turn_id=turn_id,
                    agent_index=mention.agent_index,
                    agent_name=mention.agent_name,
                    error=reason,
                ))
            else:
                result.completed.append(mention)

    async def _run_mention(
        self,
        session_id: str,
        turn_id: str,
        mention: MentionTask,
        instruction: str,
        sink: Sink,
    ) -> None:
        steps = await self._store.list_steps(session_id)
        step = next((s for s in steps if s.index == mention.agent_index), None)
        if step is None:
            raise NotFoundError("agent step", str(mention.agent_index))

        task_text = extract_clean_task_prompt(mention.task_prompt)
        await self._store.begin_execution(step.step_id)
        try:
            await sink.push(AgentExecutionInternal(
                turn_id=turn_id,
                agent_index=mention.agent_index,
                agent_name=mention.agent_name,
                user_prompt=task_text,
            ))
        except SinkClosed:
            await self._store.complete_execution(step.step_id, {"error": "Client disconnected"})
            raise

        try:
            history = await self._store.get_conversation_history(session_id, step.index)
            prompt = build_agent_task_prompt(
                task=mention.task_prompt,
                chain_context="\n\n".join(
                    f"{s.display_name}: {s.latest_output or 'No response'}"
                    for s in steps if s.index != step.index
                ),
                agent_history="\n".join(e.agent_response for e in history if e.agent_response),
                instruction=instruction,
            )

            writer = StreamedContentWriter(self._store, step.step_id)
            response = ""
            usage = None
            finished = False
            async with aclosing(self._adapter.stream(step.model, prompt)) as chunks:
                async for chunk in chunks:
                    if chunk.kind == ChunkKind.CONTENT:
                        response += chunk.content or ""
                        writer.update(response)
                    elif chunk.kind == ChunkKind.COMPLETE:
                        response = chunk.content or response
                        usage = chunk.token_usage
                        finished = True
                    elif chunk.kind == ChunkKind.ERROR:
                        await writer.wait()
                        raise ProviderError(step.model, chunk.content or "Provider error")
            await writer.wait()
            if not finished:
                raise ProviderError(step.model, "Stream ended without completion")
        except Exception as exc:
            await self._store.complete_execution(step.step_id, {
                "error": str(exc) or type(exc).__name__,
            })
            raise

        cost = calculate_cost(
            step.model,
            usage.prompt_tokens if usage else 0,
            usage.completion_tokens if usage else 0,
        )
        await self._store.complete_execution(step.step_id, {
            "response": response,
            "token_usage": usage,
            "estimated_cost": cost,
        })
        await self._store.record_conversation_turn(
            session_id, step.index,
            ConversationEntry(
                user_prompt=task_text, agent_response=response, triggered_by="supervisor",
            ),
        )
        await sink.push(AgentExecutionComplete(
            turn_id=turn_id,
            agent_index=mention.agent_index,
            agent_name=mention.agent_name,
            user_prompt=task_text,
            response=response,
        ))

    # ── Direct reply ──

    async def _direct_reply(
        self,
        session_id: str,
        turn_id: str,
        user_input: str,
        steps: list[AgentStep],
        sink: Sink,
        queue: PersistenceQueue,
    ) -> str:
        turns: list[SupervisorTurn] = await self._store.list_supervisor_turns(session_id)
        earlier = [t for t in turns if t.turn_id != turn_id and t.is_complete]
        history = "\n\n".join(
            f"User: {t.user_input}\nSupervisor: {t.supervisor_response}"
            for t in earlier[-self._config.supervisor_history_turns:]
        )
        prompt = build_supervisor_prompt(user_input, steps, history)
        response = ""
        async with aclosing(self._adapter.stream(self._config.supervisor_model, prompt)) as chunks:
            async for chunk in chunks:
                if chunk.kind == ChunkKind.CONTENT:
                    response += chunk.content or ""
                    await sink.push(SupervisorChunk(content=chunk.content or "", turn_id=turn_id))
                    queue.enqueue("turn", {"streamed_content": response}, turn_id)
                elif chunk.kind == ChunkKind.COMPLETE:
                    return chunk.content or response
                elif chunk.kind == ChunkKind.ERROR:
                    raise ProviderError(self._config.supervisor_model, chunk.content or "Provider error")
        raise ProviderError(self._config.supervisor_model, "Stream ended without completion")
