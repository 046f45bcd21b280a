"""Step execution.

AgentExecutor runs one AgentStep end to end: condition check, thinking,
token streaming, cost, and the final durable write. ChainRunner creates
the steps of a chain and feeds each one the output of the steps before
it according to its connection type.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from relaychain.adapters.events import CompleteEvent, ErrorEvent, ThinkingEvent, TokenEvent
from relaychain.adapters.sink import Sink, SinkClosed

from .conditions import evaluate_condition
from .config import EngineConfig
from .errors import NotFoundError
from .models import AgentStep, ChunkKind, ConnectionType, ImageAttachment, TokenUsage
from .persistence_queue import PersistenceQueue
from .pricing import calculate_cost
from .scheduler import AsyncioScheduler, Scheduler
from .stream_adapter import StreamAdapter, StreamOptions
from .thinking import ThinkingManager

logger = logging.getLogger(__name__)

SKIP_REASON = "Condition not met"


@dataclass
class AgentRequest:
    """One step execution as requested by a client or a chain."""
    step_id: str
    model: str
    prompt: str
    images: list[ImageAttachment] = field(default_factory=list)
    audio_transcription: str | None = None
    web_search_results: Any = None
    grok_options: dict[str, Any] = field(default_factory=dict)
    claude_options: dict[str, Any] = field(default_factory=dict)
    # Text a conditional connection is evaluated against. None means
    # "use the source step's latest output".
    condition_input: str | None = None


@dataclass
class ExecutionResult:
    step_id: str
    content: str = ""
    skipped: bool = False
    error: str | None = None
    token_usage: TokenUsage | None = None
    estimated_cost: float | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class AgentExecutor:
    """Drives StreamAdapter and ThinkingManager for one step at a time."""

    def __init__(
        self,
        store: Any,
        adapter: StreamAdapter,
        config: EngineConfig | None = None,
        *,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._config = config or EngineConfig()
        self._scheduler = scheduler or AsyncioScheduler()

    def _new_queue(self) -> PersistenceQueue:
        return PersistenceQueue.for_store(
            self._store,
            batch_size=self._config.batch_size,
            batch_interval=self._config.batch_interval_seconds,
            scheduler=self._scheduler,
        )

    async def execute(self, request: AgentRequest, sink: Sink) -> ExecutionResult:
        step = await self._store.get_step(request.step_id)
        if step is None:
            raise NotFoundError("step", request.step_id)

        if step.connection_type == ConnectionType.CONDITIONAL and step.connection_condition:
            source = request.condition_input
            if source is None:
                source = await self._source_output(step)
            if not evaluate_condition(step.connection_condition, source):
                return await self._skip(step, sink)

        tag = {"step_id": step.step_id, "agent_index": step.index}
        queue = self._new_queue()
        options = StreamOptions(
            audio_transcription=request.audio_transcription,
            web_search_results=request.web_search_results,
            grok_options=request.grok_options,
            claude_options=request.claude_options,
        )
        provider = self._adapter.provider_name(request.model)
        thinking = ThinkingManager(
            step.step_id,
            provider=provider,
            model=request.model,
            queue=queue,
            store=self._store,
            scheduler=self._scheduler,
            # Scripted phases only stand in when no real trace is coming.
            simulate=self._config.thinking_enabled and not options.requests_reasoning(provider),
        )

        await self._store.begin_execution(step.step_id, {"model": request.model})
        started = self._scheduler.now()
        logger.info(
            "Step execution start step=%s index=%d model=%s",
            step.step_id, step.index, request.model,
        )

        content = ""
        first_token_latency: float | None = None
        final = None
        error: str | None = None
        chunks = thinking.run(self._adapter.stream(
            request.model, request.prompt, request.images, options=options,
        ))
        try:
            async for chunk in chunks:
                if chunk.kind == ChunkKind.THINKING:
                    await sink.push(ThinkingEvent(
                        thinking=chunk.thinking or "",
                        is_thinking=bool(chunk.is_thinking),
                        **tag,
                    ))
                elif chunk.kind == ChunkKind.CONTENT:
                    if first_token_latency is None:
                        first_token_latency = self._scheduler.now() - started
                        queue.enqueue(
                            "status",
                            {"first_token_latency": first_token_latency, "is_streaming": True},
                            step.step_id,
                        )
                    content += chunk.content or ""
                    await sink.push(TokenEvent(content=chunk.content or "", **tag))
                    thinking.update_stream_content(content)
                elif chunk.kind == ChunkKind.COMPLETE:
                    final = chunk
                elif chunk.kind == ChunkKind.ERROR:
                    error = chunk.content or "Provider error"

            if final is None and error is None:
                error = "Stream ended without a completion"

            if error is not None:
                await thinking.complete_thinking()
                await sink.push(ErrorEvent(error=error, **tag))
                await self._store.complete_execution(step.step_id, {
                    "error": error, "response": content or None,
                })
                logger.warning("Step execution failed step=%s: %s", step.step_id, error)
                return ExecutionResult(step.step_id, content=content, error=error)

            text = final.content if final.content is not None else content
            usage = final.token_usage or TokenUsage()
            cost = calculate_cost(request.model, usage.prompt_tokens, usage.completion_tokens)
            await sink.push(CompleteEvent(
                content=text,
                thinking=thinking.state.full_content or None,
                token_usage=usage.to_dict(),
                estimated_cost=cost,
                first_token_latency=first_token_latency,
                **tag,
            ))
            await thinking.complete_thinking()
            await self._store.complete_execution(step.step_id, {
                "response": text,
                "thinking": thinking.state.full_content or None,
                "token_usage": usage,
                "estimated_cost": cost,
                "first_token_latency": first_token_latency,
            })
            logger.info(
                "Step execution complete step=%s tokens=%d cost=%.5f",
                step.step_id, usage.total_tokens, cost,
            )
            return ExecutionResult(
                step.step_id, content=text, token_usage=usage, estimated_cost=cost,
            )
        except SinkClosed:
            await self._mark_failed(step.step_id, "Client disconnected", content)
            raise
        except asyncio.CancelledError:
            await self._mark_failed(step.step_id, "Request cancelled", content)
            raise
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception("Step execution crashed step=%s", step.step_id)
            await self._mark_failed(step.step_id, message, content)
            await sink.push(ErrorEvent(error=message, **tag))
            return ExecutionResult(step.step_id, content=content, error=message)
        finally:
            await chunks.aclose()
            await thinking.cleanup()
            await queue.close()

    async def _mark_failed(self, step_id: str, message: str, content: str) -> None:
        try:
            await self._store.complete_execution(step_id, {
                "error": message, "response": content or None,
            })
        except Exception as exc:
            logger.error("Could not mark step %s failed: %s", step_id, exc)

    async def _source_output(self, step: AgentStep) -> str:
        source_index = (
            step.source_agent_index if step.source_agent_index is not None else step.index - 1
        )
        for other in await self._store.list_steps(step.session_id):
            if other.index == source_index and other.step_id != step.step_id:
                return other.latest_output
        return ""

    async def _skip(self, step: AgentStep, sink: Sink) -> ExecutionResult:
        logger.info(
            "Step skipped step=%s condition=%r", step.step_id, step.connection_condition,
        )
        await self._store.complete_execution(step.step_id, {
            "was_skipped": True, "skip_reason": SKIP_REASON,
        })
        await sink.push(CompleteEvent(
            content="",
            was_skipped=True,
            skip_reason=SKIP_REASON,
            step_id=step.step_id,
            agent_index=step.index,
        ))
        return ExecutionResult(step.step_id, skipped=True)


# ── Chains ──


@dataclass
class ChainAgentSpec:
    model: str
    prompt: str
    name: str | None = None
    connection_type: ConnectionType = ConnectionType.DIRECT
    connection_condition: str | None = None
    source_agent_index: int | None = None


def group_agents(agents: list[ChainAgentSpec]) -> list[list[int]]:
    """Index groups: consecutive parallel agents share a group."""
    groups: list[list[int]] = []
    for i, agent in enumerate(agents):
        parallel = agent.connection_type == ConnectionType.PARALLEL
        if parallel and groups and agents[groups[-1][0]].connection_type == ConnectionType.PARALLEL:
            groups[-1].append(i)
        else:
            groups.append([i])
    return groups


def format_parallel_results(
    agents: list[ChainAgentSpec], indexes: list[int], results: list[ExecutionResult],
) -> str:
    lines = ["--- Parallel Analysis Results ---", ""]
    for i, result in zip(indexes, results):
        agent = agents[i]
        label = f"{agent.name or f'Agent {i + 1}'} ({agent.model})"
        if result.success:
            lines.append(f"**{label}:**\n{result.content}\n")
        else:
            lines.append(f"**{label} - FAILED:**\n{result.error}\n")
    lines.append("--- End Parallel Results ---")
    return "\n".join(lines)


class ChainRunner:
    """Creates and runs every step of a chain in one session."""

    def __init__(self, store: Any, executor: AgentExecutor) -> None:
        self._store = store
        self._executor = executor

    async def run(
        self, session_id: str, agents: list[ChainAgentSpec], sink: Sink,
    ) -> list[ExecutionResult]:
        offset = len(await self._store.list_steps(session_id))
        step_ids = []
        for i, agent in enumerate(agents):
            step_ids.append(await self._store.create_step(
                session_id,
                offset + i,
                agent.model,
                agent.prompt,
                name=agent.name,
                connection_type=agent.connection_type,
                connection_condition=agent.connection_condition,
                source_agent_index=(
                    None if agent.source_agent_index is None
                    else offset + agent.source_agent_index
                ),
            ))
        logger.info("Chain start session=%s agents=%d", session_id, len(agents))

        results: list[ExecutionResult | None] = [None] * len(agents)
        last_output = ""
        for group in group_agents(agents):
            first = agents[group[0]]
            if first.connection_type == ConnectionType.PARALLEL:
                requests = [
                    AgentRequest(
                        step_id=step_ids[i],
                        model=agents[i].model,
                        prompt=(
                            f"{last_output}\n\nNow, based on that context: {agents[i].prompt}"
                            if last_output else agents[i].prompt
                        ),
                    )
                    for i in group
                ]
                outcomes = await asyncio.gather(
                    *(self._executor.execute(r, sink) for r in requests)
                )
                for i, outcome in zip(group, outcomes):
                    results[i] = outcome
                last_output = format_parallel_results(agents, group, list(outcomes))
                continue

            i = group[0]
            prompt = first.prompt
            if first.connection_type == ConnectionType.COLLABORATIVE:
                context = await self._conversation_context(session_id, offset + i)
                if context:
                    prompt = f"{context}{first.prompt}"
            elif i > 0 and last_output:
                prompt = (
                    f"Previous agent's output:\n{last_output}\n\n"
                    f"Now, based on that output: {first.prompt}"
                )
            outcome = await self._executor.execute(
                AgentRequest(
                    step_id=step_ids[i],
                    model=first.model,
                    prompt=prompt,
                    condition_input=(
                        last_output if first.source_agent_index is None else None
                    ),
                ),
                sink,
            )
            results[i] = outcome
            if not outcome.skipped:
                last_output = outcome.content

        logger.info(
            "Chain done session=%s ok=%d failed=%d skipped=%d",
            session_id,
            sum(1 for r in results if r and r.success and not r.skipped),
            sum(1 for r in results if r and not r.success),
            sum(1 for r in results if r and r.skipped),
        )
        return [r for r in results if r is not None]

    async def _conversation_context(self, session_id: str, before_index: int) -> str:
        previous = [
            s for s in await self._store.list_steps(session_id) if s.index < before_index
        ]
        if not previous:
            return ""
        lines = ["Previous conversation:", ""]
        for step in previous:
            label = f"Agent {step.index + 1} ({step.model})"
            if step.was_skipped:
                lines.append(f"{label}: [Skipped - {step.skip_reason}]\n")
                continue
            lines.append(f"{label}:\nPrompt: {step.prompt}")
            if step.latest_output:
                lines.append(f"Response: {step.latest_output}\n")
        lines.append("Now, based on the above conversation, please respond to the following:\n\n")
        return "\n".join(lines)
