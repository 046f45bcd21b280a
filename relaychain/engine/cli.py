"""One-shot terminal runs.

Streams a single prompt through the engine and renders the events with
rich: thinking in a dim panel, tokens as they arrive, and a usage table
at the end.

Usage:
    relaychain "Explain SSE in two sentences"
    relaychain --model claude-3-5-sonnet-20241022 "Review this plan"
"""
from __future__ import annotations

import asyncio
import logging

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from relaychain.adapters.events import CompleteEvent, ErrorEvent, StreamEvent, ThinkingEvent, TokenEvent
from relaychain.adapters.sink import QueueSink
from relaychain.engine.errors import ValidationError
from relaychain.engine.executor import AgentExecutor, AgentRequest
from relaychain.engine.model_registry import ModelRegistry
from relaychain.engine.providers import ProviderRegistry
from relaychain.engine.stream_adapter import StreamAdapter
from relaychain.engine.yaml_config import RelayConfig
from relaychain.shared.services.step_store import InMemoryStepStore

logger = logging.getLogger(__name__)


class EventRenderer:
    """Prints stream events to a rich console."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self._thinking = ""
        self._thinking_shown = False
        self._streaming = False
        self.failed = False

    def _show_thinking(self) -> None:
        if self._thinking_shown or not self._thinking:
            return
        self._thinking_shown = True
        body = Text(self._thinking.strip(), style="dim")
        self.console.print(Panel(body, title="thinking", border_style="dim"))

    def render(self, event: StreamEvent) -> None:
        if isinstance(event, ThinkingEvent):
            if event.thinking:
                # Each event carries the whole trace so far.
                self._thinking = event.thinking
            if not event.is_thinking:
                self._show_thinking()
        elif isinstance(event, TokenEvent):
            self._show_thinking()
            self._streaming = True
            self.console.print(event.content, end="", markup=False, highlight=False)
        elif isinstance(event, CompleteEvent):
            self._show_thinking()
            if self._streaming:
                self.console.print()
            if event.was_skipped:
                self.console.print(f"[yellow]Skipped:[/yellow] {event.skip_reason}")
                return
            self.console.print(self.summary(event))
        elif isinstance(event, ErrorEvent):
            if self._streaming:
                self.console.print()
            self.failed = True
            self.console.print(f"[bold red]Error:[/bold red] {event.error}")

    @staticmethod
    def summary(event: CompleteEvent) -> Table:
        usage = event.token_usage or {}
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column(style="dim")
        table.add_column(justify="right")
        table.add_row("prompt tokens", str(usage.get("promptTokens", 0)))
        table.add_row("completion tokens", str(usage.get("completionTokens", 0)))
        table.add_row("estimated cost", f"${event.estimated_cost or 0.0:.5f}")
        if event.first_token_latency is not None:
            table.add_row("first token", f"{event.first_token_latency:.2f}s")
        return table


async def run_once(
    relay_config: RelayConfig,
    providers: ProviderRegistry,
    models: ModelRegistry,
    model: str,
    prompt: str,
    *,
    renderer: EventRenderer | None = None,
) -> bool:
    """Run one prompt end to end. Returns False if the step failed."""
    config = relay_config.engine
    if not models.is_allowed(model):
        raise ValidationError(f"Unknown model {model}. Try --list-models", "model")

    renderer = renderer or EventRenderer()
    store = InMemoryStepStore()
    session_id = await store.create_session("cli")
    step_id = await store.create_step(session_id, 0, model, prompt)
    executor = AgentExecutor(store, StreamAdapter(providers, models, config), config)
    sink = QueueSink()

    async def produce() -> None:
        try:
            await executor.execute(AgentRequest(step_id=step_id, model=model, prompt=prompt), sink)
        finally:
            await sink.close()

    producer = asyncio.create_task(produce())
    try:
        async for event in sink.events():
            renderer.render(event)
        await producer
    finally:
        if not producer.done():
            producer.cancel()
        await providers.shutdown_all()

    step = await store.get_step(step_id)
    logger.info("CLI run finished step=%s error=%s", step_id, step.error if step else None)
    return not renderer.failed


def print_models(models: ModelRegistry, providers: ProviderRegistry, console: Console | None = None) -> None:
    console = console or Console()
    available = providers.get_availability_report()
    table = Table(title="Models")
    table.add_column("id")
    table.add_column("name")
    table.add_column("provider")
    table.add_column("vision", justify="center")
    table.add_column("key", justify="center")
    for cap in models.list_models():
        ok = available.get(cap.provider)
        table.add_row(
            cap.model_id,
            models.display_name(cap.model_id),
            cap.provider,
            "yes" if cap.vision else "",
            "-" if ok is None else ("yes" if ok else "[red]missing[/red]"),
        )
    console.print(table)
