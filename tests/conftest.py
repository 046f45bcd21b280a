"""Shared fixtures: a scripted provider and a fresh store per test."""
from __future__ import annotations

from typing import Any, AsyncIterator

import pytest

from relaychain.engine.config import EngineConfig
from relaychain.engine.model_registry import build_model_registry
from relaychain.engine.providers import Provider, ProviderDelta, ProviderRegistry, StreamRequest
from relaychain.engine.scheduler import ManualScheduler
from relaychain.engine.stream_adapter import StreamAdapter
from relaychain.shared.services.step_store import InMemoryStepStore


class ScriptedProvider(Provider):
    """Plays back a fixed list of deltas per model.

    A script item that is an exception is raised at that point in the
    stream. Unknown models get ``default``.
    """

    def __init__(
        self,
        scripts: dict[str, list[Any]] | None = None,
        *,
        default: list[Any] | None = None,
        provider_name: str = "openai",
    ) -> None:
        super().__init__(api_key_env="RELAY_TEST_API_KEY", base_url="http://scripted.invalid")
        self.scripts = scripts or {}
        self.default = default if default is not None else [ProviderDelta(text="ok")]
        self.requests: list[StreamRequest] = []
        self._name = provider_name

    @property
    def name(self) -> str:
        return self._name

    def supports(self, model: str) -> bool:
        return True

    async def stream(self, request: StreamRequest) -> AsyncIterator[ProviderDelta]:
        self.requests.append(request)
        for item in self.scripts.get(request.model, self.default):
            if isinstance(item, BaseException):
                raise item
            yield item


@pytest.fixture
def store() -> InMemoryStepStore:
    return InMemoryStepStore()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler(start=1000.0, auto_advance=True)


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(thinking_enabled=False)


@pytest.fixture
def scripted():
    """Factory: ``scripted(scripts, **kw) -> (adapter, provider)``."""

    def build(
        scripts: dict[str, list[Any]] | None = None,
        *,
        default: list[Any] | None = None,
        config: EngineConfig | None = None,
    ) -> tuple[StreamAdapter, ScriptedProvider]:
        provider = ScriptedProvider(scripts, default=default)
        registry = ProviderRegistry()
        registry.register("openai", provider)
        adapter = StreamAdapter(registry, build_model_registry(), config or EngineConfig())
        return adapter, provider

    return build
