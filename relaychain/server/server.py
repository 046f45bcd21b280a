"""HTTP + SSE server for relaychain.

Every streaming endpoint validates, authenticates and rate-limits the
request first and answers problems with a JSON error. Only then does it
open the event stream, after which every failure is reported as one
``error`` event followed by ``[DONE]``.

Usage:
    relaychain --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import os
import sys
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from relaychain.adapters.events import ErrorEvent
from relaychain.adapters.sink import SinkClosed
from relaychain.engine.config import EngineConfig
from relaychain.engine.errors import AuthError, NotFoundError, RelayError, ValidationError
from relaychain.engine.executor import AgentExecutor, ChainRunner
from relaychain.engine.model_registry import ModelRegistry, build_model_registry
from relaychain.engine.models import ConnectionType
from relaychain.engine.providers import ProviderRegistry, build_provider_registry
from relaychain.engine.rate_limiter import RateLimiter
from relaychain.engine.stream_adapter import StreamAdapter
from relaychain.engine.supervisor import SupervisorOrchestrator
from relaychain.engine.validation import (
    require_object,
    validate_agent_request,
    validate_chain_request,
    validate_identifier,
    validate_model,
    validate_parallel_request,
    validate_prompt,
    validate_supervisor_request,
)
from relaychain.engine.yaml_config import RelayConfig
from relaychain.server.sse import SSE_HEADERS, SSEResponseSink
from relaychain.shared.services.step_store import InMemoryStepStore, JsonFileStepStore, StepStore

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = frozenset({"/health"})


class RelayServer:
    """aiohttp application wiring the engine to HTTP.

    Holds no per-request state: each request builds its own sink and
    write queue, and the store is the only thing shared between them.
    """

    def __init__(
        self,
        store: StepStore,
        providers: ProviderRegistry,
        models: ModelRegistry | None = None,
        config: EngineConfig | None = None,
        *,
        host: str = "127.0.0.1",
        port: int = 8787,
        rate_limiter: RateLimiter | None = None,
        scheduler=None,
    ) -> None:
        self._host = host
        self._port = port
        self._store = store
        self._providers = providers
        self._models = models or build_model_registry()
        self._config = config or EngineConfig()
        self._started_at = time.time()
        self._adapter = StreamAdapter(providers, self._models, self._config)
        self._executor = AgentExecutor(
            store, self._adapter, self._config, scheduler=scheduler,
        )
        self._chains = ChainRunner(store, self._executor)
        self._supervisor = SupervisorOrchestrator(
            store, self._adapter, self._config, scheduler=scheduler,
        )
        self._rate_limiter = rate_limiter or RateLimiter(
            self._config.rate_limit_requests,
            self._config.rate_limit_window_seconds,
        )
        self._app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._error_middleware,
            self._auth_middleware,
        ])
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()

    @classmethod
    def from_config(
        cls, relay_config: RelayConfig, *, host: str = "127.0.0.1", port: int = 8787,
    ) -> RelayServer:
        config = relay_config.engine
        store: StepStore = (
            JsonFileStepStore(
                config.store_path, content_flush_delay=config.store_content_flush_seconds,
            )
            if config.store_path else InMemoryStepStore()
        )
        providers = build_provider_registry(
            relay_config.providers, timeout_seconds=config.request_timeout_seconds,
        )
        models = build_model_registry(relay_config.models, config.extra_models)
        return cls(store, providers, models, config, host=host, port=port)

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-relay-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except RelayError as exc:
            headers = {}
            retry_after = getattr(exc, "retry_after", None)
            if retry_after is not None:
                headers["Retry-After"] = str(max(1, int(round(retry_after))))
            logger.info(
                "HTTP %s %s req=%s rejected status=%d: %s",
                request.method, request.path, request.get("req_id", "?"), exc.status, exc,
            )
            return web.json_response({"error": str(exc)}, status=exc.status, headers=headers)

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if self._config.auth_tokens and request.path not in _PUBLIC_PATHS:
            request["identity"] = self._authenticate(request)
        return await handler(request)

    def _authenticate(self, request: web.Request) -> str:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise AuthError("Authentication required")
        for accepted in self._config.auth_tokens:
            if hmac.compare_digest(token.strip(), accepted):
                return "token:" + hashlib.sha256(accepted.encode()).hexdigest()[:12]
        raise AuthError("Authentication failed")

    def _identity(self, request: web.Request) -> str:
        identity = request.get("identity")
        if identity:
            return identity
        forwarded = request.headers.get("x-forwarded-for", "")
        ip = forwarded.split(",")[0].strip() or request.remote or "anonymous"
        return f"ip:{ip}"

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/api/models", self._handle_models)
        r.add_post("/api/create-session", self._handle_create_session)
        r.add_get("/api/sessions/{id}", self._handle_get_session)
        r.add_delete("/api/sessions/{id}", self._handle_delete_session)
        r.add_post("/api/sessions/{id}/steps", self._handle_create_step)
        r.add_post("/api/stream-agent", self._handle_stream_agent)
        r.add_post("/api/stream-parallel", self._handle_stream_parallel)
        r.add_post("/api/run-chain", self._handle_run_chain)
        r.add_post("/api/supervisor-interact", self._handle_supervisor)

    # ── Helpers ──

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            raise ValidationError("Request body is required")
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise ValidationError("Invalid JSON format") from None
        return require_object(body)

    async def _require_session(self, session_id: str) -> dict[str, Any]:
        validate_identifier(session_id, "sessionId")
        session = await self._store.get_session(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    async def _stream(
        self,
        request: web.Request,
        producer: Callable[[SSEResponseSink], Awaitable[Any]],
    ) -> web.StreamResponse:
        """Open the SSE response and run ``producer`` against it."""
        req_id = request.get("req_id", "")
        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)
        sink = SSEResponseSink(response, req_id)
        try:
            await producer(sink)
        except SinkClosed:
            logger.info("SSE stream abandoned req=%s events=%d", req_id, sink.events_sent)
        except Exception as exc:
            logger.exception("SSE producer failed req=%s", req_id)
            try:
                await sink.push(ErrorEvent(error=str(exc) or type(exc).__name__))
            except SinkClosed:
                logger.debug("Error event not delivered req=%s", req_id)
        finally:
            await sink.close()
        return response

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "providers": self._providers.get_availability_report(),
        })

    async def _handle_models(self, request: web.Request) -> web.Response:
        available = self._providers.get_availability_report()
        models = []
        for cap in self._models.list_models():
            provider = cap.provider
            if provider == "auto":
                provider = self._adapter.provider_name(cap.model_id)
            models.append({
                "id": cap.model_id,
                "name": self._models.display_name(cap.model_id),
                "provider": provider,
                "vision": cap.vision,
                "reasoning": cap.reasoning,
                "available": available.get(provider, False),
            })
        return web.json_response({"models": models})

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body = await self._json_body(request) if request.can_read_body else {}
        title = body.get("title") or ""
        if not isinstance(title, str):
            raise ValidationError("title must be a string", "title")
        session_id = await self._store.create_session(title.strip())
        return web.json_response({"sessionId": session_id}, status=201)

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        session = await self._require_session(session_id)
        steps = await self._store.list_steps(session_id)
        turns = await self._store.list_supervisor_turns(session_id)
        return web.json_response({
            "session": session,
            "steps": [s.to_dict() for s in steps],
            "supervisorTurns": [t.to_dict() for t in turns],
        })

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        validate_identifier(session_id, "sessionId")
        if not await self._store.delete_session(session_id):
            raise NotFoundError("session", session_id)
        return web.json_response({"deleted": session_id})

    async def _handle_create_step(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        await self._require_session(session_id)
        body = await self._json_body(request)
        model = validate_model(body.get("model"), self._models)
        prompt = validate_prompt(body.get("prompt"), self._config.prompt_max_chars)
        try:
            connection = ConnectionType(body.get("connectionType") or "direct")
        except ValueError:
            raise ValidationError("Invalid connectionType", "connectionType") from None
        existing = await self._store.list_steps(session_id)
        index = body.get("index", len(existing))
        if not isinstance(index, int) or index < 0:
            raise ValidationError("index must be a non-negative integer", "index")
        step_id = await self._store.create_step(
            session_id,
            index,
            model,
            prompt,
            name=body.get("name") or None,
            connection_type=connection,
            connection_condition=body.get("condition") or None,
            source_agent_index=body.get("sourceAgentIndex"),
        )
        return web.json_response({"stepId": step_id, "index": index}, status=201)

    async def _handle_stream_agent(self, request: web.Request) -> web.StreamResponse:
        body = await self._json_body(request)
        agent_request = validate_agent_request(body, self._models, self._config)
        if await self._store.get_step(agent_request.step_id) is None:
            raise NotFoundError("step", agent_request.step_id)
        self._rate_limiter.enforce(self._identity(request))
        return await self._stream(
            request, lambda sink: self._executor.execute(agent_request, sink),
        )

    async def _handle_stream_parallel(self, request: web.Request) -> web.StreamResponse:
        # Parallel requests arrive in bursts, one per step, and are not rate limited.
        body = await self._json_body(request)
        agent_request = validate_parallel_request(body, self._models, self._config)
        if await self._store.get_step(agent_request.step_id) is None:
            raise NotFoundError("step", agent_request.step_id)
        return await self._stream(
            request, lambda sink: self._executor.execute(agent_request, sink),
        )

    async def _handle_run_chain(self, request: web.Request) -> web.StreamResponse:
        body = await self._json_body(request)
        chain = validate_chain_request(body, self._models, self._config)
        await self._require_session(chain.session_id)
        self._rate_limiter.enforce(self._identity(request))
        return await self._stream(
            request, lambda sink: self._chains.run(chain.session_id, chain.agents, sink),
        )

    async def _handle_supervisor(self, request: web.Request) -> web.StreamResponse:
        body = await self._json_body(request)
        turn = validate_supervisor_request(body)
        await self._require_session(turn.session_id)
        if not await self._store.list_steps(turn.session_id):
            raise ValidationError("Session has no agents to supervise", "sessionId")
        self._rate_limiter.enforce(self._identity(request))
        return await self._stream(
            request,
            lambda sink: self._supervisor.run_turn(
                turn.session_id, turn.user_input, sink, full_context=turn.full_context,
            ),
        )

    # ── Lifecycle ──

    async def _on_cleanup(self, app: web.Application) -> None:
        await self._store.flush()
        await self._providers.shutdown_all()

    async def start(self) -> None:
        """Run until cancelled. Prints the bound port as JSON on stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner) or self._port
        self._port = actual_port
        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info(
            "relaychain server listening on %s:%d providers=%s auth=%s",
            self._host, actual_port, ",".join(self._providers.list_names()),
            "on" if self._config.auth_tokens else "off",
        )
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
            raise
        finally:
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None
