"""Step store: durable home of sessions, agent steps and supervisor turns.

The engine only talks to the ``StepStore`` contract. Two implementations:

    InMemoryStepStore   process-local dicts (tests, ephemeral servers)
    JsonFileStepStore   one JSON document per session under a directory:
                        {store_dir}/{session_id}.json

File writes are atomic (temp file + fsync + os.replace) and run off the
event loop thread.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass, field
from dataclasses import fields as dataclass_fields
from pathlib import Path
from typing import Any

from relaychain.engine.errors import NotFoundError
from relaychain.engine.models import (
    AgentStep,
    ConnectionType,
    ConversationEntry,
    MentionTask,
    SupervisorTurn,
    TokenUsage,
    make_id,
)

logger = logging.getLogger(__name__)


class StepStore(abc.ABC):
    """Persistence contract used by the executor and the supervisor."""

    @abc.abstractmethod
    async def create_session(self, title: str = "") -> str: ...

    @abc.abstractmethod
    async def get_session(self, session_id: str) -> dict[str, Any] | None: ...

    @abc.abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    @abc.abstractmethod
    async def create_step(
        self,
        session_id: str,
        index: int,
        model: str,
        prompt: str,
        *,
        name: str | None = None,
        connection_type: ConnectionType = ConnectionType.DIRECT,
        connection_condition: str | None = None,
        source_agent_index: int | None = None,
    ) -> str: ...

    @abc.abstractmethod
    async def get_step(self, step_id: str) -> AgentStep | None: ...

    @abc.abstractmethod
    async def list_steps(self, session_id: str) -> list[AgentStep]: ...

    @abc.abstractmethod
    async def update_step(self, step_id: str, fields: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def begin_execution(self, step_id: str, fields: dict[str, Any] | None = None) -> None:
        """Open a new execution of a step (clears terminal state)."""

    @abc.abstractmethod
    async def update_streamed_content(self, step_id: str, text: str) -> None: ...

    @abc.abstractmethod
    async def complete_execution(self, step_id: str, fields: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def record_conversation_turn(
        self, session_id: str, agent_index: int, entry: ConversationEntry,
    ) -> None: ...

    @abc.abstractmethod
    async def get_conversation_history(
        self, session_id: str, agent_index: int,
    ) -> list[ConversationEntry]: ...

    @abc.abstractmethod
    async def start_supervisor_turn(self, session_id: str, user_input: str) -> str: ...

    @abc.abstractmethod
    async def update_supervisor_turn(self, turn_id: str, fields: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def get_supervisor_turn(self, turn_id: str) -> SupervisorTurn | None: ...

    @abc.abstractmethod
    async def list_supervisor_turns(self, session_id: str) -> list[SupervisorTurn]: ...

    async def flush(self) -> None:
        """Write any deferred state. Stores that write through need nothing."""


@dataclass
class _Session:
    session_id: str
    title: str = ""
    created_at: float = field(default_factory=time.time)
    steps: dict[str, AgentStep] = field(default_factory=dict)
    turns: dict[str, SupervisorTurn] = field(default_factory=dict)
    conversations: dict[int, list[ConversationEntry]] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "title": self.title,
            "createdAt": self.created_at,
            "stepCount": len(self.steps),
            "turnCount": len(self.turns),
        }


_STEP_FIELDS = AgentStep.field_names()
_TURN_FIELDS = SupervisorTurn.field_names()
_IMMUTABLE_STEP_FIELDS = {"step_id", "session_id"}


def _coerce_step_value(name: str, value: Any) -> Any:
    if name == "token_usage" and isinstance(value, dict):
        return TokenUsage.from_dict(value)
    if name == "connection_type" and isinstance(value, str):
        return ConnectionType(value)
    return value


class InMemoryStepStore(StepStore):
    """Process-local store. All mutations happen synchronously."""

    def __init__(self) -> None:
        self._sessions: dict[str, _Session] = {}
        self._step_index: dict[str, str] = {}
        self._turn_index: dict[str, str] = {}

    # ── Hooks ──

    async def _persist(self, session_id: str) -> None:
        """Called after every mutation of a session."""

    async def _persist_content(self, session_id: str) -> None:
        """Called after a streamed-content update. Stores may defer it."""
        await self._persist(session_id)

    # ── Sessions ──

    def _session(self, session_id: str) -> _Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    async def create_session(self, title: str = "") -> str:
        session = _Session(session_id=make_id("session"), title=title)
        self._sessions[session.session_id] = session
        logger.info("Session created id=%s", session.session_id)
        await self._persist(session.session_id)
        return session.session_id

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        session = self._sessions.get(session_id)
        return session.summary() if session else None

    async def delete_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        for step_id in session.steps:
            self._step_index.pop(step_id, None)
        for turn_id in session.turns:
            self._turn_index.pop(turn_id, None)
        logger.info(
            "Session deleted id=%s steps=%d turns=%d",
            session_id, len(session.steps), len(session.turns),
        )
        await self._remove(session_id)
        return True

    async def _remove(self, session_id: str) -> None:
        """Called after a session is deleted."""

    # ── Steps ──

    def _step(self, step_id: str) -> AgentStep:
        session_id = self._step_index.get(step_id)
        if session_id is None:
            raise NotFoundError("step", step_id)
        return self._sessions[session_id].steps[step_id]

    async def create_step(
        self,
        session_id: str,
        index: int,
        model: str,
        prompt: str,
        *,
        name: str | None = None,
        connection_type: ConnectionType = ConnectionType.DIRECT,
        connection_condition: str | None = None,
        source_agent_index: int | None = None,
    ) -> str:
        session = self._session(session_id)
        step = AgentStep(
            session_id=session_id,
            index=index,
            model=model,
            prompt=prompt,
            name=name,
            connection_type=ConnectionType(connection_type),
            connection_condition=connection_condition,
            source_agent_index=source_agent_index,
        )
        session.steps[step.step_id] = step
        self._step_index[step.step_id] = session_id
        await self._persist(session_id)
        return step.step_id

    async def get_step(self, step_id: str) -> AgentStep | None:
        session_id = self._step_index.get(step_id)
        if session_id is None:
            return None
        step = self._sessions[session_id].steps[step_id]
        return AgentStep(**{f.name: getattr(step, f.name) for f in dataclass_fields(step)})

    async def list_steps(self, session_id: str) -> list[AgentStep]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        steps = sorted(session.steps.values(), key=lambda s: (s.index, s.timestamp))
        return [await self.get_step(s.step_id) for s in steps]

    async def update_step(self, step_id: str, fields: dict[str, Any]) -> None:
        step = self._step(step_id)
        for name, value in fields.items():
            if name not in _STEP_FIELDS or name in _IMMUTABLE_STEP_FIELDS:
                logger.warning("update_step ignoring field=%s step=%s", name, step_id)
                continue
            if name == "is_complete" and step.is_complete and not value:
                logger.warning("update_step refusing to reopen step=%s", step_id)
                continue
            if name in ("is_streaming", "is_thinking") and step.is_complete and value:
                # A late queued status write must not revive a finished step.
                continue
            if name == "streamed_content" and step.is_streaming and (
                len(value or "") < len(step.streamed_content)
            ):
                continue
            setattr(step, name, _coerce_step_value(name, value))
        await self._persist(step.session_id)

    async def begin_execution(self, step_id: str, fields: dict[str, Any] | None = None) -> None:
        step = self._step(step_id)
        step.is_complete = False
        step.is_streaming = True
        step.is_thinking = False
        step.was_skipped = False
        step.skip_reason = None
        step.error = None
        step.streamed_content = ""
        step.execution_start_time = time.time()
        step.execution_end_time = None
        step.execution_duration = None
        step.tokens_per_second = None
        step.first_token_latency = None
        for name, value in (fields or {}).items():
            if name in _STEP_FIELDS and name not in _IMMUTABLE_STEP_FIELDS:
                setattr(step, name, _coerce_step_value(name, value))
        await self._persist(step.session_id)

    async def update_streamed_content(self, step_id: str, text: str) -> None:
        step = self._step(step_id)
        if step.is_complete:
            return
        if len(text) < len(step.streamed_content):
            logger.debug("Ignoring stale streamed content step=%s", step_id)
            return
        step.streamed_content = text
        await self._persist_content(step.session_id)

    async def complete_execution(self, step_id: str, fields: dict[str, Any]) -> None:
        step = self._step(step_id)
        for name, value in fields.items():
            if name in _STEP_FIELDS and name not in _IMMUTABLE_STEP_FIELDS:
                setattr(step, name, _coerce_step_value(name, value))
        end = time.time()
        step.execution_end_time = end
        if step.execution_start_time is not None:
            duration = max(0.0, end - step.execution_start_time)
            step.execution_duration = duration
            completion = step.token_usage.completion_tokens if step.token_usage else 0
            if duration > 0 and completion:
                step.tokens_per_second = completion / duration
        if step.response and len(step.response) > len(step.streamed_content):
            step.streamed_content = step.response
        step.is_complete = True
        step.is_streaming = False
        step.is_thinking = False
        logger.debug(
            "Step complete step=%s duration=%s error=%s",
            step_id, step.execution_duration, step.error,
        )
        await self._persist(step.session_id)

    # ── Conversation history ──

    async def record_conversation_turn(
        self, session_id: str, agent_index: int, entry: ConversationEntry,
    ) -> None:
        session = self._session(session_id)
        session.conversations.setdefault(agent_index, []).append(entry)
        await self._persist(session_id)

    async def get_conversation_history(
        self, session_id: str, agent_index: int,
    ) -> list[ConversationEntry]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return list(session.conversations.get(agent_index, []))

    # ── Supervisor turns ──

    def _turn(self, turn_id: str) -> SupervisorTurn:
        session_id = self._turn_index.get(turn_id)
        if session_id is None:
            raise NotFoundError("turn", turn_id)
        return self._sessions[session_id].turns[turn_id]

    async def start_supervisor_turn(self, session_id: str, user_input: str) -> str:
        session = self._session(session_id)
        turn = SupervisorTurn(session_id=session_id, user_input=user_input)
        session.turns[turn.turn_id] = turn
        self._turn_index[turn.turn_id] = session_id
        await self._persist(session_id)
        return turn.turn_id

    async def update_supervisor_turn(self, turn_id: str, fields: dict[str, Any]) -> None:
        turn = self._turn(turn_id)
        if turn.is_complete:
            logger.warning("Turn %s already complete, update dropped", turn_id)
            return
        for name, value in fields.items():
            if name not in _TURN_FIELDS or name in ("turn_id", "session_id"):
                logger.warning("update_supervisor_turn ignoring field=%s", name)
                continue
            if name == "parsed_mentions":
                value = [
                    m if isinstance(m, MentionTask) else MentionTask(
                        agent_index=int(m["agent_index"]),
                        agent_name=str(m["agent_name"]),
                        task_prompt=str(m["task_prompt"]),
                    )
                    for m in value
                ]
            setattr(turn, name, value)
        await self._persist(turn.session_id)

    async def get_supervisor_turn(self, turn_id: str) -> SupervisorTurn | None:
        session_id = self._turn_index.get(turn_id)
        if session_id is None:
            return None
        turn = self._sessions[session_id].turns[turn_id]
        return SupervisorTurn(**{f.name: getattr(turn, f.name) for f in dataclass_fields(turn)})

    async def list_supervisor_turns(self, session_id: str) -> list[SupervisorTurn]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        turns = sorted(session.turns.values(), key=lambda t: t.timestamp)
        return [await self.get_supervisor_turn(t.turn_id) for t in turns]


# ── JSON file store ──


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync so the rename itself is durable."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError as exc:
        # Some platforms and filesystems cannot fsync a directory.
        logger.debug("Directory fsync skipped for %s: %s", dir_path, exc)


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _session_to_record(session: _Session) -> dict[str, Any]:
    def _step(step: AgentStep) -> dict[str, Any]:
        data = asdict(step)
        data["connection_type"] = step.connection_type.value
        return data

    return {
        "session_id": session.session_id,
        "title": session.title,
        "created_at": session.created_at,
        "steps": [_step(s) for s in session.steps.values()],
        "turns": [asdict(t) for t in session.turns.values()],
        "conversations": {
            str(idx): [asdict(e) for e in entries]
            for idx, entries in session.conversations.items()
        },
    }


def _session_from_record(data: dict[str, Any]) -> _Session:
    session = _Session(
        session_id=data["session_id"],
        title=data.get("title", ""),
        created_at=data.get("created_at", time.time()),
    )
    for raw in data.get("steps", []):
        raw = {k: v for k, v in raw.items() if k in _STEP_FIELDS}
        raw["token_usage"] = TokenUsage.from_dict(raw.get("token_usage"))
        raw["connection_type"] = ConnectionType(raw.get("connection_type", "direct"))
        step = AgentStep(**raw)
        session.steps[step.step_id] = step
    for raw in data.get("turns", []):
        raw = {k: v for k, v in raw.items() if k in _TURN_FIELDS}
        raw["parsed_mentions"] = [MentionTask(**m) for m in raw.get("parsed_mentions", [])]
        turn = SupervisorTurn(**raw)
        session.turns[turn.turn_id] = turn
    for idx, entries in data.get("conversations", {}).items():
        session.conversations[int(idx)] = [ConversationEntry(**e) for e in entries]
    return session


class JsonFileStepStore(InMemoryStepStore):
    """InMemoryStepStore mirrored to one JSON file per session.

    Streamed-content updates arrive once per token, so they are written
    at most once per ``content_flush_delay`` seconds per session. Any other
    mutation writes immediately and takes the pending content with it.
    """

    def __init__(self, store_dir: Path | str, *, content_flush_delay: float = 0.5) -> None:
        super().__init__()
        self._dir = Path(store_dir).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._content_delay = content_flush_delay
        self._content_flushes: dict[str, asyncio.Task] = {}
        self._load_all()

    def _path(self, session_id: str) -> Path:
        return self._dir / f"{session_id}.json"

    def _load_all(self) -> None:
        loaded = 0
        for path in sorted(self._dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                session = _session_from_record(data)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable session file %s: %s", path, exc)
                continue
            self._sessions[session.session_id] = session
            for step_id in session.steps:
                self._step_index[step_id] = session.session_id
            for turn_id in session.turns:
                self._turn_index[turn_id] = session.session_id
            loaded += 1
        logger.info("JsonFileStepStore loaded %d sessions from %s", loaded, self._dir)

    async def _persist(self, session_id: str) -> None:
        self._cancel_content_flush(session_id)
        await self._write(session_id)

    async def _persist_content(self, session_id: str) -> None:
        if self._content_delay <= 0:
            await self._persist(session_id)
            return
        pending = self._content_flushes.get(session_id)
        if pending is None or pending.done():
            self._content_flushes[session_id] = asyncio.create_task(
                self._deferred_write(session_id),
            )

    async def _deferred_write(self, session_id: str) -> None:
        await asyncio.sleep(self._content_delay)
        # Past this point a newer write must not cancel this one.
        self._content_flushes.pop(session_id, None)
        try:
            await self._write(session_id)
        except OSError as exc:
            logger.error("Deferred write failed session=%s: %s", session_id, exc)

    def _cancel_content_flush(self, session_id: str) -> None:
        pending = self._content_flushes.pop(session_id, None)
        if pending is not None and not pending.done():
            pending.cancel()

    async def flush(self) -> None:
        """Write every session that has deferred streamed content."""
        for session_id in list(self._content_flushes):
            await self._persist(session_id)

    async def _write(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        # Snapshot on the loop thread; serialise and write in a worker.
        record = _session_to_record(session)
        lock = self._write_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            content = json.dumps(record, indent=2)
            await asyncio.to_thread(_atomic_write_text, self._path(session_id), content)

    async def _remove(self, session_id: str) -> None:
        self._cancel_content_flush(session_id)
        lock = self._write_locks.pop(session_id, None) or asyncio.Lock()
        async with lock:
            path = self._path(session_id)
            if path.exists():
                path.unlink()
                _fsync_dir(self._dir)
