"""Opinion sessions: fan one topic out to many models in bounded batches."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import asyncio
import logging
import secrets
import string
import time

from chathub.models.gateway import InvocationGateway

logger = logging.getLogger(__name__)

PromptBuilder = Callable[[str, str, int], Awaitable[str]]

_BASE36 = string.digits + string.ascii_lowercase
PREVIEW_CHARS = 200


def new_session_id(prefix: str = "session") -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class ModelResponse:
    model_id: str
    outcome: str
    text: Optional[str] = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=_now)
    cost: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "outcome": self.outcome,
            "text": self.text,
            "error": self.error,
            "timestamp": self.timestamp,
            "cost": self.cost,
        }


@dataclass
class OpinionSession:
    session_id: str
    topic: str
    issue_id: int
    models: Tuple[str, ...]
    origin: str = "api"
    pending_models: List[str] = field(default_factory=list)
    completed_models: List[str] = field(default_factory=list)
    failed_models: List[str] = field(default_factory=list)
    in_flight_models: List[str] = field(default_factory=list)
    responses: List[ModelResponse] = field(default_factory=list)
    started_at: str = field(default_factory=_now)
    completed_at: Optional[str] = None
    complete: bool = False

    @property
    def total_models(self) -> int:
        return len(self.models)

    def progress(self) -> Dict[str, Any]:
        total = self.total_models
        completed = len(self.completed_models)
        failed = len(self.failed_models)
        return {
            "total": total,
            "completed": completed,
            "failed": failed,
            "pending": len(self.pending_models),
            "in_flight": len(self.in_flight_models),
            "percentage": round(completed / total * 100) if total else 100,
        }

    def _settle(self, model_id: str, bucket: List[str]) -> None:
        # pending -> completed|failed, exactly once
        self.pending_models.remove(model_id)
        if model_id in self.in_flight_models:
            self.in_flight_models.remove(model_id)
        bucket.append(model_id)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "topic": self.topic,
            "issue_id": self.issue_id,
            "origin": self.origin,
            "models": list(self.models),
            "total_models": self.total_models,
            "pending_models": list(self.pending_models),
            "in_flight_models": list(self.in_flight_models),
            "completed_models": list(self.completed_models),
            "failed_models": list(self.failed_models),
            "responses": [r.to_dict() for r in self.responses],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "complete": self.complete,
            "progress": self.progress(),
        }


class OpinionSessionManager:
    def __init__(
        self,
        gateway: InvocationGateway,
        validator,
        store,
        broadcaster,
        prompt_builder: PromptBuilder,
        concurrency: int = 3,
        retention_seconds: float = 600,
        invoke_timeout: float | None = None,
    ):
        self.gateway = gateway
        self.validator = validator
        self.store = store
        self.broadcaster = broadcaster
        self.prompt_builder = prompt_builder
        self.concurrency = max(1, int(concurrency))
        self.retention_seconds = retention_seconds
        self.invoke_timeout = invoke_timeout
        self._sessions: Dict[str, OpinionSession] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._expiry: Dict[str, asyncio.TimerHandle] = {}

    def create_session(
        self,
        topic: str,
        issue_id: int,
        model_ids: List[str],
        origin: str = "api",
        prefix: str = "session",
    ) -> OpinionSession:
        models: List[str] = []
        for model_id in model_ids:
            if model_id and model_id not in models:
                models.append(model_id)
        if len(models) != len(model_ids):
            logger.info(f"Dropped {len(model_ids) - len(models)} duplicate/empty model ids")
        session_id = new_session_id(prefix)
        while session_id in self._sessions:
            session_id = new_session_id(prefix)
        session = OpinionSession(
            session_id=session_id,
            topic=topic,
            issue_id=issue_id,
            models=tuple(models),
            origin=origin,
            pending_models=list(models),
        )
        self._sessions[session_id] = session
        logger.info(f"Session {session_id} created: {len(models)} models, issue {issue_id}")
        return session

    def launch(self, session_id: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.run_session(session_id))
        self._tasks[session_id] = task
        task.add_done_callback(lambda _t, sid=session_id: self._tasks.pop(sid, None))
        return task

    def start_session(
        self,
        topic: str,
        issue_id: int,
        model_ids: List[str],
        origin: str = "api",
        prefix: str = "session",
    ) -> OpinionSession:
        """Register the session and return at once; the fan-out runs as a background task."""
        session = self.create_session(topic, issue_id, model_ids, origin=origin, prefix=prefix)
        self.launch(session.session_id)
        return session

    def get_session(self, session_id: str) -> Dict[str, Any] | None:
        session = self._sessions.get(session_id)
        return session.snapshot() if session else None

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [
            {"session_id": s.session_id, "topic": s.topic, "complete": s.complete, "progress": s.progress()}
            for s in self._sessions.values()
        ]

    def batches(self, models: Tuple[str, ...]) -> List[Tuple[str, ...]]:
        k = self.concurrency
        return [models[i:i + k] for i in range(0, len(models), k)]

    async def run_session(self, session_id: str) -> OpinionSession:
        session = self._sessions[session_id]
        await self._emit(session, "session_started",
                         topic=session.topic,
                         issue_id=session.issue_id,
                         total_models=session.total_models,
                         models=list(session.models))
        try:
            for batch in self.batches(session.models):
                await asyncio.gather(*(self._collect_one(session, model_id) for model_id in batch))
        except asyncio.CancelledError:
            logger.warning(f"Session {session_id} cancelled with {len(session.pending_models)} pending")
            raise
        session.complete = True
        session.completed_at = _now()
        logger.info(
            f"Session {session_id} complete: {len(session.completed_models)} completed, "
            f"{len(session.failed_models)} failed"
        )
        await self._emit(session, "session_completed",
                         topic=session.topic,
                         total_models=session.total_models,
                         completed_models=list(session.completed_models),
                         failed_models=list(session.failed_models),
                         responses=[r.to_dict() for r in session.responses])
        self._schedule_expiry(session_id)
        return session

    async def _collect_one(self, session: OpinionSession, model_id: str) -> None:
        session.in_flight_models.append(model_id)
        await self._emit(session, "model_started", model_id=model_id)
        try:
            prompt = await self.prompt_builder(model_id, session.topic, session.issue_id)
            call = self.gateway.invoke(model_id, prompt)
            if self.invoke_timeout:
                result = await asyncio.wait_for(call, timeout=self.invoke_timeout)
            else:
                result = await call
            if not result.ok:
                await self._fail(session, model_id, result.error or result.outcome, result.text or None)
                return
            violation = self.validator.validate(model_id, result.text)
            if violation:
                logger.warning(f"Rejected reply from {model_id}: {violation}")
                await self._fail(session, model_id, f"validation: {violation}")
                return
            await self.store.append_comment(
                session.issue_id,
                model_id,
                result.text,
                extra={"opinion_topic": session.topic, "session_id": session.session_id},
            )
        except asyncio.TimeoutError:
            await self._fail(session, model_id, "timeout")
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"Opinion from {model_id} failed in session {session.session_id}")
            await self._fail(session, model_id, str(exc) or exc.__class__.__name__)
            return

        cost = result.cost.to_dict() if result.cost is not None and result.cost.has_data else None
        session.responses.append(ModelResponse(model_id=model_id, outcome="completed", text=result.text, cost=cost))
        session._settle(model_id, session.completed_models)
        await self._emit(session, "model_completed", model_id=model_id, preview=result.text[:PREVIEW_CHARS])

    async def _fail(self, session: OpinionSession, model_id: str, error: str, text: str | None = None) -> None:
        session.responses.append(ModelResponse(model_id=model_id, outcome="failed", text=text, error=error))
        session._settle(model_id, session.failed_models)
        logger.warning(f"{model_id} failed in session {session.session_id}: {error}")
        await self._emit(session, "model_failed", model_id=model_id, error=error)

    async def _emit(self, session: OpinionSession, event: str, **fields: Any) -> None:
        try:
            await self.broadcaster.broadcast_opinion(session.session_id, event, **fields)
        except Exception:
            logger.exception(f"Broadcast of {event} failed for session {session.session_id}")

    def _schedule_expiry(self, session_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._expiry[session_id] = loop.call_later(self.retention_seconds, self._expire, session_id)

    def _expire(self, session_id: str) -> None:
        self._expiry.pop(session_id, None)
        if self._sessions.pop(session_id, None) is not None:
            logger.info(f"Session {session_id} discarded after retention window")

    async def shutdown(self) -> None:
        for handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
