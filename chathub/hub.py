"""Process-scoped wiring of every chat hub component."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional
import asyncio
import logging

from chathub.broadcast import Broadcaster
from chathub.chat import ChatService
from chathub.config import Config
from chathub.directives import DirectiveExecutor
from chathub.models.availability import AvailabilityChecker
from chathub.models.cli import CliClient
from chathub.models.costs import CostLedger
from chathub.models.gateway import InvocationGateway
from chathub.models.registry import ModelRegistry
from chathub.prompts import OpinionPromptBuilder
from chathub.sessions import OpinionSessionManager
from chathub.store import IssueStore
from chathub.validation import ResponseValidator

logger = logging.getLogger(__name__)


@dataclass
class Hub:
    config: Config
    registry: ModelRegistry
    ledger: CostLedger
    gateway: InvocationGateway
    validator: ResponseValidator
    store: IssueStore
    broadcaster: Broadcaster
    sessions: OpinionSessionManager
    executor: DirectiveExecutor
    chat: ChatService
    availability: AvailabilityChecker
    _probe_task: Optional[asyncio.Task] = field(default=None, repr=False)
    _closed: bool = field(default=False, repr=False)

    @classmethod
    def build(cls, config: Config, gateway: InvocationGateway | None = None, cli: CliClient | None = None) -> "Hub":
        registry = gateway.registry if gateway is not None else ModelRegistry.from_config(config.models)
        ledger = CostLedger(config.cost_ledger_path)
        if gateway is None:
            gateway = InvocationGateway(registry, cli=cli, ledger=ledger, config=config.gateway)
        validator = ResponseValidator(registry)
        store = IssueStore(config.issues_file, locale=config.locale)
        broadcaster = Broadcaster(send_timeout=config.send_timeout_seconds)
        prompt_builder = OpinionPromptBuilder(
            store, registry.mediator, context_dirs=config.context_dirs, max_chars=config.context_chars,
        )
        sessions = OpinionSessionManager(
            gateway,
            validator,
            store,
            broadcaster,
            prompt_builder,
            concurrency=config.concurrency,
            retention_seconds=config.retention_seconds,
            invoke_timeout=config.invoke_timeout_seconds,
        )
        executor = DirectiveExecutor(registry, sessions, store, broadcaster, config.default_issue_id)
        chat = ChatService(
            registry, gateway, validator, store, broadcaster, sessions, executor,
            default_issue_id=config.default_issue_id,
        )
        availability = AvailabilityChecker(
            registry, gateway, cache_path=config.availability_cache_path, config=config.availability,
        )

        async def _on_write(_document) -> None:
            await broadcaster.broadcast_issues(store)

        store.subscribe(_on_write)
        return cls(config, registry, ledger, gateway, validator, store, broadcaster,
                   sessions, executor, chat, availability)

    def start(self) -> None:
        if not self.config.availability.get("probe_on_startup", True):
            return
        delay = float(self.config.availability.get("startup_delay_seconds", 2))

        async def _probe() -> None:
            await asyncio.sleep(delay)
            try:
                await self.availability.refresh()
            except Exception:
                logger.exception("Startup availability check failed")

        self._probe_task = asyncio.get_running_loop().create_task(_probe())

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down: cancelling sessions and closing connections")
        if self._probe_task is not None and not self._probe_task.done():
            self._probe_task.cancel()
            await asyncio.gather(self._probe_task, return_exceptions=True)
        await self.chat.shutdown()
        await self.sessions.shutdown()
        await self.broadcaster.close_all()
