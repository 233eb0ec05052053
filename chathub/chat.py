"""Chat routing: user messages become opinion sessions, contributions or mediator replies."""
from __future__ import annotations

from collections import deque
from typing import Any, Dict, List, Optional
import asyncio
import json
import logging
import re

from chathub import prompts
from chathub.directives import DirectiveExecutor, parse_directive, strip_directive
from chathub.store import StoreError

logger = logging.getLogger(__name__)

OPINION_KEYWORDS = (
    "consultar opiniões", "opinião dos modelos", "opiniões sobre",
    "coletar opiniões", "o que os modelos pensam", "perspectiva dos modelos",
    "consulta geral", "opinião de todos", "perguntar aos modelos",
    "opinion collection", "collect opinions", "ask all models",
)
CONTRIBUTION_KEYWORDS = (
    "contribuição", "contribution", "contribuir", "contribute",
    "feedback oficial", "official feedback", "para o issues", "to issues",
    "registrar discussão", "record discussion", "documentar",
)
TOPIC_PATTERNS = (
    re.compile(r"consultar opiniões (?:dos modelos )?sobre (.+)", re.IGNORECASE | re.DOTALL),
    re.compile(r"opiniões? (?:dos modelos )?sobre (.+)", re.IGNORECASE | re.DOTALL),
    re.compile(r"coletar opiniões? sobre (.+)", re.IGNORECASE | re.DOTALL),
    re.compile(r"o que os modelos pensam sobre (.+)", re.IGNORECASE | re.DOTALL),
    re.compile(r"perspectiva dos modelos sobre (.+)", re.IGNORECASE | re.DOTALL),
    re.compile(r"perguntar aos modelos sobre (.+)", re.IGNORECASE | re.DOTALL),
    re.compile(r"(?:collect opinions|ask all models) (?:on|about) (.+)", re.IGNORECASE | re.DOTALL),
)
SHORTLIST_QUOTAS = {"openai": 2, "anthropic": 2, "gemini": 1, "xai": 1, "deepseek": 1}


def is_opinion_request(text: str) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in OPINION_KEYWORDS)


def is_contribution_request(text: str) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in CONTRIBUTION_KEYWORDS)


def extract_topic(text: str) -> str:
    for pattern in TOPIC_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return text.strip()


def default_shortlist(candidates: List[str]) -> List[str]:
    picked: List[str] = []
    used: Dict[str, int] = {}
    for model_id in candidates:
        provider = model_id.split("/", 1)[0] if "/" in model_id else None
        quota = SHORTLIST_QUOTAS.get(provider or "", 0)
        if used.get(provider, 0) < quota:
            picked.append(model_id)
            used[provider] = used.get(provider, 0) + 1
    return picked or list(candidates)


def _parse_shortlist(text: str) -> List[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return []
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return []
    models = data.get("models") if isinstance(data, dict) else None
    if not isinstance(models, list):
        return []
    return [str(m).strip() for m in models if str(m).strip()]


class ChatService:
    def __init__(
        self,
        registry,
        gateway,
        validator,
        store,
        broadcaster,
        sessions,
        executor: DirectiveExecutor,
        default_issue_id: int = 1,
        history_size: int = 20,
    ):
        self.registry = registry
        self.gateway = gateway
        self.validator = validator
        self.store = store
        self.broadcaster = broadcaster
        self.sessions = sessions
        self.executor = executor
        self.default_issue_id = default_issue_id
        self.history: deque = deque(maxlen=history_size)
        self._tasks: set = set()

    @property
    def mediator(self) -> str:
        return self.registry.mediator

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle_inbound(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.info(f"Ignoring non-object client message: {message!r}"[:200])
            return
        if message.get("type") == "user_comment" and isinstance(message.get("text"), str):
            await self.handle_user_comment(message["text"])
            return
        logger.info(f"Ignoring client message of type {message.get('type')!r}")

    async def handle_user_comment(self, text: str) -> Dict[str, Any]:
        text = (text or "").strip()
        if not text:
            return {"action": "ignored"}
        if is_opinion_request(text):
            return await self.collect_opinions(text)
        if is_contribution_request(text):
            return await self.contribute(text)
        return await self.simple_response(text)

    async def collect_opinions(self, text: str) -> Dict[str, Any]:
        topic = extract_topic(text)
        models = [m for m in self.registry.working_models() if m != self.mediator]
        session = self.sessions.start_session(
            topic, self.default_issue_id, models, origin="chat", prefix="chat_session",
        )
        await self.broadcaster.broadcast_chat(
            type="simple_response",
            text=(
                f"Iniciando coleta de opiniões sobre: \"{topic}\"\n\n"
                f"{session.total_models} modelos serão consultados."
            ),
        )
        return {"action": "opinions", "session_id": session.session_id, "topic": topic}

    async def _recent_context(self) -> str:
        try:
            return "\n".join(prompts.issue_excerpt(await self.store.load(), None, recent=5))
        except StoreError as exc:
            logger.warning(f"Chat prompt built without issue context: {exc}")
            return ""

    async def contribute(self, text: str, model_id: Optional[str] = None) -> Dict[str, Any]:
        """Ask one model for a contribution and record it on the main thread."""
        model_id = self.registry.normalize_model_id(model_id) if model_id else self.mediator
        await self.broadcaster.broadcast_chat(type="typing", author=model_id)
        context = await self._recent_context()
        prompt = prompts.chat_prompt(model_id, self.mediator, text, list(self.history), context)
        result = await self.gateway.invoke(model_id, prompt)
        await self.broadcaster.broadcast_chat(type="stop_typing", author=model_id)
        if not result.ok:
            await self.broadcaster.broadcast_chat(type="error", author=model_id, text=result.text or result.error)
            return {"action": "contribution", "success": False, "model": model_id, "error": result.error}
        body = strip_directive(result.text)
        violation = self.validator.validate(model_id, body)
        if violation:
            await self.broadcaster.broadcast_chat(type="error", author=model_id, text=f"Resposta rejeitada: {violation}")
            return {"action": "contribution", "success": False, "model": model_id, "error": violation}
        comment = await self.store.append_comment(None, model_id, body)
        await self.broadcaster.broadcast_chat(type="chat_message", author=model_id, text=body,
                                              is_system_message=False)
        return {"action": "contribution", "success": True, "model": model_id, "comment": comment}

    async def simple_response(self, text: str) -> Dict[str, Any]:
        mediator = self.mediator
        await self.broadcaster.broadcast_chat(type="typing", author=mediator)
        prompt = prompts.chat_prompt(mediator, mediator, text, list(self.history))
        self.history.append(f"usuário: {text}")
        result = await self.gateway.invoke(mediator, prompt)
        await self.broadcaster.broadcast_chat(type="stop_typing", author=mediator)
        if not result.ok:
            await self.broadcaster.broadcast_chat(type="error", author=mediator, text=result.text or result.error)
            return {"action": "simple_response", "success": False, "error": result.error}

        visible = strip_directive(result.text)
        violation = self.validator.validate(mediator, visible)
        if violation:
            logger.warning(f"Mediator reply rejected: {violation}")
            await self.broadcaster.broadcast_chat(type="error", author=mediator, text=f"Resposta rejeitada: {violation}")
            return {"action": "simple_response", "success": False, "error": violation}

        self.history.append(f"{mediator}: {visible}")
        await self.broadcaster.broadcast_chat(type="simple_response", author=mediator, text=visible)
        directive = parse_directive(result.text)
        if directive is not None:
            self._spawn(self.executor.execute(directive, fallback_topic=text))
        return {
            "action": "simple_response",
            "success": True,
            "text": visible,
            "directive": directive.to_payload() if directive else None,
        }

    async def ask_model(self, model_id: str, prompt: str, context: Optional[str] = None) -> Dict[str, Any] | None:
        """Direct invocation; ``None`` when the model is unknown or not selectable."""
        model_id = self.registry.normalize_model_id(model_id)
        if not self.registry.is_selectable(model_id):
            return None
        full_prompt = prompt if not context else f"{context}\n\n{prompt}"
        full_prompt = prompts.apply_safeguard(model_id, self.mediator, full_prompt)
        result = await self.gateway.invoke(model_id, full_prompt)
        response: Dict[str, Any] = {
            "success": result.ok,
            "model_id": model_id,
            "response": result.text,
            "outcome": result.outcome,
            "duration_ms": round(result.duration_ms, 1),
            "error": result.error,
            "validation": {"valid": True, "reason": None},
            "orchestrated": None,
        }
        if not result.ok:
            return response
        violation = self.validator.validate(model_id, strip_directive(result.text))
        if violation:
            response["success"] = False
            response["validation"] = {"valid": False, "reason": violation}
            return response
        if model_id == self.mediator:
            directive = parse_directive(result.text)
            if directive is not None:
                response["orchestrated"] = await self.executor.execute(directive, fallback_topic=prompt, wait=False)
                response["response"] = strip_directive(result.text)
        return response

    async def plan_models(self, topic: str, candidates: List[str]) -> List[str]:
        """Let the mediator pick a shortlist; fall back to a fixed per-provider quota."""
        if not candidates:
            return []
        result = await self.gateway.invoke(self.mediator, prompts.plan_prompt(topic, candidates))
        if result.outcome in ("success", "empty"):
            chosen = [self.registry.normalize_model_id(m) for m in _parse_shortlist(result.text)]
            chosen = [m for m in dict.fromkeys(chosen) if m in candidates]
            if chosen:
                logger.info(f"Mediator shortlisted {len(chosen)} models for {topic!r}")
                return chosen
        logger.info("Mediator shortlist unavailable, using default quota shortlist")
        return default_shortlist(candidates)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
