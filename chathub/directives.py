"""Action directives embedded at the end of mediator replies.

The mediator may finish a reply with one line such as::

    AUTO_CMD: {"option": {"topic": "x", "issueId": 1, "modelId": "openai/gpt-4o"}}

Parsing is split into three pure stages (extract, parse, build) so each can
be exercised on its own; ``DirectiveExecutor`` turns the typed result into an
opinion session or a new document entry.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
import json
import logging
import re

from chathub.models.completion import DIRECTIVE_MARKER
from chathub.store import StoreError

logger = logging.getLogger(__name__)

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


@dataclass(frozen=True)
class OrchestrateDirective:
    topic: str
    issue_id: Optional[int] = None
    models: Tuple[str, ...] = ()
    kind: str = field(default="orchestrate", init=False)

    def to_payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"topic": self.topic, "issueId": self.issue_id}
        if self.models:
            body["models"] = list(self.models)
        return {self.kind: body}


@dataclass(frozen=True)
class OptionDirective:
    topic: str
    model_id: str
    issue_id: Optional[int] = None
    kind: str = field(default="option", init=False)

    def to_payload(self) -> Dict[str, Any]:
        return {self.kind: {"topic": self.topic, "issueId": self.issue_id, "modelId": self.model_id}}


@dataclass(frozen=True)
class CreateIssueDirective:
    title: str
    body: str = ""
    labels: Tuple[str, ...] = ()
    priority: str = "medium"
    kind: str = field(default="create_issue", init=False)

    def to_payload(self) -> Dict[str, Any]:
        return {self.kind: {
            "title": self.title,
            "body": self.body,
            "labels": list(self.labels),
            "priority": self.priority,
        }}


Directive = Union[OrchestrateDirective, OptionDirective, CreateIssueDirective]


def extract_candidate(text: Any, marker: str = DIRECTIVE_MARKER) -> Optional[str]:
    """Substring from the first ``{`` to the last ``}`` after the marker."""
    if not isinstance(text, str):
        return None
    index = text.find(marker)
    if index < 0:
        return None
    after = text[index + len(marker):]
    start = after.find("{")
    end = after.rfind("}")
    if start < 0 or end <= start:
        logger.warning(f"Directive marker without a payload: {after[:100]!r}")
        return None
    return after[start:end + 1].strip()


def parse_payload(candidate: Optional[str]) -> Optional[Dict[str, Any]]:
    if not candidate:
        return None
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as first:
        cleaned = candidate.replace("`", "").strip().rstrip('"').strip()
        cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as second:
            logger.warning(f"Discarding directive payload ({first.msg}; after cleanup: {second.msg}): {candidate[:200]!r}")
            return None
    if not isinstance(data, dict):
        logger.warning(f"Directive payload is not an object: {candidate[:200]!r}")
        return None
    return data


def _issue_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def build_directive(payload: Optional[Dict[str, Any]]) -> Optional[Directive]:
    if not payload:
        return None
    if isinstance(payload.get("orchestrate"), dict):
        body = payload["orchestrate"]
        models = body.get("models") or []
        if not isinstance(models, list):
            models = [models]
        return OrchestrateDirective(
            topic=_text(body.get("topic")),
            issue_id=_issue_id(body.get("issueId", body.get("issue_id"))),
            models=tuple(str(m).strip() for m in models if str(m).strip()),
        )
    if isinstance(payload.get("option"), dict):
        body = payload["option"]
        model_id = _text(body.get("modelId", body.get("model_id")))
        if not model_id:
            logger.warning("Option directive without modelId discarded")
            return None
        return OptionDirective(
            topic=_text(body.get("topic")),
            model_id=model_id,
            issue_id=_issue_id(body.get("issueId", body.get("issue_id"))),
        )
    if isinstance(payload.get("create_issue"), dict):
        body = payload["create_issue"]
        title = _text(body.get("title"))
        if not title:
            logger.warning("create_issue directive without title discarded")
            return None
        labels = body.get("labels") or []
        if not isinstance(labels, list):
            labels = [labels]
        return CreateIssueDirective(
            title=title,
            body=body.get("body") if isinstance(body.get("body"), str) else "",
            labels=tuple(str(label) for label in labels),
            priority=_text(body.get("priority")) or "medium",
        )
    logger.warning(f"Unknown directive kind: {sorted(payload)}")
    return None


def parse_directive(text: Any) -> Optional[Directive]:
    return build_directive(parse_payload(extract_candidate(text)))


def strip_directive(text: str, marker: str = DIRECTIVE_MARKER) -> str:
    """Reply text with the directive line (and anything after it) removed."""
    index = text.find(marker)
    if index < 0:
        return text
    return text[:index].rstrip()


class DirectiveExecutor:
    def __init__(self, registry, sessions, store, broadcaster, default_issue_id: int = 1):
        self.registry = registry
        self.sessions = sessions
        self.store = store
        self.broadcaster = broadcaster
        self.default_issue_id = default_issue_id

    def _targets(self, models: Tuple[str, ...]) -> List[str]:
        if models:
            return [self.registry.normalize_model_id(m) for m in models]
        return [m for m in self.registry.working_models() if m != self.registry.mediator]

    async def execute(self, directive: Directive, fallback_topic: str = "", wait: bool = True) -> Dict[str, Any]:
        mediator = self.registry.mediator
        if isinstance(directive, CreateIssueDirective):
            try:
                issue = await self.store.create_issue(
                    directive.title,
                    directive.body,
                    labels=list(directive.labels),
                    priority=directive.priority,
                )
            except StoreError as exc:
                logger.error(f"create_issue directive failed for {directive.title!r}: {exc}")
                await self.broadcaster.broadcast_chat(
                    type="error",
                    author=mediator,
                    text=f"Could not create issue '{directive.title}': {exc}",
                )
                return {"action": directive.kind, "success": False, "error": str(exc)}
            await self.broadcaster.broadcast_chat(
                type="simple_response",
                author=mediator,
                text=f"Issue #{issue['id']} created: {issue['title']}",
            )
            return {"action": directive.kind, "success": True, "issue_id": issue["id"], "title": issue["title"]}

        topic = directive.topic or fallback_topic
        issue_id = directive.issue_id or self.default_issue_id
        if isinstance(directive, OptionDirective):
            models = [self.registry.normalize_model_id(directive.model_id)]
            prefix = "option"
        else:
            models = self._targets(directive.models)
            prefix = "session"

        session = self.sessions.create_session(topic, issue_id, models, origin="directive", prefix=prefix)
        await self.broadcaster.broadcast_chat(
            type="simple_response",
            author=mediator,
            text=f"Collecting opinions from {session.total_models} model(s) on: {topic}",
        )
        if wait:
            await self.sessions.run_session(session.session_id)
        else:
            self.sessions.launch(session.session_id)
        logger.info(f"{directive.kind} directive -> session {session.session_id} ({session.total_models} models)")
        return {
            "action": directive.kind,
            "success": True,
            "session_id": session.session_id,
            "models": list(session.models),
            "topic": topic,
            "issue_id": issue_id,
        }
