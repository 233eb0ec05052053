"""Identity checks on model replies: a model speaks only for itself."""
from __future__ import annotations

from typing import Iterable, Optional, Set
import logging
import re

from chathub.models.registry import ModelRegistry

logger = logging.getLogger(__name__)

FAMILY_PREFIXES = (
    "gpt-", "claude-", "gemini-", "grok-", "deepseek", "o1-",
    "openai/", "anthropic/", "gemini/", "xai/", "deepseek/", "groq/",
)

_TOKEN = r"(?P<token>[a-z0-9][\w./:-]*)"

CLAIM_RE = re.compile(
    r"(?<!\bsuch\s)(?<!\btal\s)(?<!\btais\s)(?<!\bassim\s)"
    r"\b(?P<phrase>como|speaking as|sou o|sou a|eu sou o|eu sou|i am|i'm|as|"
    r"na perspectiva do|na perspectiva da|opinião do|opiniao do)\s+" + _TOKEN,
    re.IGNORECASE,
)
PROXY_RE = re.compile(
    r"\b(?P<phrase>segundo o|de acordo com o|according to|consultando o|consulting|"
    r"asking|solicitando ao|solicitando o|in the view of)\s+" + _TOKEN,
    re.IGNORECASE,
)
DELEGATION_PHRASES = {"consultando o", "consulting", "asking", "solicitando ao", "solicitando o"}


class ResponseValidator:
    def __init__(self, registry: ModelRegistry, mediator_id: str | None = None):
        self.registry = registry
        self.mediator_id = mediator_id or registry.mediator

    def _known_names(self, include_mediator: bool = True) -> Set[str]:
        names: Set[str] = set()
        for card in self.registry.list_models():
            if not include_mediator and card["id"] == self.mediator_id:
                continue
            model_id = card["id"].lower()
            names.add(model_id)
            names.add(model_id.rsplit("/", 1)[-1])
        return names

    def _model_like(self, token: str, known: Iterable[str]) -> bool:
        return token in known or token.startswith(FAMILY_PREFIXES)

    @staticmethod
    def _self_names(model_id: str) -> Set[str]:
        lowered = model_id.lower()
        return {lowered, lowered.rsplit("/", 1)[-1]}

    def validate(self, model_id: str, text: str) -> Optional[str]:
        """Return a violation reason, or ``None`` when the reply is acceptable."""
        if not text or not isinstance(text, str):
            return None
        is_mediator = model_id == self.mediator_id
        # for participants the mediator id is a plain word, not a model name
        known = self._known_names(include_mediator=is_mediator)
        own = self._self_names(model_id)

        for match in CLAIM_RE.finditer(text):
            token = match.group("token").lower().rstrip(".:-/")
            if not self._model_like(token, known):
                continue
            if is_mediator:
                if token in own:
                    continue
                return (
                    f"mediator '{model_id}' claimed to be '{token}'; "
                    "it must request other models through the gateway, not simulate them"
                )
            if token in own:
                continue
            return f"'{model_id}' claimed the identity '{token}'; it may only speak as {model_id}"

        for match in PROXY_RE.finditer(text):
            token = match.group("token").lower().rstrip(".:-/")
            if not self._model_like(token, known) or token in own:
                continue
            phrase = " ".join(match.group("phrase").lower().split())
            if is_mediator and phrase in DELEGATION_PHRASES:
                continue
            return f"'{model_id}' spoke on behalf of '{token}'; each model gives only its own view"
        return None
