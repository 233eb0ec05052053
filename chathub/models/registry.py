"""Model registry: identifiers, invocation metadata and availability snapshots."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional
import logging
import os

logger = logging.getLogger(__name__)

RUNNER_AIDER = "aider"
RUNNER_CURSOR = "cursor-agent"


@dataclass(frozen=True)
class ModelCard:
    id: str
    provider: str
    model: str
    credential: Optional[str] = None
    runner: str = RUNNER_AIDER
    concurrency_class: str = "external"

    @property
    def short_name(self) -> str:
        return self.id.rsplit("/", 1)[-1]

    @property
    def builtin(self) -> bool:
        return self.concurrency_class == "builtin"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "model": self.model,
            "credential": self.credential,
            "runner": self.runner,
            "concurrency_class": self.concurrency_class,
        }


@dataclass(frozen=True)
class AvailabilitySnapshot:
    """Result of one provider availability check. Replaced, never mutated."""

    working_providers: frozenset = field(default_factory=frozenset)
    failed: tuple = ()
    checked_at: Optional[str] = None
    from_cache: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "working_providers": sorted(self.working_providers),
            "failed": [dict(item) for item in self.failed],
            "checked_at": self.checked_at,
            "from_cache": self.from_cache,
        }


class ModelRegistry:
    def __init__(self, cards: Iterable[ModelCard], mediator: str = "auto"):
        self._cards: Dict[str, ModelCard] = {}
        for card in cards:
            if card.id in self._cards:
                logger.warning(f"Duplicate model id {card.id} ignored")
                continue
            self._cards[card.id] = card
        self.mediator = mediator
        self._snapshot = AvailabilitySnapshot()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ModelRegistry":
        mediator = str(config.get("mediator", "auto"))
        cards: List[ModelCard] = []
        builtin = [str(name) for name in config.get("builtin", []) or []]
        if mediator not in builtin:
            builtin.append(mediator)
        for name in builtin:
            cards.append(ModelCard(
                id=name,
                provider="cursor",
                model=name,
                runner=RUNNER_CURSOR,
                concurrency_class="builtin",
            ))
        for provider, entry in (config.get("providers") or {}).items():
            entry = entry or {}
            credential = entry.get("credential")
            for model in entry.get("models", []) or []:
                model = str(model)
                model_id = model if "/" in model else f"{provider}/{model}"
                cards.append(ModelCard(
                    id=model_id,
                    provider=str(provider),
                    model=model_id.split("/", 1)[1],
                    credential=credential,
                    runner=RUNNER_AIDER,
                ))
        return cls(cards, mediator=mediator)

    @property
    def snapshot(self) -> AvailabilitySnapshot:
        return self._snapshot

    def get_model(self, model_id: str) -> ModelCard | None:
        return self._cards.get(model_id)

    def list_models(self) -> List[Dict[str, Any]]:
        return [card.to_dict() for card in self._cards.values()]

    def builtin_ids(self) -> List[str]:
        return [card.id for card in self._cards.values() if card.builtin]

    def external_ids(self) -> List[str]:
        return [card.id for card in self._cards.values() if not card.builtin]

    def providers(self) -> List[str]:
        seen: List[str] = []
        for card in self._cards.values():
            if not card.builtin and card.provider not in seen:
                seen.append(card.provider)
        return seen

    def working_models(self) -> List[str]:
        """Built-in models first, then externals whose provider is currently working."""
        working = self._snapshot.working_providers
        result = self.builtin_ids()
        result.extend(
            card.id for card in self._cards.values()
            if not card.builtin and card.provider in working
        )
        return result

    def is_selectable(self, model_id: str) -> bool:
        card = self._cards.get(model_id)
        if card is None:
            return False
        return card.builtin or card.provider in self._snapshot.working_providers

    def refresh(
        self,
        working_providers: Iterable[str],
        failed: Iterable[Mapping[str, Any]] = (),
        from_cache: bool = False,
        checked_at: str | None = None,
    ) -> AvailabilitySnapshot:
        snapshot = AvailabilitySnapshot(
            working_providers=frozenset(working_providers),
            failed=tuple(dict(item) for item in failed),
            checked_at=checked_at or datetime.now().astimezone().isoformat(timespec="seconds"),
            from_cache=from_cache,
        )
        self._snapshot = snapshot
        logger.info(
            f"Availability refreshed: {len(snapshot.working_providers)} working providers, "
            f"{len(snapshot.failed)} failed models"
        )
        return snapshot

    def normalize_model_id(self, model_id: Any) -> Any:
        """Map short or mis-prefixed names onto registry ids; unknown ids pass through."""
        if not isinstance(model_id, str) or not model_id:
            return model_id
        clean = model_id.strip()
        if clean.startswith("prov/"):
            clean = clean[len("prov/"):]
        if "/" in clean:
            return clean
        card = self._cards.get(clean)
        if card is not None and card.builtin:
            return clean
        matches = [key for key in self._cards if key.endswith(f"/{clean}")]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            logger.debug(f"Ambiguous model name {clean}: {matches}")
        return clean

    def credential_for(self, card: ModelCard, env: Mapping[str, str] | None = None) -> str | None:
        if not card.credential:
            return None
        source = os.environ if env is None else env
        value = source.get(card.credential)
        return value or None

    def provider_status(self, env: Mapping[str, str] | None = None) -> Dict[str, Dict[str, Any]]:
        source = os.environ if env is None else env
        status: Dict[str, Dict[str, Any]] = {}
        for card in self._cards.values():
            if card.builtin or card.provider in status:
                continue
            configured = bool(card.credential and source.get(card.credential))
            status[card.provider] = {
                "configured": configured,
                "credential": card.credential,
                "working": card.provider in self._snapshot.working_providers,
            }
        return status
