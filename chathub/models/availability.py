"""Provider availability probe with a TTL cache file."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List
import asyncio
import json
import logging
import time

from chathub.models.gateway import InvocationGateway
from chathub.models.registry import AvailabilitySnapshot, ModelRegistry

logger = logging.getLogger(__name__)


class AvailabilityChecker:
    def __init__(
        self,
        registry: ModelRegistry,
        gateway: InvocationGateway,
        cache_path: Path | None = None,
        config: Dict[str, Any] | None = None,
    ):
        config = config or {}
        self.registry = registry
        self.gateway = gateway
        self.cache_path = cache_path
        self.cache_ttl = float(config.get("cache_ttl_seconds", 3600))
        self.probe_delay = float(config.get("probe_delay_seconds", 0.5))
        self.probe_prompt = str(config.get("probe_prompt", "Reply with just OK"))
        self._lock = asyncio.Lock()

    def _read_cache(self) -> Dict[str, Any] | None:
        if not self.cache_path or not self.cache_path.exists():
            return None
        try:
            return json.loads(self.cache_path.read_text(encoding="utf-8"))
        except Exception:
            logger.warning(f"Ignoring unreadable availability cache {self.cache_path}", exc_info=True)
            return None

    def _write_cache(self, payload: Dict[str, Any]) -> None:
        if not self.cache_path:
            return
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.cache_path.with_suffix(self.cache_path.suffix + ".tmp")
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp.replace(self.cache_path)
        except OSError:
            logger.warning(f"Failed to write availability cache {self.cache_path}", exc_info=True)

    def cache_info(self) -> Dict[str, Any]:
        cache = self._read_cache()
        if not cache:
            return {"last_test": None, "from_cache": False, "expires_in_minutes": 0}
        age = time.time() - float(cache.get("timestamp", 0))
        remaining = max(self.cache_ttl - age, 0)
        return {
            "last_test": cache.get("checked_at"),
            "from_cache": self.registry.snapshot.from_cache,
            "expires_in_minutes": int(remaining // 60),
        }

    async def refresh(self, force: bool = False) -> AvailabilitySnapshot:
        async with self._lock:
            if not force:
                cache = self._read_cache()
                if cache and time.time() - float(cache.get("timestamp", 0)) < self.cache_ttl:
                    logger.info("Using cached provider availability")
                    return self.registry.refresh(
                        cache.get("working_providers", []),
                        cache.get("failed", []),
                        from_cache=True,
                        checked_at=cache.get("checked_at"),
                    )
            return await self._probe()

    async def _probe(self) -> AvailabilitySnapshot:
        working: List[str] = []
        failed: List[Dict[str, Any]] = []
        for model_id in self.registry.external_ids():
            card = self.registry.get_model(model_id)
            if card is None:
                continue
            if card.credential and not self.registry.credential_for(card, self.gateway.env):
                failed.append({"provider": card.provider, "model": model_id, "reason": "missing credential"})
                continue
            result = await self.gateway.invoke(model_id, self.probe_prompt)
            reply = (result.text or "").lower()
            if result.outcome in ("success", "empty") and "ok" in reply:
                if card.provider not in working:
                    working.append(card.provider)
                logger.info(f"Probe ok: {model_id}")
            else:
                failed.append({
                    "provider": card.provider,
                    "model": model_id,
                    "reason": result.error or "unexpected reply",
                })
                logger.warning(f"Probe failed: {model_id}: {result.error}")
            if self.probe_delay:
                await asyncio.sleep(self.probe_delay)

        checked_at = datetime.now().astimezone().isoformat(timespec="seconds")
        self._write_cache({
            "timestamp": time.time(),
            "checked_at": checked_at,
            "working_providers": working,
            "failed": failed,
        })
        return self.registry.refresh(working, failed, from_cache=False, checked_at=checked_at)
