"""Token and cost extraction from model CLI output, plus a persisted ledger."""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
import json
import logging
import os
import re
import tempfile

logger = logging.getLogger(__name__)

_NUMBER = r"([\d][\d,.]*k?)"
TOKENS_RE = re.compile(
    rf"Tokens:\s*{_NUMBER}\s*sent(?:,\s*[\d,.]+k?\s*cache\s*(?:hit|write))*,\s*{_NUMBER}\s*received",
    re.IGNORECASE,
)
COST_RE = re.compile(
    r"Cost:\s*\$?([\d.]+)\s*message,\s*\$?([\d.]+)\s*session",
    re.IGNORECASE,
)


@dataclass
class CostInfo:
    model_id: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    input_cost: Optional[float] = None
    output_cost: Optional[float] = None
    total_cost: Optional[float] = None
    currency: str = "USD"
    timestamp: Optional[str] = None

    @property
    def has_data(self) -> bool:
        return self.total_tokens is not None or self.total_cost is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_token_count(raw: str) -> Optional[int]:
    """Parse counts such as ``1,234``, ``6.2k`` or ``12k``."""
    if not raw:
        return None
    value = raw.strip().lower().replace(",", "")
    multiplier = 1
    if value.endswith("k"):
        multiplier = 1000
        value = value[:-1]
    try:
        return int(round(float(value) * multiplier))
    except ValueError:
        return None


def extract_cost_info(text: str, model_id: str) -> CostInfo:
    """Best-effort parse; unrecognized output yields ``None`` fields."""
    info = CostInfo(
        model_id=model_id,
        timestamp=datetime.now().astimezone().isoformat(timespec="seconds"),
    )
    if not text:
        return info
    tokens = TOKENS_RE.search(text)
    if tokens:
        info.input_tokens = parse_token_count(tokens.group(1))
        info.output_tokens = parse_token_count(tokens.group(2))
        if info.input_tokens is not None and info.output_tokens is not None:
            info.total_tokens = info.input_tokens + info.output_tokens
    cost = COST_RE.search(text)
    if cost:
        try:
            info.input_cost = float(cost.group(1))
            info.total_cost = float(cost.group(2))
            info.output_cost = round(max(info.total_cost - info.input_cost, 0.0), 6)
        except ValueError:
            logger.debug(f"Unparseable cost marker for {model_id}: {cost.group(0)}")
    return info


class CostLedger:
    """Latest cost report per model, kept in memory and mirrored to a JSON file."""

    def __init__(self, path: Path | None = None):
        self.path = path
        self._reports: Dict[str, Dict[str, Any]] = {}
        self._load()

    def _load(self) -> None:
        if not self.path or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._reports = dict(data.get("reports", {}))
        except Exception:
            logger.warning(f"Failed to load cost ledger {self.path}", exc_info=True)

    def record(self, info: CostInfo) -> None:
        if not info.has_data:
            return
        reports = dict(self._reports)
        reports[info.model_id] = info.to_dict()
        self._reports = reports
        self._save()

    def get(self, model_id: str) -> Dict[str, Any] | None:
        return self._reports.get(model_id)

    def reports(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._reports)

    def summary(self) -> Dict[str, Any]:
        providers: Dict[str, Dict[str, Any]] = {}
        total_cost = 0.0
        total_tokens = 0
        for model_id, report in self._reports.items():
            provider = model_id.split("/", 1)[0] if "/" in model_id else "builtin"
            bucket = providers.setdefault(provider, {"models": {}, "total_cost": 0.0, "total_tokens": 0})
            bucket["models"][model_id] = report
            bucket["total_cost"] = round(bucket["total_cost"] + (report.get("total_cost") or 0.0), 6)
            bucket["total_tokens"] += report.get("total_tokens") or 0
            total_cost += report.get("total_cost") or 0.0
            total_tokens += report.get("total_tokens") or 0
        return {
            "providers": providers,
            "total_cost": round(total_cost, 6),
            "total_tokens": total_tokens,
            "models_tracked": len(self._reports),
        }

    def _save(self) -> None:
        if not self.path:
            return
        payload = {
            "updated_at": datetime.now().astimezone().isoformat(timespec="seconds"),
            "reports": self._reports,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".costs-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, indent=2))
            os.replace(tmp, self.path)
        except OSError:
            logger.warning(f"Failed to persist cost ledger {self.path}", exc_info=True)
