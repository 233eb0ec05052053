"""Invocation gateway: one external model call with timeout, cleanup and classification."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
import logging
import re

from chathub.models.cli import CliClient, CliResult
from chathub.models.completion import DEFAULT_ENDINGS, HeuristicCompletion
from chathub.models.costs import CostInfo, CostLedger, extract_cost_info
from chathub.models.registry import RUNNER_AIDER, RUNNER_CURSOR, ModelCard, ModelRegistry

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_EMPTY = "empty"
OUTCOME_ERROR = "error"
OUTCOME_TIMEOUT = "timeout"

TIMEOUT_TEXT = "The model took too long to respond. Try again shortly."

ERROR_MARKERS = ("Traceback", "litellm.", "BadRequestError", "Warning:")

_BANNER_RE = re.compile(
    r"^(Aider v|Main model:|Weak model:|Editor model:|Model:|Git repo:|Repo-map:|"
    r"working dir:|Use /help|Added .* to the chat|Cur working dir:|─+$)",
    re.IGNORECASE,
)
_USAGE_RE = re.compile(r"^(Tokens:|Cost:)", re.IGNORECASE)


@dataclass
class InvocationResult:
    model_id: str
    text: str
    outcome: str
    duration_ms: float = 0.0
    error: Optional[str] = None
    cost: Optional[CostInfo] = None
    runner: Optional[str] = None
    early: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "text": self.text,
            "outcome": self.outcome,
            "duration_ms": round(self.duration_ms, 1),
            "error": self.error,
            "cost": self.cost.to_dict() if self.cost and self.cost.has_data else None,
            "runner": self.runner,
            "early": self.early,
        }


def strip_banner(text: str) -> str:
    """Drop the runner's start-up header and trailing usage lines."""
    lines = text.splitlines()
    start = 0
    while start < len(lines):
        line = lines[start].strip()
        if not line or _BANNER_RE.match(line):
            start += 1
            continue
        break
    end = len(lines)
    while end > start:
        line = lines[end - 1].strip()
        if not line or _USAGE_RE.match(line):
            end -= 1
            continue
        break
    return "\n".join(lines[start:end]).strip()


def classify_text(text: str, min_chars: int) -> tuple[str, Optional[str]]:
    for marker in ERROR_MARKERS:
        if marker in text:
            return OUTCOME_ERROR, f"runner error output ({marker.rstrip(':.')})"
    if len(text.strip()) < min_chars:
        return OUTCOME_EMPTY, "empty or too short response"
    return OUTCOME_SUCCESS, None


class InvocationGateway:
    def __init__(
        self,
        registry: ModelRegistry,
        cli: CliClient | None = None,
        ledger: CostLedger | None = None,
        config: Dict[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
    ):
        config = config or {}
        self.registry = registry
        self.cli = cli or CliClient()
        self.ledger = ledger
        self.env = env
        self.timeout_seconds = float(config.get("timeout_seconds", 60))
        self.min_response_chars = int(config.get("min_response_chars", 50))
        self.partial_min_chars = int(config.get("partial_min_chars", 100))
        self.runners: Dict[str, Dict[str, Any]] = {
            RUNNER_AIDER: {"command": ["aider"], "timeout_seconds": 60, "early_completion": False},
            RUNNER_CURSOR: {"command": ["cursor-agent"], "timeout_seconds": 90, "early_completion": True},
        }
        for name, override in (config.get("runners") or {}).items():
            merged = dict(self.runners.get(name, {}))
            merged.update(override or {})
            self.runners[name] = merged
        self.completion = HeuristicCompletion(
            endings=config.get("completion_endings") or DEFAULT_ENDINGS,
            min_chars=int(config.get("early_min_chars", 500)),
        )

    async def invoke(self, model_id: str, prompt: str, timeout: float | None = None) -> InvocationResult:
        """Run one model; configuration and process problems come back as failure values."""
        card = self.registry.get_model(model_id)
        if card is None:
            logger.warning(f"Invocation of unknown model {model_id}")
            return InvocationResult(
                model_id=model_id,
                text=f"Model {model_id} is not configured.",
                outcome=OUTCOME_ERROR,
                error="unknown model",
            )
        if not prompt or not prompt.strip():
            return InvocationResult(model_id=model_id, text="", outcome=OUTCOME_ERROR,
                                    error="empty prompt", runner=card.runner)

        credential = None
        if card.credential:
            credential = self.registry.credential_for(card, self.env)
            if not credential:
                logger.warning(f"Credential {card.credential} missing for {model_id}")
                return InvocationResult(
                    model_id=model_id,
                    text=f"Credential {card.credential} is not set; configure it to use {model_id}.",
                    outcome=OUTCOME_ERROR,
                    error="missing credential",
                    runner=card.runner,
                )

        runner = self.runners.get(card.runner, {})
        call_timeout = float(timeout or runner.get("timeout_seconds") or self.timeout_seconds)
        command = self.build_command(card, prompt, credential, call_timeout)
        completion = self.completion if runner.get("early_completion") else None

        logger.info(f"Invoking {model_id} via {card.runner} (timeout {call_timeout:.0f}s)")
        result = await self.cli.run(
            command,
            prompt=None,
            prompt_mode="none",
            timeout_seconds=call_timeout,
            completion=completion,
            partial_min_chars=self.partial_min_chars,
        )
        return self._finish(card, result)

    def build_command(self, card: ModelCard, prompt: str, credential: str | None, timeout: float) -> List[str]:
        runner = self.runners.get(card.runner, {})
        executable = list(runner.get("command") or [card.runner])
        if card.runner == RUNNER_AIDER:
            command = executable + ["--model", card.id]
            if credential:
                command += ["--api-key", f"{card.provider}={credential}"]
            command += [
                "--no-pretty",
                "--yes",
                "--no-stream",
                "--exit",
                "--subtree-only",
                "--dry-run",
                "--no-auto-commits",
                "--no-dirty-commits",
                "--timeout", str(max(int(timeout) - 5, 1)),
                "--message", prompt,
            ]
            return command
        return executable + ["--print", "--output-format", "text", "--model", card.model, "-p", prompt]

    def _finish(self, card: ModelCard, result: CliResult) -> InvocationResult:
        cost = extract_cost_info(result.text, card.id)
        if self.ledger is not None and cost.has_data:
            self.ledger.record(cost)

        if not result.ok:
            if result.error == "timeout":
                return InvocationResult(
                    model_id=card.id,
                    text=TIMEOUT_TEXT,
                    outcome=OUTCOME_TIMEOUT,
                    duration_ms=result.duration_ms,
                    error="timeout",
                    cost=cost,
                    runner=card.runner,
                )
            detail = result.error or "invocation failed"
            if result.stderr:
                detail = f"{detail}: {result.stderr.splitlines()[-1][:200]}"
            logger.warning(f"{card.id} failed: {detail}")
            return InvocationResult(
                model_id=card.id,
                text="",
                outcome=OUTCOME_ERROR,
                duration_ms=result.duration_ms,
                error=detail,
                cost=cost,
                runner=card.runner,
            )

        text = strip_banner(result.text) if card.runner == RUNNER_AIDER else result.text.strip()
        outcome, error = classify_text(text, self.min_response_chars)
        if outcome != OUTCOME_SUCCESS:
            logger.warning(f"{card.id} returned unusable output: {error}")
        return InvocationResult(
            model_id=card.id,
            text=text,
            outcome=outcome,
            duration_ms=result.duration_ms,
            error=error,
            cost=cost,
            runner=card.runner,
            early=result.early,
        )
