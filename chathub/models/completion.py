"""Heuristics deciding when streamed CLI output is already a finished reply."""
from __future__ import annotations

from typing import Iterable, Protocol, Tuple

DIRECTIVE_MARKER = "AUTO_CMD:"

DEFAULT_ENDINGS: Tuple[str, ...] = (
    "configuradas no ambiente.",
    "no projeto.",
    "disponíveis.",
    "sistema.",
    "implementação.",
)


class CompletionDetector(Protocol):
    def __call__(self, text: str) -> bool:
        ...


def directive_is_balanced(text: str, marker: str = DIRECTIVE_MARKER) -> bool | None:
    """``None`` without a marker, otherwise whether the braces after it close."""
    index = text.find(marker)
    if index < 0:
        return None
    tail = text[index + len(marker):]
    opens = tail.count("{")
    closes = tail.count("}")
    return opens > 0 and opens == closes


class HeuristicCompletion:
    """Opaque CLIs give no end-of-answer signal, so the buffer shape is inspected."""

    def __init__(
        self,
        endings: Iterable[str] = DEFAULT_ENDINGS,
        min_chars: int = 500,
        marker: str = DIRECTIVE_MARKER,
    ):
        self.endings = tuple(endings)
        self.min_chars = min_chars
        self.marker = marker

    def __call__(self, text: str) -> bool:
        if not text:
            return False
        balanced = directive_is_balanced(text, self.marker)
        if balanced:
            return True
        if balanced is False:
            return False
        stripped = text.rstrip()
        if len(stripped) <= self.min_chars:
            return False
        return any(stripped.endswith(ending) for ending in self.endings)
