"""Prompt assembly: context packs and the fixed instructions sent to models."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
import asyncio
import logging
import re

from chathub.directives import DIRECTIVE_MARKER
from chathub.store import IssueStore, StoreError

logger = logging.getLogger(__name__)

CONTEXT_EXTENSIONS = {".md", ".mdx", ".txt"}
MAX_CONTEXT_FILES = 6
FILE_EXCERPT_CHARS = 2500
COMMENT_EXCERPT_CHARS = 400

MEDIATOR_SAFEGUARD = """

AVISO CRÍTICO PARA O MEDIADOR:
- Você é o modelo '{mediator}' mediando a conversa
- NUNCA forneça opiniões que simulariam outros modelos específicos
- Se perguntado sobre outros modelos, responda que fará uma chamada real para eles
- Em coletas de opinião, apenas coordene as chamadas reais; não invente respostas"""

DIRECTIVE_HELP = f"""
- Ao final da sua resposta, se quiser iniciar uma ação, emita UMA linha começando com {DIRECTIVE_MARKER} seguida de JSON puro:
  {DIRECTIVE_MARKER} {{"orchestrate":{{"topic":"<tópico>","issueId":<número>,"models":["modelo_da_lista",...]}}}}
  {DIRECTIVE_MARKER} {{"option":{{"topic":"<tópico>","issueId":<número>,"modelId":"modelo_da_lista"}}}}
  {DIRECTIVE_MARKER} {{"create_issue":{{"title":"<título>","body":"<descrição>","labels":["label"],"priority":"high|medium|low"}}}}
- Não coloque texto adicional na mesma linha do {DIRECTIVE_MARKER}."""


def _topic_tokens(topic: str) -> List[str]:
    return [t for t in re.split(r"[^a-z0-9]+", (topic or "").lower()) if len(t) >= 3]


def _score(content: str, tokens: Iterable[str]) -> int:
    lowered = content.lower()
    return sum(1 for token in tokens if token in lowered)


def _collect_files(dirs: Iterable[Path]) -> List[Path]:
    files: List[Path] = []
    for root in dirs:
        if not root.exists():
            continue
        for path in sorted(root.rglob("*")):
            if path.is_file() and path.suffix.lower() in CONTEXT_EXTENSIONS:
                files.append(path)
    return files


def rank_context_files(dirs: Iterable[Path], topic: str) -> List[tuple[Path, str]]:
    tokens = _topic_tokens(topic)
    scored = []
    for path in _collect_files(dirs):
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        scored.append((_score(content, tokens), path, content))
    scored.sort(key=lambda item: item[0], reverse=True)
    return [(path, content) for _, path, content in scored[:MAX_CONTEXT_FILES]]


def issue_excerpt(document: Dict[str, Any], issue_id: Optional[int], recent: int = 3) -> List[str]:
    issues = document.get("issues") or []
    target = next((i for i in issues if i.get("id") == issue_id), issues[0] if issues else None)
    if not target:
        return []
    parts = [f"### Issue #{target.get('id')}: {target.get('title', '')}"]
    for comment in (target.get("comments") or [])[-recent:]:
        body = (comment.get("body") or "")[:COMMENT_EXCERPT_CHARS]
        parts.append(f"- {comment.get('author')}: {body}")
    return parts


def system_prompt(model_id: str, mediator: str) -> str:
    if model_id == mediator:
        return (
            f"Você é '{mediator}', o mediador da discussão. Responda em PT-BR, de forma objetiva. "
            "Você coordena os demais modelos fazendo chamadas reais; nunca fala por eles."
            + DIRECTIVE_HELP
        )
    return (
        f"Você é {model_id}, participante da discussão. Forneça apenas SUA perspectiva. "
        "Nunca simule, invente ou fale em nome de outros modelos."
    )


def apply_safeguard(model_id: str, mediator: str, prompt: str) -> str:
    if model_id != mediator:
        return prompt
    return prompt + MEDIATOR_SAFEGUARD.format(mediator=mediator)


def opinion_prompt(model_id: str, topic: str, context: str) -> str:
    return f"""Como modelo participante da discussão, forneça sua opinião sobre:

**Tópico**: {topic}

**DIRETRIZES CRÍTICAS**:
- VOCÊ É: {model_id}
- NUNCA simule ou invente opiniões de outros modelos
- APENAS forneça SUA própria perspectiva como {model_id}

**Instruções**:
1. Analise o tópico no contexto abaixo
2. Seja específico e construtivo, em 3-4 parágrafos
3. Termine com uma recomendação clara

**Contexto (trechos relevantes):**
{context}

**Sua opinião como {model_id} sobre "{topic}":**"""


def chat_prompt(model_id: str, mediator: str, message: str, history: List[str], context: str = "") -> str:
    parts = [system_prompt(model_id, mediator)]
    if context:
        parts.append(f"\n**Contexto:**\n{context}")
    if history:
        parts.append("\n**Conversa recente:**\n" + "\n".join(history))
    parts.append(f"\n**Mensagem do usuário:** {message}")
    return apply_safeguard(model_id, mediator, "\n".join(parts))


def plan_prompt(topic: str, candidates: List[str]) -> str:
    listing = "\n".join(f"- {model_id}" for model_id in candidates)
    return (
        f"Selecione os modelos mais adequados para opinar sobre: {topic}\n\n"
        f"Modelos disponíveis:\n{listing}\n\n"
        'Responda SOMENTE com JSON no formato {"models": ["id", ...]} usando ids exatos da lista.'
    )


class OpinionPromptBuilder:
    """Builds the per-model opinion prompt with a bounded context pack."""

    def __init__(self, store: IssueStore, mediator: str, context_dirs: Iterable[Path] = (), max_chars: int = 18000):
        self.store = store
        self.mediator = mediator
        self.context_dirs = list(context_dirs)
        self.max_chars = max_chars

    async def context_pack(self, issue_id: Optional[int], topic: str) -> str:
        parts: List[str] = []
        try:
            parts.extend(issue_excerpt(await self.store.load(), issue_id))
        except StoreError as exc:
            logger.warning(f"Context pack without issue excerpt: {exc}")
        if self.context_dirs:
            ranked = await asyncio.to_thread(rank_context_files, self.context_dirs, topic)
            for path, content in ranked:
                parts.append(f"\n### {path.name}\n{content[:FILE_EXCERPT_CHARS]}")
        return "\n".join(parts)[:self.max_chars]

    async def __call__(self, model_id: str, topic: str, issue_id: int) -> str:
        context = await self.context_pack(issue_id, topic)
        return apply_safeguard(model_id, self.mediator, opinion_prompt(model_id, topic, context))
