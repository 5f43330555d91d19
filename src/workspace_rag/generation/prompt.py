"""
Prompt Assembler

Builds the single text prompt sent to the language model.

Section order is fixed: system instructions, retrieved context (ranked,
each chunk tagged with its source path), recent conversation turns (most
recent last) and finally the user's question.

When the rendered prompt exceeds the budget (in characters), parts are
shed in this order until it fits:

1. oldest conversation turns
2. lowest-ranked context chunks
3. the tail of the system instructions
4. the tail of the user query (last resort)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import List, Sequence, Tuple

from ..index.models import ScoredEntry
from ..sessions.store import ConversationTurn

logger = logging.getLogger("rag.generation.prompt")

CONTEXT_HEADER = "### Project context"
HISTORY_HEADER = "### Conversation so far"
QUERY_HEADER = "### Question"

ROLE_LABELS = {"user": "User", "assistant": "Assistant"}


@dataclass(frozen=True)
class Prompt:
    system: str
    context: Tuple[ScoredEntry, ...]
    history: Tuple[ConversationTurn, ...]
    query: str
    dropped_turns: int = 0
    dropped_chunks: int = 0
    truncated: bool = False

    @property
    def text(self) -> str:
        return render(self)

    def __len__(self) -> int:
        return len(self.text)


def _render_chunk(hit: ScoredEntry) -> str:
    entry = hit.entry
    return f"[source: {entry.path}]\n{entry.text}"


def render(prompt: Prompt) -> str:
    sections: List[str] = []

    if prompt.system:
        sections.append(prompt.system)

    if prompt.context:
        body = "\n\n".join(_render_chunk(hit) for hit in prompt.context)
        sections.append(f"{CONTEXT_HEADER}\n{body}")

    if prompt.history:
        body = "\n".join(f"{ROLE_LABELS[t.role]}: {t.text}" for t in prompt.history)
        sections.append(f"{HISTORY_HEADER}\n{body}")

    # No question header without a question
    if prompt.query:
        sections.append(f"{QUERY_HEADER}\n{prompt.query}")
    return "\n\n".join(sections)


class PromptAssembler:
    """Deterministic, budget-aware prompt builder."""

    def assemble(
        self,
        system_instructions: str,
        retrieved_context: Sequence[ScoredEntry],
        conversation_history: Sequence[ConversationTurn],
        user_query: str,
        budget: int,
    ) -> Prompt:
        """
        Assemble a prompt whose rendered text is at most `budget` characters.

        Parameters
        ----------
        system_instructions : str
            Instructions placed first.

        retrieved_context : Sequence[ScoredEntry]
            Chunks in rank order (best first).

        conversation_history : Sequence[ConversationTurn]
            Recent turns in chronological order.

        user_query : str
            The new question.

        budget : int
            Maximum prompt size in characters.

        Returns
        -------
        Prompt
            The assembled prompt, with counters of what was evicted.
        """
        if budget <= 0:
            raise ValueError("budget must be positive.")

        prompt = Prompt(
            system=system_instructions,
            context=tuple(retrieved_context),
            history=tuple(conversation_history),
            query=user_query,
        )

        while len(prompt) > budget and prompt.history:
            prompt = replace(
                prompt,
                history=prompt.history[1:],
                dropped_turns=prompt.dropped_turns + 1,
            )

        while len(prompt) > budget and prompt.context:
            prompt = replace(
                prompt,
                context=prompt.context[:-1],
                dropped_chunks=prompt.dropped_chunks + 1,
            )

        overflow = len(prompt) - budget
        if overflow > 0 and prompt.system:
            keep = max(0, len(prompt.system) - overflow)
            prompt = replace(prompt, system=prompt.system[:keep].rstrip(), truncated=True)

        overflow = len(prompt) - budget
        if overflow > 0:
            keep = max(0, len(prompt.query) - overflow)
            prompt = replace(prompt, query=prompt.query[:keep], truncated=True)

        if prompt.dropped_turns or prompt.dropped_chunks or prompt.truncated:
            logger.debug(
                "Prompt over budget (%d chars): dropped %d turn(s), %d chunk(s), truncated=%s",
                budget,
                prompt.dropped_turns,
                prompt.dropped_chunks,
                prompt.truncated,
            )
        return prompt
