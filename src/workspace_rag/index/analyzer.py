"""
Lexical Analyzer

Turns chunk text and queries into index terms. Identifiers are kept whole
and also split into their camelCase / snake_case parts so that a query for
"user name" matches `getUserName` and `user_name`.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Dict, List

WORD_PATTERN = re.compile(r"[A-Za-z0-9_]+")
CAMEL_PATTERN = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|[0-9]+")

MIN_TERM_LENGTH = 2
MAX_TERM_LENGTH = 64

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has",
        "in", "is", "it", "its", "of", "on", "or", "that", "the", "this", "to",
        "was", "were", "will", "with",
    }
)


def _keep(term: str) -> bool:
    return MIN_TERM_LENGTH <= len(term) <= MAX_TERM_LENGTH and term not in STOP_WORDS


def analyze(text: str) -> List[str]:
    """Return the ordered list of terms for `text` (duplicates kept)."""
    terms: List[str] = []
    for word in WORD_PATTERN.findall(text):
        whole = word.lower()
        parts = [p.lower() for piece in word.split("_") for p in CAMEL_PATTERN.findall(piece)]

        if _keep(whole):
            terms.append(whole)
        if len(parts) > 1:
            terms.extend(p for p in parts if _keep(p) and p != whole)

    return terms


def term_frequencies(text: str) -> Dict[str, int]:
    return dict(Counter(analyze(text)))


def query_terms(text: str) -> List[str]:
    """Distinct query terms in first-seen order."""
    return list(dict.fromkeys(analyze(text)))
