from __future__ import annotations

import re
from typing import Iterable, List, Set

# Not informative for tariff matching
STOPWORDS: Set[str] = {
    "a", "an", "the", "of", "for", "and", "or", "in", "to", "with",
    "at", "by", "from", "as", "is", "are", "be", "that", "this",
    "not", "elsewhere", "specified", "included", "thereof", "whether",
    "also", "only", "having", "used", "such", "any", "all", "its", "their",
    "on", "into", "made", "new", "other", "kind", "type", "product", "products",
    "item", "items", "goods", "article", "articles",
}

_WORD_RE = re.compile(r"[a-z0-9]+(?:-[a-z0-9]+)*")


def stem(token: str) -> str:
    """Light plural folding so ``t-shirts`` and ``t-shirt`` compare equal."""
    if len(token) <= 3:
        return token
    if token.endswith("ies"):
        return token[:-3] + "y"
    if token.endswith(("ches", "shes", "sses", "xes", "zes")):
        return token[:-2]
    if token.endswith("s") and not token.endswith(("ss", "us", "is")):
        return token[:-1]
    return token


def tokenize(text: str) -> List[str]:
    """Lowercase, split keeping hyphenated words, drop stopwords and numbers."""
    tokens: List[str] = []
    for word in _WORD_RE.findall((text or "").lower()):
        if len(word) < 2 or word.isdigit() or word in STOPWORDS:
            continue
        tokens.append(stem(word))
    return tokens


def token_set(values: Iterable[str]) -> Set[str]:
    result: Set[str] = set()
    for value in values:
        result.update(tokenize(value))
    return result


def jaccard(left: Set[str], right: Set[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)
