"""Query cleaning applied before any lookup."""

from __future__ import annotations

import re
import unicodedata

from knowledge_search.config import NormalizerConfig
from knowledge_search.errors import EmptyQuery

_WHITESPACE = re.compile(r"\s+")
_TERM_PATTERN = re.compile(r"\w+", flags=re.UNICODE)
_MARKUP = str.maketrans("", "", "<>")

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "about", "as", "at", "be", "by", "did", "do",
        "does", "for", "from", "had", "has", "have", "how", "i", "in", "is",
        "it", "me", "my", "of", "on", "or", "our", "so", "tell", "that", "the",
        "their", "there", "this", "to", "us", "was", "we", "were", "what",
        "when", "where", "which", "who", "why", "will", "with", "you", "your",
    }
)


class QueryNormalizer:
    """Produces plain, bounded query text.

    Case is preserved for display and highlighting; the ranker folds case.
    ``normalize`` is idempotent: markup and control characters are removed
    before whitespace is collapsed, and truncation is followed by a re-trim.
    """

    def __init__(self, config: NormalizerConfig | None = None) -> None:
        self.config = config or NormalizerConfig()

    def normalize(self, raw: str | None, *, required: bool = False) -> str:
        clean = self.sanitize(raw)[: self.config.max_length].rstrip()
        if not clean and required:
            raise EmptyQuery()
        return clean

    def sanitize(self, raw: str | None) -> str:
        """Clean without truncating."""
        if not raw:
            return ""
        text = "".join(_clean_char(char) for char in raw).translate(_MARKUP)
        return _WHITESPACE.sub(" ", text).strip()

    @staticmethod
    def terms(clean: str) -> list[str]:
        """Distinct lower-cased content words, in query order."""
        seen: list[str] = []
        for token in _TERM_PATTERN.findall(clean.lower()):
            if len(token) < 2 or token in STOP_WORDS or token in seen:
                continue
            seen.append(token)
        return seen


def _clean_char(char: str) -> str:
    if char.isspace():
        return " "
    if unicodedata.category(char) in ("Cc", "Cf"):
        return ""
    return char
