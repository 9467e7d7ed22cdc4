"""
mcpexec Relevance Scorer

Ranks tools against a free-text query with a weighted token overlap:
name tokens dominate, then description tokens, then parameter names.
Everything is case-insensitive; camelCase and snake_case names are split
into words and plural endings are folded.
"""

from __future__ import annotations

import re

from mcpexec.core.models import RelevanceScore, Tool

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in",
    "into", "is", "it", "me", "my", "of", "on", "or", "please", "the",
    "then", "this", "that", "to", "with",
})


class RelevanceScorer:
    """Scores tools against queries. Stateless apart from its weights."""

    def __init__(
        self,
        name_weight: float = 0.6,
        description_weight: float = 0.3,
        parameter_weight: float = 0.1,
        prefix_min_length: int = 4,
    ) -> None:
        total = name_weight + description_weight + parameter_weight
        if total <= 0:
            raise ValueError("at least one weight must be positive")
        self._name_weight = name_weight / total
        self._description_weight = description_weight / total
        self._parameter_weight = parameter_weight / total
        self._prefix_min_length = prefix_min_length
        self._camel = re.compile(r"([a-z0-9])([A-Z])")
        self._split = re.compile(r"[^a-z0-9]+")

    # ─── Tokenization ────────────────────────────────────────

    def tokenize(self, text: str) -> list[str]:
        """Lowercase word tokens, stop words removed, plurals folded."""
        words = self._split.split(self._camel.sub(r"\1 \2", text).lower())
        return [_stem(w) for w in words if w and w not in STOP_WORDS]

    def _matches(self, query_token: str, candidate: str) -> bool:
        if query_token == candidate:
            return True
        if min(len(query_token), len(candidate)) < self._prefix_min_length:
            return False
        return candidate.startswith(query_token) or query_token.startswith(candidate)

    def _coverage(self, wanted: list[str], available: set[str]) -> float:
        """Fraction of wanted tokens that match something in available."""
        if not wanted or not available:
            return 0.0
        hits = sum(1 for w in wanted if any(self._matches(w, a) for a in available))
        return hits / len(wanted)

    # ─── Scoring ─────────────────────────────────────────────

    def score(self, tool: Tool, query: str) -> float:
        """Relevance of one tool to one query, in [0, 1]."""
        query_tokens = list(dict.fromkeys(self.tokenize(query)))
        if not query_tokens:
            return 0.0

        name_tokens = list(dict.fromkeys(self.tokenize(tool.name)))
        if name_tokens == query_tokens:
            return 1.0

        # How much of the tool's name the query mentions
        name_score = self._coverage(name_tokens, set(query_tokens))
        description_score = self._coverage(query_tokens, set(self.tokenize(tool.description)))
        param_tokens: set[str] = set()
        for param in tool.parameters:
            param_tokens.update(self.tokenize(param.name))
        parameter_score = self._coverage(query_tokens, param_tokens)

        total = (
            self._name_weight * name_score
            + self._description_weight * description_score
            + self._parameter_weight * parameter_score
        )
        return max(0.0, min(1.0, total))

    def score_tools(self, tools: list[Tool], query: str) -> list[RelevanceScore]:
        """Score every tool, highest first. Ties keep their input order."""
        scored = [RelevanceScore(tool=t, score=self.score(t, query)) for t in tools]
        return sorted(scored, key=lambda s: -s.score)

    def calculate_similarity(self, a: str, b: str) -> float:
        """Symmetric token-set similarity (Jaccard) between two strings.

        Identical strings score 1.0, strings sharing no token score 0.0.
        """
        if a == b:
            return 1.0
        tokens_a = set(self.tokenize(a))
        tokens_b = set(self.tokenize(b))
        if not tokens_a or not tokens_b:
            return 0.0
        return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)

    def get_top_n_tools(self, tools: list[Tool], query: str, n: int) -> list[Tool]:
        if n <= 0:
            return []
        return [s.tool for s in self.score_tools(tools, query)[:n]]

    def filter_by_threshold(self, scores: list[RelevanceScore], threshold: float) -> list[RelevanceScore]:
        return [s for s in scores if s.score >= threshold]


def _stem(word: str) -> str:
    if len(word) > 4 and word.endswith("ies"):
        return word[:-3] + "y"
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word
