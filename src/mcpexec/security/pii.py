"""
mcpexec PII Tokenizer

Reversible redaction of personal data in sandbox output. Every distinct
email, phone number, credit-card number, SSN or titled name is replaced by a
category-scoped placeholder ([EMAIL_1], [PHONE_2], ...) and remembered so
detokenize() can restore it.

detokenize(tokenize(x)) == x holds for every string, including strings that
already contain placeholder-shaped text or backslashes. Placeholder text
that was present in the input is escaped with an odd number of backslashes;
real tokens are preceded by an even number:

    k backslashes + literal placeholder  ->  2k+1 backslashes + placeholder
    k backslashes + PII value            ->  2k backslashes + token
"""

from __future__ import annotations

import hashlib
import re

PII_PATTERNS: dict[str, str] = {
    "EMAIL": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b",
    "CREDIT_CARD": r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b",
    "SSN": r"\b\d{3}-\d{2}-\d{4}\b",
    "PHONE": r"\b(?:\+\d{1,3}[-.]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b",
    # Titled names only ("Dr. Jane Smith"); the title itself stays readable
    "NAME": r"\b(?:Mr|Mrs|Ms|Dr)\.\s+[A-Z][a-z]+\s+[A-Z][a-z]+\b",
}

_PLACEHOLDER = r"\[(?:" + "|".join(PII_PATTERNS) + r")_\d+\]"
_TITLE = re.compile(r"(?:Mr|Mrs|Ms|Dr)\.\s+")


class PIITokenizer:
    """Request-scoped, reversible PII redaction."""

    def __init__(self) -> None:
        alternatives = "|".join(f"(?P<{name}>{regex})" for name, regex in PII_PATTERNS.items())
        self._scan = re.compile(rf"(?P<escape>\\*)(?:(?P<placeholder>{_PLACEHOLDER})|{alternatives})")
        self._probe = re.compile("|".join(f"(?:{regex})" for regex in PII_PATTERNS.values()))
        self._reverse = re.compile(rf"(\\*)({_PLACEHOLDER})")
        self.clear()

    def clear(self) -> None:
        """Forget every mapping and reset the per-category counters."""
        self._token_to_value: dict[str, str] = {}
        self._digest_to_token: dict[str, str] = {}
        self._counters: dict[str, int] = {name: 0 for name in PII_PATTERNS}

    def tokenize(self, text: str) -> str:
        """Replace PII in text with placeholders."""
        return self._scan.sub(self._replace, text)

    def detokenize(self, text: str) -> str:
        """Exact inverse of tokenize()."""

        def restore(match: re.Match[str]) -> str:
            slashes, placeholder = match.group(1), match.group(2)
            prefix = "\\" * (len(slashes) // 2)
            if len(slashes) % 2:
                return prefix + placeholder
            return prefix + self._token_to_value.get(placeholder, placeholder)

        return self._reverse.sub(restore, text)

    def contains_pii(self, text: str) -> bool:
        return self._probe.search(text) is not None

    def get_token_count_by_type(self) -> dict[str, int]:
        """Distinct values tokenized per category since creation or clear()."""
        return dict(self._counters)

    def get_tokens(self) -> dict[str, str]:
        return dict(self._token_to_value)

    @property
    def token_count(self) -> int:
        return len(self._token_to_value)

    def _replace(self, match: re.Match[str]) -> str:
        slashes = len(match.group("escape"))
        if match.group("placeholder") is not None:
            return "\\" * (2 * slashes + 1) + match.group("placeholder")

        category = match.lastgroup
        value = match.group(category)
        if category == "NAME":
            # Backslashes sit before the title, not the token, so they pass through
            title = _TITLE.match(value).group()
            return "\\" * slashes + title + self._token_for(category, value[len(title):])
        return "\\" * (2 * slashes) + self._token_for(category, value)

    def _token_for(self, category: str, value: str) -> str:
        digest = hashlib.sha256(f"{category}:{value}".encode()).hexdigest()
        token = self._digest_to_token.get(digest)
        if token is None:
            self._counters[category] += 1
            token = f"[{category}_{self._counters[category]}]"
            self._digest_to_token[digest] = token
            self._token_to_value[token] = value
        return token
